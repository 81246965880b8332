"""
Opaque-handle entry points.

Mirrors the flat init/destroy/set-callback/watch/stop surface that
foreign callers use. Engines live in a process-wide table keyed by
integer handles; callers never touch the engine objects themselves.
"""

import itertools
import logging
import threading
from typing import Callable, Dict, List, Optional, Union

from .config import TailorConfig
from .engine import Tailor
from .exceptions import InvalidHandleError, TailorError
from .models import INVALID_CLIENT_ID, NEW_FILE_STARTED, NEW_LINES_ADDED, MessageType

logger = logging.getLogger(__name__)

INVALID_HANDLE = 0

RawNewLinesCallback = Callable[[int, int, int, List[str]], None]

_instances: Dict[int, Tailor] = {}
_handle_counter = itertools.count(1)
_lock = threading.Lock()


def _get(handle: int) -> Optional[Tailor]:
    with _lock:
        return _instances.get(handle)


def get_instance(handle: int) -> Tailor:
    """
    Resolve a handle to its engine.

    Raises:
        InvalidHandleError: If the handle is unknown or destroyed
    """
    instance = _get(handle)
    if instance is None:
        raise InvalidHandleError(f"Unknown tailor handle: {handle}")
    return instance


def tailor_init(config: Optional[TailorConfig] = None) -> int:
    """
    Create an engine instance.

    Returns:
        Opaque handle, or INVALID_HANDLE if the engine could not be created
    """
    try:
        instance = Tailor(config)
    except Exception:
        logger.exception("Failed to create tailor instance")
        return INVALID_HANDLE

    with _lock:
        handle = next(_handle_counter)
        _instances[handle] = instance
    return handle


def tailor_destroy(handle: int) -> None:
    """Destroy an engine instance. Unknown or already destroyed handles are ignored."""
    with _lock:
        instance = _instances.pop(handle, None)
    if instance is None:
        logger.debug(f"tailor_destroy: unknown handle {handle}")
        return
    instance.destroy()


def tailor_set_new_lines_callback(handle: int, callback: Optional[RawNewLinesCallback]) -> bool:
    """
    Install the callback of an instance.

    The callback receives ``(client_id, msg_type, line_count, lines)``.

    Returns:
        False if the handle is unknown or its instance is being destroyed
    """
    instance = _get(handle)
    if instance is None:
        return False

    adapter = None
    if callback is not None:
        def adapter(client_id: int, msg_type: MessageType, lines: List[str]) -> None:
            callback(client_id, int(msg_type), len(lines), lines)

    try:
        instance.set_new_lines_callback(adapter)
    except TailorError as e:
        logger.warning(f"Cannot set callback on handle {handle}: {e}")
        return False
    return True


def tailor_watch_path(handle: int, path: Union[str, bytes]) -> int:
    """
    Start watching a file or directory.

    Returns:
        Client id, or INVALID_CLIENT_ID on failure
    """
    instance = _get(handle)
    if instance is None:
        return INVALID_CLIENT_ID
    return instance.watch(path)


def tailor_stop_watch(handle: int, client_id: int) -> bool:
    """
    Stop watching for a client.

    Returns:
        True if the watch was stopped
    """
    instance = _get(handle)
    if instance is None:
        return False
    return instance.stop(client_id)


__all__ = [
    "INVALID_CLIENT_ID",
    "INVALID_HANDLE",
    "InvalidHandleError",
    "NEW_FILE_STARTED",
    "NEW_LINES_ADDED",
    "get_instance",
    "tailor_init",
    "tailor_destroy",
    "tailor_set_new_lines_callback",
    "tailor_watch_path",
    "tailor_stop_watch",
]
