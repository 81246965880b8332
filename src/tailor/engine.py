"""Engine facade tying the observer, registration table and dispatcher together."""

import logging
import os
import threading
from pathlib import Path
from typing import List, Optional, Union

from .config import TailorConfig
from .dispatcher import Dispatcher, NewLinesCallback
from .exceptions import EngineDestroyedError, TailorError
from .models import INVALID_CLIENT_ID
from .observer import PathObserver, WatchdogPathObserver
from .registry import RegistrationTable

logger = logging.getLogger(__name__)

PathLike = Union[str, bytes, os.PathLike]


class Tailor:
    """
    Multi-client tailing engine.

    Each ``watch`` call returns a fresh client id; new lines and new file
    notifications for that id are delivered to the single callback of the
    instance until ``stop`` is called for it.

    Example:
        >>> def on_lines(client_id, msg_type, lines):
        ...     print(client_id, msg_type.name, lines)
        >>> with Tailor(callback=on_lines) as tailor:
        ...     client_id = tailor.watch("/var/log/app.log")
    """

    def __init__(
        self,
        config: Optional[TailorConfig] = None,
        callback: Optional[NewLinesCallback] = None,
        observer: Optional[PathObserver] = None,
    ):
        """
        Initialize the engine.

        Args:
            config: Engine configuration
            callback: Delivery target, may also be set later
            observer: Path observer to use (defaults to a watchdog observer)
        """
        self.config = config or TailorConfig()
        self._observer = observer or WatchdogPathObserver(self.config)
        self._dispatcher = Dispatcher(self._lookup, self.config, callback)
        self._registry = RegistrationTable(self._observer, self._dispatcher.submit, self.config)
        self._destroyed = False
        self._lock = threading.Lock()

        self._dispatcher.start()
        logger.info("Initialized tailor instance")

    def _lookup(self, client_id: int):
        return self._registry.lookup(client_id)

    def set_new_lines_callback(self, callback: Optional[NewLinesCallback]) -> None:
        """
        Install the delivery target.

        May be called at any time. Events already delivered are not
        replayed; events delivered after this call go to the new callback.
        Passing None drops events until a callback is installed again.
        """
        if self._destroyed:
            raise EngineDestroyedError("Tailor instance has been destroyed")
        self._dispatcher.set_callback(callback)

    def add_watch(self, path: PathLike) -> int:
        """
        Start watching a file or directory.

        Args:
            path: Path to watch

        Returns:
            Client id of the new watch

        Raises:
            EngineDestroyedError: If the engine has been destroyed
            WatchError: If the path cannot be watched
        """
        with self._lock:
            if self._destroyed:
                raise EngineDestroyedError("Tailor instance has been destroyed")
            return self._registry.add(Path(os.fsdecode(path)))

    def watch(self, path: PathLike) -> int:
        """
        Start watching a file or directory.

        Args:
            path: Path to watch

        Returns:
            Client id, or INVALID_CLIENT_ID if the path cannot be watched
        """
        try:
            return self.add_watch(path)
        except (TailorError, OSError, ValueError) as e:
            logger.error(f"Failed to watch {path!r}: {e}")
            return INVALID_CLIENT_ID

    def stop(self, client_id: int) -> bool:
        """
        Stop a watch.

        After this returns, the callback is never invoked for the client.

        Args:
            client_id: Client to stop

        Returns:
            True if stopped, False if the client is unknown or already stopped
        """
        if self._destroyed:
            return False
        return self._registry.remove(client_id)

    def clients(self) -> List[int]:
        """
        Get the active client ids.

        Returns:
            Sorted list of client ids
        """
        return self._registry.client_ids()

    def watched_path(self, client_id: int) -> Optional[Path]:
        """
        Get the path watched by a client.

        Returns:
            The normalized path, or None if the client is not active
        """
        record = self._registry.lookup(client_id)
        return record.path if record else None

    def children(self, client_id: int) -> List[Path]:
        """
        Get the files followed for a directory watch.

        Returns:
            Sorted list of child paths (empty for file watches)
        """
        return self._registry.children_of(client_id)

    @property
    def is_destroyed(self) -> bool:
        return self._destroyed

    def destroy(self) -> None:
        """
        Stop every watch and release all resources.

        Blocks until deliveries in progress have completed. Calling it
        again is a no-op.
        """
        with self._lock:
            if self._destroyed:
                return
            self._destroyed = True

        count = self._registry.remove_all()
        self._dispatcher.close()
        self._observer.close()
        logger.info(f"Destroyed tailor instance ({count} watch(es) stopped)")

    def __len__(self) -> int:
        """Return the number of active watches."""
        return len(self._registry)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.destroy()
        return False
