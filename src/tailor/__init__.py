"""
Tailor

A multi-client tailing engine that follows files and directories and
delivers newly appended lines to a callback.

Features:
- Independent client ids per watch, each stoppable on its own
- Directory watches follow every file, including ones created later
- Rotation and truncation detection (identity, size and head fingerprint)
- Partial line buffering across reads
- Adaptive polling that backs off while a file is quiet
- OS event or polling observers via watchdog
"""

from .models import (
    MessageType,
    ObserverEventKind,
    WatchState,
    FileIdentity,
    TailEvent,
    ObserverEvent,
    RawFSEvent,
    NEW_FILE_STARTED,
    NEW_LINES_ADDED,
    INVALID_CLIENT_ID,
)

from .config import TailorConfig

from .exceptions import (
    TailorError,
    WatchError,
    PathNotFoundError,
    PathNotReadableError,
    ClientIdExhaustedError,
    EngineDestroyedError,
    ObserverError,
    InvalidHandleError,
)

from .splitter import LineSplitter
from .observer import PathObserver, WatchdogPathObserver, FSEventHandler
from .machine import WatchMachine, FileTail, DirectoryTail
from .registry import RegistrationTable, WatchRecord
from .dispatcher import Dispatcher, coalesce_events
from .engine import Tailor
from .handles import (
    INVALID_HANDLE,
    tailor_init,
    tailor_destroy,
    tailor_set_new_lines_callback,
    tailor_watch_path,
    tailor_stop_watch,
)


__all__ = [
    # Models
    "MessageType",
    "ObserverEventKind",
    "WatchState",
    "FileIdentity",
    "TailEvent",
    "ObserverEvent",
    "RawFSEvent",
    "NEW_FILE_STARTED",
    "NEW_LINES_ADDED",
    "INVALID_CLIENT_ID",
    # Config
    "TailorConfig",
    # Exceptions
    "TailorError",
    "WatchError",
    "PathNotFoundError",
    "PathNotReadableError",
    "ClientIdExhaustedError",
    "EngineDestroyedError",
    "ObserverError",
    "InvalidHandleError",
    # Components
    "LineSplitter",
    "PathObserver",
    "WatchdogPathObserver",
    "FSEventHandler",
    "WatchMachine",
    "FileTail",
    "DirectoryTail",
    "RegistrationTable",
    "WatchRecord",
    "Dispatcher",
    "coalesce_events",
    # Engine
    "Tailor",
    # Handle API
    "INVALID_HANDLE",
    "tailor_init",
    "tailor_destroy",
    "tailor_set_new_lines_callback",
    "tailor_watch_path",
    "tailor_stop_watch",
]

__version__ = "0.1.0"
