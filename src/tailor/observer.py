"""Path observers built on the watchdog library."""

import errno
import logging
import os
import queue
import stat
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Set, Tuple

from watchdog.events import (
    FileSystemEventHandler,
    DirCreatedEvent,
    DirDeletedEvent,
    DirModifiedEvent,
    DirMovedEvent,
)
from watchdog.observers import Observer
from watchdog.observers.api import ObservedWatch
from watchdog.observers.polling import PollingObserver

from .config import TailorConfig
from .exceptions import ObserverError, PathNotFoundError, PathNotReadableError
from .models import FileIdentity, ObserverEvent, ObserverEventKind, RawFSEvent

logger = logging.getLogger(__name__)

_CLOSED = object()


def normalize_watch_path(path, is_directory: bool) -> Path:
    """
    Absolute form under which a path is watched.

    Directories are fully resolved. For a file only the parent directory
    is resolved, so a symlink repointed at a new file is seen as a
    replacement of the same path.
    """
    path = Path(os.path.abspath(path))
    if is_directory:
        return path.resolve()
    return path.parent.resolve() / path.name


class Subscription(ABC):
    """
    Event stream for one observed path.

    Events are queued in arrival order and consumed with ``get`` or by
    iterating. Closing the subscription releases the observer resources
    and ends iteration.
    """

    def __init__(self, owner: "PathObserver", path: Path, directory: Path, recursive: bool):
        self.path = path
        self.directory = directory
        self.recursive = recursive
        self._owner = owner
        self._queue: "queue.Queue" = queue.Queue()
        self._closed = False

    @property
    def key(self) -> Tuple[Path, bool]:
        """The (directory, recursive) pair this subscription is scheduled under."""
        return (self.directory, self.recursive)

    @property
    def closed(self) -> bool:
        return self._closed

    def get(self, timeout: Optional[float] = None) -> Optional[ObserverEvent]:
        """
        Wait for the next event.

        Args:
            timeout: Seconds to wait, None to block

        Returns:
            The next event, or None on timeout or once closed
        """
        if self._closed and self._queue.empty():
            return None
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _CLOSED:
            # Keep the sentinel for later readers
            self._queue.put(_CLOSED)
            return None
        return item

    def __iter__(self) -> Iterator[ObserverEvent]:
        while True:
            item = self._queue.get()
            if item is _CLOSED:
                self._queue.put(_CLOSED)
                return
            yield item

    def put(self, event: ObserverEvent) -> None:
        """Queue an event for the consumer."""
        if not self._closed:
            self._queue.put(event)

    def healthy(self) -> bool:
        """Check that the underlying watch can still deliver events."""
        return not self._closed and self._owner.is_healthy(self)

    def close(self) -> None:
        """Unsubscribe and terminate the stream."""
        if self._closed:
            return
        self._closed = True
        self._owner.unsubscribe(self)
        self._queue.put(_CLOSED)

    def prime(self) -> None:
        """Record the initial state of the path before events are routed."""
        pass

    @abstractmethod
    def handle(self, raw: RawFSEvent) -> None:
        """Translate a raw filesystem event into observer events."""

    def _directory_lost(self, raw: RawFSEvent) -> bool:
        if not raw.is_directory or raw.event_type not in ("deleted", "moved"):
            return False
        if raw.src_path != self.directory:
            return False
        self.put(ObserverEvent(
            kind=ObserverEventKind.ERROR,
            path=self.path,
            error=f"watched directory {raw.event_type}: {self.directory}",
        ))
        return True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class FileSubscription(Subscription):
    """Reports growth, replacement and removal of a single file."""

    def __init__(self, owner: "PathObserver", path: Path, recursive: bool = False):
        super().__init__(owner, path, path.parent, recursive)
        self._identity: Optional[FileIdentity] = None
        self._size: Optional[int] = None
        self._state_lock = threading.Lock()

    def prime(self) -> None:
        try:
            st = os.stat(self.path)
        except OSError:
            return
        with self._state_lock:
            self._identity = FileIdentity.from_stat(st)
            self._size = st.st_size

    def handle(self, raw: RawFSEvent) -> None:
        if self._directory_lost(raw):
            return
        if raw.is_directory:
            return

        if raw.event_type == "moved":
            if raw.src_path == self.path:
                self._removed()
            if raw.dest_path == self.path:
                self._check()
            return

        if raw.src_path != self.path:
            return

        if raw.event_type == "deleted":
            self._removed()
        elif raw.event_type in ("created", "modified", "closed"):
            self._check()

    def _removed(self) -> None:
        with self._state_lock:
            self._identity = None
            self._size = None
        self.put(ObserverEvent(kind=ObserverEventKind.REMOVED, path=self.path))

    def _check(self) -> None:
        try:
            st = os.stat(self.path)
        except FileNotFoundError:
            self._removed()
            return
        except OSError as e:
            logger.debug(f"Cannot stat {self.path}: {e}")
            return

        if not stat.S_ISREG(st.st_mode):
            return

        identity = FileIdentity.from_stat(st)
        with self._state_lock:
            replaced = (
                self._identity is None
                or identity != self._identity
                or (self._size is not None and st.st_size < self._size)
            )
            self._identity = identity
            self._size = st.st_size

        if replaced:
            self.put(ObserverEvent(kind=ObserverEventKind.REPLACED, path=self.path))
        else:
            self.put(ObserverEvent(kind=ObserverEventKind.GREW, path=self.path, size=st.st_size))


class DirectorySubscription(Subscription):
    """Reports files appearing inside a directory."""

    def __init__(self, owner: "PathObserver", path: Path, recursive: bool, config: TailorConfig):
        super().__init__(owner, path, path, recursive)
        self.config = config

    def handle(self, raw: RawFSEvent) -> None:
        if self._directory_lost(raw):
            return
        if raw.is_directory:
            return

        if raw.event_type == "created":
            self._child_appeared(raw.src_path)
        elif raw.event_type == "moved" and raw.dest_path is not None:
            source = raw.src_path if self._in_scope(raw.src_path) else None
            self._child_appeared(raw.dest_path, source)

    def _in_scope(self, path: Path) -> bool:
        if path.parent == self.path:
            return True
        if not self.recursive:
            return False
        try:
            path.relative_to(self.path)
            return True
        except ValueError:
            return False

    def _child_appeared(self, child: Path, source: Optional[Path] = None) -> None:
        if not self._in_scope(child) or self.config.should_ignore(child):
            return
        self.put(ObserverEvent(kind=ObserverEventKind.CREATED, path=child, source=source))


class PathObserver(ABC):
    """Capability that turns a filesystem path into an event stream."""

    @abstractmethod
    def subscribe(self, path: Path, is_directory: bool = False, recursive: bool = False) -> Subscription:
        """
        Start observing a path.

        Raises:
            PathNotFoundError: If the path (or its directory) does not exist
            PathNotReadableError: If the path cannot be observed
            ObserverError: If the observer is closed or out of OS resources
        """

    @abstractmethod
    def unsubscribe(self, subscription: Subscription) -> None:
        """Stop routing events to a subscription."""

    def is_healthy(self, subscription: Subscription) -> bool:
        return True

    def close(self) -> None:
        """Release all resources."""
        pass


class FSEventHandler(FileSystemEventHandler):
    """Handler that converts watchdog events to RawFSEvent and fans them out."""

    def __init__(self, directory: Path):
        super().__init__()
        self.directory = directory
        self._subscriptions: Set[Subscription] = set()
        self._lock = threading.Lock()

    def attach(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscriptions.add(subscription)

    def detach(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscriptions.discard(subscription)

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def _emit(self, event_type: str, src_path: str, dest_path: Optional[str] = None, is_directory: bool = False):
        """Route a RawFSEvent to every attached subscription."""
        raw_event = RawFSEvent(
            event_type=event_type,
            src_path=Path(os.fsdecode(src_path)),
            dest_path=Path(os.fsdecode(dest_path)) if dest_path else None,
            is_directory=is_directory,
            timestamp=time.time(),
        )
        with self._lock:
            subscriptions = list(self._subscriptions)

        for subscription in subscriptions:
            try:
                subscription.handle(raw_event)
            except Exception:
                logger.exception(f"Error routing {event_type} event for {subscription.path}")

    def on_created(self, event):
        is_dir = isinstance(event, DirCreatedEvent)
        self._emit("created", event.src_path, is_directory=is_dir)

    def on_deleted(self, event):
        is_dir = isinstance(event, DirDeletedEvent)
        self._emit("deleted", event.src_path, is_directory=is_dir)

    def on_modified(self, event):
        is_dir = isinstance(event, DirModifiedEvent)
        self._emit("modified", event.src_path, is_directory=is_dir)

    def on_moved(self, event):
        is_dir = isinstance(event, DirMovedEvent)
        self._emit("moved", event.src_path, event.dest_path, is_directory=is_dir)

    def on_closed(self, event):
        self._emit("closed", event.src_path)


class WatchdogPathObserver(PathObserver):
    """
    Path observer backed by a single watchdog observer.

    Subscriptions under the same (directory, recursive) pair share one
    scheduled watch; the watch is unscheduled when its last subscriber
    leaves. File subscriptions watch their parent directory so that a
    file replaced by rename or delete+create stays visible.
    """

    def __init__(self, config: Optional[TailorConfig] = None):
        """
        Initialize the observer.

        Args:
            config: Engine configuration (polling mode, ignore rules)
        """
        self.config = config or TailorConfig()
        self._observer = None
        self._watches: Dict[Tuple[Path, bool], Tuple[ObservedWatch, FSEventHandler]] = {}
        self._lock = threading.Lock()
        self._closed = False

    def _ensure_started(self) -> None:
        if self._observer is not None:
            return
        if self.config.use_polling:
            observer = PollingObserver(timeout=self.config.poll_interval_ms / 1000.0)
            logger.debug(f"Using polling observer (interval: {self.config.poll_interval_ms}ms)")
        else:
            observer = Observer()
            logger.debug("Using OS event observer")
        observer.daemon = True
        try:
            observer.start()
        except OSError as e:
            raise ObserverError(f"Cannot start filesystem observer: {e}") from e
        self._observer = observer

    def subscribe(self, path: Path, is_directory: bool = False, recursive: bool = False) -> Subscription:
        path = normalize_watch_path(path, is_directory)

        if is_directory:
            subscription = DirectorySubscription(self, path, recursive, self.config)
        else:
            subscription = FileSubscription(self, path)

        directory = subscription.directory
        if not directory.is_dir():
            raise PathNotFoundError(f"Directory does not exist: {directory}")
        if not os.access(directory, os.R_OK | os.X_OK):
            raise PathNotReadableError(f"Directory is not readable: {directory}")

        subscription.prime()

        with self._lock:
            if self._closed:
                raise ObserverError("Observer is closed")
            self._ensure_started()

            entry = self._watches.get(subscription.key)
            if entry is None:
                handler = FSEventHandler(directory)
                try:
                    watch = self._observer.schedule(handler, str(directory), recursive=subscription.recursive)
                except OSError as e:
                    if e.errno in (errno.ENOSPC, errno.EMFILE):
                        # inotify watch or instance limit reached
                        raise ObserverError(f"Cannot observe {directory}: {e}") from e
                    raise PathNotReadableError(f"Cannot observe {directory}: {e}") from e
                entry = (watch, handler)
                self._watches[subscription.key] = entry
                logger.debug(f"Scheduled watch on {directory} (recursive={subscription.recursive})")

            entry[1].attach(subscription)

        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            entry = self._watches.get(subscription.key)
            if entry is None:
                return

            watch, handler = entry
            handler.detach(subscription)
            if len(handler):
                return

            del self._watches[subscription.key]
            if self._observer is not None:
                try:
                    self._observer.unschedule(watch)
                except KeyError:
                    # Emitter already gone, e.g. after its directory was deleted
                    pass
            logger.debug(f"Unscheduled watch on {watch.path}")

    def is_healthy(self, subscription: Subscription) -> bool:
        with self._lock:
            if self._closed or self._observer is None or not self._observer.is_alive():
                return False
            if subscription.key not in self._watches:
                return False
        return subscription.directory.is_dir()

    def watched_directories(self) -> List[Path]:
        """
        Get the directories that currently have a scheduled watch.

        Returns:
            List of directory paths
        """
        with self._lock:
            return [directory for directory, _ in self._watches.keys()]

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            observer = self._observer
            self._watches.clear()

        if observer is not None:
            observer.unschedule_all()
            observer.stop()
            observer.join(timeout=self.config.stop_timeout_s)

    def __len__(self) -> int:
        """Return the number of scheduled watches."""
        with self._lock:
            return len(self._watches)
