"""Per-path watch state machines."""

import logging
import os
import stat
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import BinaryIO, Callable, Dict, List, Optional

from .config import TailorConfig
from .exceptions import PathNotFoundError, PathNotReadableError, TailorError
from .models import (
    FileIdentity,
    MessageType,
    ObserverEvent,
    ObserverEventKind,
    TailEvent,
    WatchState,
)
from .observer import PathObserver, Subscription
from .splitter import LineSplitter

logger = logging.getLogger(__name__)

HEAD_FINGERPRINT_BYTES = 256

BACKFILL = "backfill"
TAIL = "tail"


def open_regular(path: Path) -> BinaryIO:
    """
    Open a regular file for binary reading.

    The descriptor is opened non-blocking so a FIFO at the path is
    rejected instead of waiting for a writer.

    Raises:
        PathNotReadableError: If the path is not a regular file
        OSError: If the path cannot be opened
    """
    fd = os.open(path, os.O_RDONLY | getattr(os, "O_NONBLOCK", 0))
    try:
        if not stat.S_ISREG(os.fstat(fd).st_mode):
            raise PathNotReadableError(f"Not a regular file: {path}")
        return os.fdopen(fd, "rb")
    except BaseException:
        os.close(fd)
        raise


class WatchMachine(ABC):
    """
    A single reactive watch running in its own thread.

    ``open`` runs synchronously in the caller and raises if the path
    cannot be watched; ``launch`` starts the thread. Once stopped, the
    machine never emits again.
    """

    def __init__(
        self,
        client_id: int,
        path: Path,
        observer: PathObserver,
        emit: Callable[[TailEvent], None],
        config: Optional[TailorConfig] = None,
        on_failure: Optional[Callable[["WatchMachine", str], None]] = None,
    ):
        """
        Initialize the machine.

        Args:
            client_id: Client the produced events are tagged with
            path: Absolute path being watched
            observer: Source of filesystem events
            emit: Thread-safe sink for produced events
            config: Engine configuration
            on_failure: Called from the machine thread when the observer fails
        """
        self.client_id = client_id
        self.path = path
        self.config = config or TailorConfig()
        self.state = WatchState.STARTING
        self._observer = observer
        self._emit = emit
        self._on_failure = on_failure
        self._subscription: Optional[Subscription] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._poll_timeout_ms = self.config.standby_poll_ms

    @property
    def is_stopped(self) -> bool:
        return self._stop_event.is_set()

    def start(self) -> None:
        """Open the watch and start its thread."""
        self.open()
        self.launch()

    @abstractmethod
    def open(self) -> None:
        """
        Subscribe and record the initial state of the path.

        Raises:
            PathNotFoundError: If the path does not exist
            PathNotReadableError: If the path cannot be read or observed
        """

    def launch(self) -> None:
        """Start the machine thread."""
        if self._thread is not None or self.is_stopped:
            return
        self._thread = threading.Thread(
            target=self._run,
            name=f"tail-{self.client_id}-{self.path.name}",
            daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        """Signal the machine to stop and release its subscription."""
        self._stop_event.set()
        self.state = WatchState.STOPPED
        if self._subscription is not None:
            self._subscription.close()

    def join(self, timeout: Optional[float] = None) -> None:
        """Wait for the machine thread, unless called from it."""
        thread = self._thread
        if thread is None or thread is threading.current_thread():
            return
        thread.join(timeout=timeout)
        if thread.is_alive():
            logger.warning(f"Watch thread for {self.path} did not exit in time")

    def _run(self) -> None:
        try:
            self._on_start()
            if self.is_stopped:
                return
            self.state = WatchState.ACTIVE

            while not self.is_stopped:
                event = self._subscription.get(timeout=self._poll_timeout_ms / 1000.0)
                if self.is_stopped:
                    break

                if event is None:
                    if not self._subscription.healthy():
                        self._fail("observer stopped delivering events")
                        return
                    self._on_idle()
                elif event.kind == ObserverEventKind.ERROR:
                    self._fail(event.error or "observer error")
                    return
                else:
                    self._on_event(event)
        except Exception as e:
            logger.exception(f"Watch on {self.path} crashed")
            self._fail(str(e))

    def _fail(self, reason: str) -> None:
        if self.is_stopped:
            return
        logger.warning(f"Watch on {self.path} (client {self.client_id}) stopped: {reason}")
        self.stop()
        if self._on_failure is not None:
            self._on_failure(self, reason)

    def _send(self, msg_type: MessageType, lines: List[str], path: Optional[Path] = None) -> None:
        if self.is_stopped:
            return
        self._emit(TailEvent(
            client_id=self.client_id,
            msg_type=msg_type,
            path=path or self.path,
            lines=tuple(lines),
        ))

    def _on_start(self) -> None:
        pass

    def _on_idle(self) -> None:
        pass

    @abstractmethod
    def _on_event(self, event: ObserverEvent) -> None:
        """React to one observer event."""


class FileTail(WatchMachine):
    """
    Follows one file, delivering appended lines.

    In ``backfill`` mode the file's current content is announced with a
    NEW_FILE_STARTED event; in ``tail`` mode reading starts silently at the
    current end. A replaced, truncated or rewritten file restarts from
    offset 0 after a NEW_FILE_STARTED event.
    """

    def __init__(
        self,
        *args,
        mode: str = BACKFILL,
        on_removed: Optional[Callable[["FileTail"], None]] = None,
        **kwargs,
    ):
        super().__init__(*args, **kwargs)
        if mode not in (BACKFILL, TAIL):
            raise ValueError(f"unknown mode: {mode}")
        self.mode = mode
        self._on_removed = on_removed
        self.identity: Optional[FileIdentity] = None
        self.offset = 0
        self._head = b""
        self._splitter = LineSplitter(
            encoding=self.config.encoding,
            errors=self.config.encoding_errors,
            max_fragment_bytes=self.config.max_fragment_bytes,
        )

    @property
    def pending(self) -> bytes:
        """Unterminated bytes held back by the splitter."""
        return self._splitter.pending

    def open(self) -> None:
        self._subscription = self._observer.subscribe(self.path, is_directory=False)
        try:
            with open_regular(self.path) as f:
                st = os.fstat(f.fileno())
                self.identity = FileIdentity.from_stat(st)
                if self.mode == TAIL:
                    self._head = f.read(min(st.st_size, HEAD_FINGERPRINT_BYTES))
                    self.offset = st.st_size
        except FileNotFoundError as e:
            self._subscription.close()
            raise PathNotFoundError(f"File does not exist: {self.path}") from e
        except PathNotReadableError:
            self._subscription.close()
            raise
        except OSError as e:
            self._subscription.close()
            raise PathNotReadableError(f"Cannot read {self.path}: {e}") from e

        logger.info(f"Watching file {self.path} (client {self.client_id}, mode={self.mode})")

    def _on_start(self) -> None:
        if self.mode == BACKFILL:
            self._send(MessageType.NEW_FILE_STARTED, self._backfill())

    def _on_event(self, event: ObserverEvent) -> None:
        if event.kind == ObserverEventKind.REMOVED:
            self._removed()
        elif event.kind in (ObserverEventKind.GREW, ObserverEventKind.REPLACED):
            # Sizes in queued events can be stale; rotation is decided on a fresh fstat
            self._refresh()

    def _on_idle(self) -> None:
        found = self._refresh()
        if not found:
            self._poll_timeout_ms = min(self._poll_timeout_ms * 2, self.config.standby_poll_ms)
            if self._on_removed is not None and not self.path.exists():
                self._removed()

    def _removed(self) -> None:
        if self._on_removed is not None:
            self._on_removed(self)
        else:
            logger.debug(f"{self.path} removed, waiting for it to reappear")

    def _backfill(self) -> List[str]:
        try:
            with open_regular(self.path) as f:
                st = os.fstat(f.fileno())
                self.identity = FileIdentity.from_stat(st)
                return self._read_to(f, st.st_size)
        except (OSError, PathNotReadableError) as e:
            logger.debug(f"Initial read of {self.path} failed: {e}")
            return []

    def _refresh(self) -> bool:
        """
        Read whatever the file gained since the last read.

        Returns:
            True if complete lines were delivered
        """
        try:
            f = open_regular(self.path)
        except FileNotFoundError:
            return False
        except (OSError, PathNotReadableError) as e:
            logger.debug(f"Cannot open {self.path}: {e}")
            return False

        with f:
            st = os.fstat(f.fileno())
            identity = FileIdentity.from_stat(st)
            rotated = (
                identity != self.identity
                or st.st_size < self.offset
                or not self._head_matches(f)
            )
            if rotated:
                self._restart(identity)

            lines = self._read_to(f, st.st_size)

        for start in range(0, len(lines), self.config.max_batch_lines):
            self._send(MessageType.NEW_LINES_ADDED, lines[start:start + self.config.max_batch_lines])

        if lines:
            self._poll_timeout_ms = self.config.active_poll_ms
        return bool(lines)

    def _restart(self, identity: FileIdentity) -> None:
        dropped = self._splitter.reset()
        logger.info(f"File rotated: {self.path} (discarded {len(dropped)} unterminated bytes)")
        self.identity = identity
        self.offset = 0
        self._head = b""
        self._send(MessageType.NEW_FILE_STARTED, [])

    def _head_matches(self, f: BinaryIO) -> bool:
        if not self._head:
            return True
        f.seek(0)
        return f.read(len(self._head)) == self._head

    def _read_to(self, f: BinaryIO, end: int) -> List[str]:
        lines: List[str] = []
        f.seek(self.offset)
        while self.offset < end:
            chunk = f.read(min(self.config.read_chunk_bytes, end - self.offset))
            if not chunk:
                break
            if self.offset < HEAD_FINGERPRINT_BYTES:
                self._head += chunk[:HEAD_FINGERPRINT_BYTES - self.offset]
            self.offset += len(chunk)
            lines.extend(self._splitter.feed(chunk))
        return lines


class DirectoryTail(WatchMachine):
    """
    Follows every file in a directory under one client id.

    Each file gets its own FileTail child. Files present when the watch
    is opened are tailed from their end unless ``backfill_existing`` is
    set; any file that shows up later is announced and delivered from
    offset 0. Children whose file is deleted are retired.
    """

    def __init__(
        self,
        *args,
        attach_child: Optional[Callable[[int, Path, WatchMachine], bool]] = None,
        detach_child: Optional[Callable[[int, Path, WatchMachine], None]] = None,
        **kwargs,
    ):
        super().__init__(*args, **kwargs)
        self._attach_child = attach_child
        self._detach_child = detach_child
        self._children: Dict[Path, FileTail] = {}
        self._children_lock = threading.Lock()

    def children(self) -> List[Path]:
        """
        Get the files currently followed.

        Returns:
            Sorted list of child paths
        """
        with self._children_lock:
            return sorted(self._children)

    def open(self) -> None:
        if not self.path.is_dir():
            raise PathNotFoundError(f"Directory does not exist: {self.path}")
        self._subscription = self._observer.subscribe(
            self.path,
            is_directory=True,
            recursive=self.config.recursive,
        )

        # Snapshot taken before the client id is handed out; files not in it are new
        mode = BACKFILL if self.config.backfill_existing else TAIL
        for path in self._scan():
            child = self._open_child(path, mode)
            if child is not None:
                with self._children_lock:
                    self._children[path] = child

        logger.info(
            f"Watching directory {self.path} (client {self.client_id}, "
            f"recursive={self.config.recursive}, {len(self._children)} existing file(s))"
        )

    def stop(self) -> None:
        super().stop()
        with self._children_lock:
            children = list(self._children.values())
        for child in children:
            child.stop()

    def join(self, timeout: Optional[float] = None) -> None:
        super().join(timeout)
        with self._children_lock:
            children = list(self._children.values())
        for child in children:
            child.join(timeout)

    def _on_start(self) -> None:
        with self._children_lock:
            children = list(self._children.values())
        for child in children:
            if self.is_stopped:
                return
            self._launch_child(child)

    def _on_event(self, event: ObserverEvent) -> None:
        if event.kind == ObserverEventKind.REMOVED:
            with self._children_lock:
                child = self._children.get(event.path)
            if child is not None:
                self._child_removed(child)
            return
        if event.kind != ObserverEventKind.CREATED:
            return
        with self._children_lock:
            if event.path in self._children:
                return
            renamed = event.source is not None and event.source in self._children
        # A tracked file renamed in place was already delivered up to its end
        self._spawn(event.path, TAIL if renamed else BACKFILL)

    def _on_idle(self) -> None:
        # Files whose creation event was missed
        for child in self._scan():
            if self.is_stopped:
                return
            with self._children_lock:
                tracked = child in self._children
            if not tracked:
                logger.debug(f"Found untracked file {child}")
                self._spawn(child, BACKFILL)

    def _scan(self) -> List[Path]:
        pattern = "**/*" if self.config.recursive else "*"
        found = []
        try:
            for child in self.path.glob(pattern):
                if child.is_file() and not self.config.should_ignore(child):
                    found.append(child)
        except OSError as e:
            logger.warning(f"Cannot list {self.path}: {e}")
        return sorted(found)

    def _open_child(self, path: Path, mode: str) -> Optional[FileTail]:
        child = FileTail(
            self.client_id,
            path,
            self._observer,
            self._emit,
            self.config,
            on_failure=self._child_failed,
            on_removed=self._child_gone,
            mode=mode,
        )
        try:
            child.open()
        except (PathNotFoundError, PathNotReadableError) as e:
            logger.debug(f"Skipping {path}: {e}")
            return None
        except TailorError as e:
            logger.warning(f"Cannot follow {path}: {e}")
            return None
        return child

    def _spawn(self, path: Path, mode: str) -> None:
        child = self._open_child(path, mode)
        if child is None:
            return

        with self._children_lock:
            rejected = self.is_stopped or path in self._children
            if not rejected:
                self._children[path] = child
        if rejected:
            child.stop()
            return

        self._launch_child(child)

    def _launch_child(self, child: FileTail) -> None:
        if self._attach_child is not None and not self._attach_child(self.client_id, child.path, child):
            with self._children_lock:
                if self._children.get(child.path) is child:
                    del self._children[child.path]
            child.stop()
            return
        child.launch()

    def _forget(self, child: WatchMachine) -> None:
        if self._detach_child is not None:
            self._detach_child(self.client_id, child.path, child)

    def _child_gone(self, child: FileTail) -> None:
        # Queued behind any rename event already reported for the same file
        if self._subscription is not None:
            self._subscription.put(ObserverEvent(kind=ObserverEventKind.REMOVED, path=child.path))

    def _child_removed(self, child: FileTail) -> None:
        with self._children_lock:
            if self._children.get(child.path) is not child:
                return
            # Recreated before the removal was handled; the child sees the replacement
            if child.path.exists():
                return
            del self._children[child.path]

        logger.debug(f"{child.path} removed, retiring its tail")
        child.stop()
        self._forget(child)

    def _child_failed(self, child: WatchMachine, reason: str) -> None:
        with self._children_lock:
            if self._children.get(child.path) is not child:
                return
            del self._children[child.path]
        self._forget(child)
