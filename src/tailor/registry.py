"""Thread-safe registration of active watches."""

import logging
import os
import stat
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from .config import TailorConfig
from .exceptions import ClientIdExhaustedError, PathNotFoundError, PathNotReadableError
from .machine import DirectoryTail, FileTail, WatchMachine
from .models import MAX_CLIENT_ID, TailEvent
from .observer import PathObserver, normalize_watch_path

logger = logging.getLogger(__name__)


@dataclass
class WatchRecord:
    """
    One active watch.

    Attributes:
        client_id: Id handed out to the client
        path: Resolved target path
        machine: Root machine for the target
        active: Cleared under ``delivery_lock`` when the watch stops
        delivery_lock: Held while the callback runs for this client
        created_at: Unix timestamp when the watch was registered
    """
    client_id: int
    path: Path
    machine: WatchMachine
    active: bool = True
    delivery_lock: threading.RLock = field(default_factory=threading.RLock)
    created_at: float = field(default_factory=time.time)

    @property
    def is_directory(self) -> bool:
        return isinstance(self.machine, DirectoryTail)

    def deactivate(self) -> None:
        """Mark inactive, waiting out any delivery in progress."""
        with self.delivery_lock:
            self.active = False


class RegistrationTable:
    """
    Thread-safe table mapping client ids to active watches.

    Directory children are indexed by (client_id, child path) next to
    the records so that removing a client is a bulk removal over its
    prefix. Client ids are allocated monotonically and never reused.
    """

    def __init__(
        self,
        observer: PathObserver,
        emit: Callable[[TailEvent], None],
        config: Optional[TailorConfig] = None,
    ):
        """
        Initialize the table.

        Args:
            observer: Path observer shared by all machines
            emit: Sink the machines hand their events to
            config: Engine configuration
        """
        self.config = config or TailorConfig()
        self._observer = observer
        self._emit = emit
        self._records: Dict[int, WatchRecord] = {}
        self._children: Dict[Tuple[int, Path], WatchMachine] = {}
        self._next_id = 0
        self._reserved = 0
        self._lock = threading.RLock()

    def add(self, path: Path) -> int:
        """
        Start watching a path under a new client id.

        The id is reserved under the table lock, but the path is opened
        without it so a slow filesystem never stalls lookups.

        Args:
            path: File or directory to watch

        Returns:
            The new client id

        Raises:
            PathNotFoundError: If the path does not exist
            PathNotReadableError: If the path cannot be read or observed,
                or is neither a regular file nor a directory
            ClientIdExhaustedError: If no id can be allocated
        """
        try:
            st = os.stat(path)
        except FileNotFoundError as e:
            raise PathNotFoundError(f"Path does not exist: {path}") from e
        except OSError as e:
            raise PathNotReadableError(f"Cannot stat {path}: {e}") from e

        is_directory = stat.S_ISDIR(st.st_mode)
        if not is_directory and not stat.S_ISREG(st.st_mode):
            raise PathNotReadableError(f"Not a regular file or directory: {path}")

        path = normalize_watch_path(path, is_directory)
        if not os.access(path, os.R_OK):
            raise PathNotReadableError(f"Permission denied: {path}")

        with self._lock:
            client_id = self._allocate_id()
            self._reserved += 1

        try:
            machine = self._create(client_id, path, is_directory)
            machine.open()
        except BaseException:
            with self._lock:
                self._reserved -= 1
            raise

        with self._lock:
            self._reserved -= 1
            self._records[client_id] = WatchRecord(client_id, path, machine)
        machine.launch()

        logger.info(f"Client {client_id} watching {path}")
        return client_id

    def _create(self, client_id: int, path: Path, is_directory: bool) -> WatchMachine:
        if is_directory:
            return DirectoryTail(
                client_id,
                path,
                self._observer,
                self._emit,
                self.config,
                on_failure=self._machine_failed,
                attach_child=self.attach_child,
                detach_child=self.detach_child,
            )
        return FileTail(
            client_id,
            path,
            self._observer,
            self._emit,
            self.config,
            on_failure=self._machine_failed,
        )

    def _allocate_id(self) -> int:
        if self._next_id > MAX_CLIENT_ID:
            raise ClientIdExhaustedError("Client id space exhausted")
        max_watches = self.config.max_watches
        if max_watches is not None and len(self._records) + self._reserved >= max_watches:
            raise ClientIdExhaustedError(f"Too many active watches (limit {max_watches})")
        client_id = self._next_id
        self._next_id += 1
        return client_id

    def remove(self, client_id: int) -> bool:
        """
        Stop and deregister a watch.

        Once this returns, no callback for the client is running and none
        will be started.

        Args:
            client_id: Client to remove

        Returns:
            True if the client was removed, False if not found
        """
        with self._lock:
            record = self._records.pop(client_id, None)
            if record is None:
                return False
            children = [
                self._children.pop(key)
                for key in [k for k in self._children if k[0] == client_id]
            ]

        record.deactivate()

        machines = [record.machine] + children
        for machine in machines:
            machine.stop()
        for machine in machines:
            machine.join(timeout=self.config.stop_timeout_s)

        logger.info(f"Client {client_id} stopped watching {record.path}")
        return True

    def remove_all(self) -> int:
        """
        Stop and deregister every watch.

        Returns:
            Number of watches removed
        """
        count = 0
        for client_id in self.client_ids():
            if self.remove(client_id):
                count += 1
        return count

    def lookup(self, client_id: int) -> Optional[WatchRecord]:
        """
        Get the record of an active client.

        Args:
            client_id: Client to look up

        Returns:
            The record, or None if the client is not registered
        """
        with self._lock:
            return self._records.get(client_id)

    def attach_child(self, client_id: int, path: Path, machine: WatchMachine) -> bool:
        """
        Index a directory child under its client.

        Returns:
            True if attached, False if the client is no longer registered
        """
        with self._lock:
            if client_id not in self._records:
                return False
            self._children[(client_id, path)] = machine
            return True

    def detach_child(self, client_id: int, path: Path, machine: WatchMachine) -> None:
        """Drop a directory child from the index if it is still the indexed machine."""
        with self._lock:
            if self._children.get((client_id, path)) is machine:
                del self._children[(client_id, path)]

    def children_of(self, client_id: int) -> List[Path]:
        """
        Get the child files followed for a directory client.

        Returns:
            Sorted list of child paths
        """
        with self._lock:
            return sorted(path for cid, path in self._children if cid == client_id)

    def client_ids(self) -> List[int]:
        """
        Get the currently registered client ids.

        Returns:
            Sorted list of client ids
        """
        with self._lock:
            return sorted(self._records)

    def _machine_failed(self, machine: WatchMachine, reason: str) -> None:
        logger.warning(f"Removing client {machine.client_id} after observer failure: {reason}")
        self.remove(machine.client_id)

    def __len__(self) -> int:
        """Return the number of active watches."""
        with self._lock:
            return len(self._records)

    def __contains__(self, client_id: int) -> bool:
        """Check if a client id is registered."""
        with self._lock:
            return client_id in self._records
