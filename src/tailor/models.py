"""Data models for the tailor package."""

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from pathlib import Path
from typing import Optional, Tuple
import os
import time


INVALID_CLIENT_ID = -1
MAX_CLIENT_ID = 2 ** 31 - 1


class MessageType(IntEnum):
    """Message types passed to the new-lines callback."""
    NEW_FILE_STARTED = 0
    NEW_LINES_ADDED = 1


NEW_FILE_STARTED = MessageType.NEW_FILE_STARTED
NEW_LINES_ADDED = MessageType.NEW_LINES_ADDED


class ObserverEventKind(Enum):
    """Types of path observer events."""
    GREW = "grew"
    CREATED = "created"
    REPLACED = "replaced"
    REMOVED = "removed"
    ERROR = "error"


class WatchState(Enum):
    """Lifecycle states of a watch."""
    STARTING = "starting"
    ACTIVE = "active"
    STOPPED = "stopped"


@dataclass(frozen=True)
class FileIdentity:
    """
    Identity of a file on disk, independent of its name.
    
    Attributes:
        device: Device number of the filesystem holding the file
        inode: Inode (or file index on Windows) within that device
    """
    device: int
    inode: int

    @classmethod
    def from_stat(cls, st: os.stat_result) -> "FileIdentity":
        """Create from an os.stat / os.fstat result."""
        return cls(device=st.st_dev, inode=st.st_ino)


@dataclass(frozen=True)
class TailEvent:
    """
    An event ready for delivery to a client.
    
    Attributes:
        client_id: The watch this event belongs to
        msg_type: NEW_FILE_STARTED or NEW_LINES_ADDED
        lines: Complete lines, without terminators
        path: The file the lines were read from
        timestamp: Unix timestamp when the event was produced
    """
    client_id: int
    msg_type: MessageType
    path: Path
    lines: Tuple[str, ...] = ()
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self):
        if not self.path.is_absolute():
            raise ValueError(f"path must be absolute: {self.path}")
        if not isinstance(self.lines, tuple):
            object.__setattr__(self, "lines", tuple(self.lines))

    def __len__(self) -> int:
        return len(self.lines)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "client_id": self.client_id,
            "msg_type": int(self.msg_type),
            "path": str(self.path),
            "lines": list(self.lines),
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TailEvent":
        """Create from dictionary."""
        return cls(
            client_id=data["client_id"],
            msg_type=MessageType(data["msg_type"]),
            path=Path(data["path"]),
            lines=tuple(data.get("lines", ())),
            timestamp=data.get("timestamp", time.time()),
        )


@dataclass
class ObserverEvent:
    """
    Event reported by a path observer subscription.
    
    Attributes:
        kind: What happened to the path
        path: The subscribed file, or the new child for CREATED
        size: Observed size for GREW events
        source: Previous path when a CREATED child was renamed into place
        error: Description of the failure for ERROR events
        timestamp: Unix timestamp when the event was observed
    """
    kind: ObserverEventKind
    path: Path
    size: Optional[int] = None
    source: Optional[Path] = None
    error: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


@dataclass
class RawFSEvent:
    """
    Raw event from the filesystem watcher before translation.

    Attributes:
        event_type: Raw event type string (created, deleted, modified, moved, closed)
        src_path: Source path of the event
        dest_path: Destination path (for move events)
        is_directory: Whether this is a directory event
        timestamp: Unix timestamp when the event occurred
    """
    event_type: str
    src_path: Path
    dest_path: Optional[Path] = None
    is_directory: bool = False
    timestamp: float = field(default_factory=time.time)
