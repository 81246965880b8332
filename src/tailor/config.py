"""Configuration for the tailor package."""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import List, Optional


@dataclass
class TailorConfig:
    """
    Configuration options for the tailing engine.
    
    Attributes:
        encoding: Text encoding used to decode complete lines
        encoding_errors: Error policy passed to bytes.decode
        use_polling: Use watchdog's PollingObserver instead of OS events
        poll_interval_ms: Interval of the PollingObserver
        active_poll_ms: Idle re-check interval right after lines were read
        standby_poll_ms: Upper bound the idle re-check interval backs off to
        recursive: Whether directory watches include files in subdirectories
        backfill_existing: Whether files already present in a watched
            directory are delivered from offset 0
        ignore_hidden: Skip files whose name starts with a dot in directories
        ignore_patterns: Glob patterns for directory children to ignore
        max_batch_lines: Upper bound of lines in one coalesced delivery
        max_fragment_bytes: Emit an unterminated fragment once it grows past
            this many bytes (None keeps it until a terminator arrives)
        max_watches: Maximum number of simultaneously active watches
        stop_timeout_s: How long to wait for a watch thread to exit
        read_chunk_bytes: Size of a single read from a tailed file
    """
    encoding: str = "utf-8"
    encoding_errors: str = "replace"
    use_polling: bool = False
    poll_interval_ms: int = 1000
    active_poll_ms: int = 100
    standby_poll_ms: int = 2000
    recursive: bool = False
    backfill_existing: bool = False
    ignore_hidden: bool = True
    ignore_patterns: List[str] = field(default_factory=lambda: [
        "*.swp",
        "*.swo",
        "*~",
        "*.tmp",
    ])
    max_batch_lines: int = 10000
    max_fragment_bytes: Optional[int] = None
    max_watches: Optional[int] = None
    stop_timeout_s: float = 5.0
    read_chunk_bytes: int = 65536

    def __post_init__(self):
        if self.active_poll_ms <= 0 or self.standby_poll_ms <= 0:
            raise ValueError("poll intervals must be positive")
        if self.active_poll_ms > self.standby_poll_ms:
            raise ValueError("active_poll_ms must not exceed standby_poll_ms")
        if self.max_batch_lines <= 0:
            raise ValueError("max_batch_lines must be positive")

    def should_ignore(self, path: Path) -> bool:
        """
        Check if a directory child should be ignored.
        
        Args:
            path: Path to check
            
        Returns:
            True if the path should not be tailed
        """
        import fnmatch
        
        name = path.name
        
        if self.ignore_hidden and name.startswith("."):
            return True
        
        for pattern in self.ignore_patterns:
            if fnmatch.fnmatch(name, pattern):
                return True
        
        return False

    @classmethod
    def from_env(cls, prefix: str = "TAILOR_", **overrides) -> "TailorConfig":
        """
        Build a config from environment variables.
        
        Each field can be set through ``<prefix><FIELD_NAME>``, e.g.
        ``TAILOR_USE_POLLING=1`` or ``TAILOR_IGNORE_PATTERNS=*.gz,*.bak``.
        Keyword overrides win over the environment.
        """
        values = {}
        for f in fields(cls):
            raw = os.environ.get(f"{prefix}{f.name.upper()}")
            if raw is None:
                continue
            values[f.name] = _parse_env_value(f.name, raw)
        values.update(overrides)
        return cls(**values)


_BOOL_FIELDS = {"use_polling", "recursive", "backfill_existing", "ignore_hidden"}
_INT_FIELDS = {
    "poll_interval_ms",
    "active_poll_ms",
    "standby_poll_ms",
    "max_batch_lines",
    "read_chunk_bytes",
}
_OPTIONAL_INT_FIELDS = {"max_fragment_bytes", "max_watches"}


def _parse_env_value(name: str, raw: str):
    raw = raw.strip()
    if name in _BOOL_FIELDS:
        return raw.lower() in ("1", "true", "yes", "on")
    if name in _INT_FIELDS:
        return int(raw)
    if name in _OPTIONAL_INT_FIELDS:
        return int(raw) if raw else None
    if name == "stop_timeout_s":
        return float(raw)
    if name == "ignore_patterns":
        return [p.strip() for p in raw.split(",") if p.strip()]
    return raw
