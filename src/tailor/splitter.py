"""Turns raw byte appends into complete text lines."""

from typing import List, Optional


LINE_TERMINATOR = b"\n"


class LineSplitter:
    """
    Stateful line buffer for one tailed file.
    
    Splits strictly on the line terminator and keeps any trailing
    unterminated bytes until the next feed. The bytes fed so far always
    equal the emitted lines joined by terminators plus ``pending``.
    """

    def __init__(
        self,
        encoding: str = "utf-8",
        errors: str = "replace",
        max_fragment_bytes: Optional[int] = None,
    ):
        """
        Initialize the splitter.
        
        Args:
            encoding: Encoding used to decode complete lines
            errors: Decode error policy
            max_fragment_bytes: Emit the fragment as a line once it is
                longer than this (None disables the cap)
        """
        self.encoding = encoding
        self.errors = errors
        self.max_fragment_bytes = max_fragment_bytes
        self._fragment = b""

    @property
    def pending(self) -> bytes:
        """The retained unterminated fragment."""
        return self._fragment

    def feed(self, data: bytes) -> List[str]:
        """
        Add bytes and return the lines they complete.
        
        Args:
            data: Newly read bytes
            
        Returns:
            Complete lines in order, without terminators
        """
        if not data:
            return []
        
        buffer = self._fragment + data
        parts = buffer.split(LINE_TERMINATOR)
        self._fragment = parts.pop()
        
        lines = [self._decode(part) for part in parts]
        
        if self.max_fragment_bytes is not None and len(self._fragment) > self.max_fragment_bytes:
            lines.append(self._decode(self._fragment))
            self._fragment = b""
        
        return lines

    def reset(self) -> bytes:
        """
        Discard the retained fragment.
        
        Returns:
            The discarded bytes
        """
        fragment = self._fragment
        self._fragment = b""
        return fragment

    def _decode(self, raw: bytes) -> str:
        return raw.decode(self.encoding, self.errors)

    def __len__(self) -> int:
        """Return the number of buffered fragment bytes."""
        return len(self._fragment)
