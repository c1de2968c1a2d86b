"""Delimiter-based line framing for serial data."""
from __future__ import annotations


class LineFramer:
    """Split a byte stream into lines on a fixed delimiter.

    Lines are returned without the delimiter. An empty line on the wire
    (two delimiters back to back) is returned as an empty string. Bytes after
    the last delimiter are buffered until more data arrives.
    """

    def __init__(self, delimiter: str, encoding: str = 'utf-8') -> None:
        if not delimiter:
            raise ValueError("delimiter must be a non-empty string")
        self.encoding = encoding
        self._delimiter = delimiter.encode(encoding)
        self._buffer = b''

    def feed(self, data: bytes) -> list[str]:
        self._buffer += data
        parts = self._buffer.split(self._delimiter)
        self._buffer = parts.pop()
        return [part.decode(self.encoding, errors='replace') for part in parts]

    def frame(self, data: bytes) -> bytes:
        """Append the delimiter to an outgoing line."""
        return data + self._delimiter

    @property
    def pending(self) -> bytes:
        return self._buffer
