"""Split a chunked byte stream into text lines.

Pipe reads return arbitrary chunks; a line can span several of them.
``LineSplitter`` buffers bytes until a newline arrives, emits each complete
line, and keeps any trailing partial line for the next ``feed()``.
"""

from __future__ import annotations


class LineSplitter:
    """Stateful chunk-to-line splitter.

    Lines are decoded with ``encoding`` (undecodable bytes are replaced) and
    returned without their terminator; a trailing ``\\r`` is stripped so
    CRLF output splits the same as LF output.
    """

    def __init__(self, encoding: str = "utf-8") -> None:
        self.encoding = encoding
        self._buffer = bytearray()

    @property
    def pending(self) -> bytes:
        """Bytes received after the last newline."""
        return bytes(self._buffer)

    def feed(self, chunk: bytes | None) -> list[str]:
        """Add ``chunk`` and return the lines it completed, in order."""
        if not chunk:
            return []
        self._buffer.extend(chunk)

        lines: list[str] = []
        while True:
            idx = self._buffer.find(b"\n")
            if idx < 0:
                break
            raw = bytes(self._buffer[:idx])
            del self._buffer[: idx + 1]
            lines.append(self._decode(raw))
        return lines

    def flush(self) -> list[str]:
        """Return the trailing partial line (if any) and reset the buffer.

        Call at end of stream.
        """
        if not self._buffer:
            return []
        raw = bytes(self._buffer)
        self._buffer.clear()
        return [self._decode(raw)]

    def _decode(self, raw: bytes) -> str:
        if raw.endswith(b"\r"):
            raw = raw[:-1]
        return raw.decode(self.encoding, errors="replace")
