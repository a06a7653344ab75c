"""Output normalization and bounded per-session chunk history."""

import re
from collections import deque
from typing import Optional

from .models import HistoryPolicy, OutputChunk

# OSC sequences (window titles, hyperlinks), terminated by BEL or ST
_OSC_RE = re.compile(r'\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)')
# CSI sequences: cursor movement, colors, erase, private modes
_CSI_RE = re.compile(r'\x1b\[[0-?]*[ -/]*[@-~]')
# Charset designation and keypad mode
_CHARSET_RE = re.compile(r'\x1b[()][A-Z0-9]|\x1b[=>]')
# Remaining two-byte escapes (Fe)
_FE_RE = re.compile(r'\x1b[@-Z\\-_]')
# Private-mode toggles whose ESC was consumed upstream
_BARE_PRIVATE_MODE_RE = re.compile(r'\[\?[0-9]+[hl]')
# C0 controls other than tab and newline
_CONTROL_RE = re.compile(r'[\x00-\x08\x0b-\x1f\x7f]')


def strip_control_sequences(text: str) -> str:
    """
    Remove terminal escape sequences and control characters.

    CRLF pairs become LF. Tabs and newlines survive, everything else below
    0x20 is dropped.
    """
    text = _OSC_RE.sub('', text)
    text = _CSI_RE.sub('', text)
    text = _CHARSET_RE.sub('', text)
    text = _FE_RE.sub('', text)
    text = _BARE_PRIVATE_MODE_RE.sub('', text)
    text = text.replace('\r\n', '\n')
    return _CONTROL_RE.sub('', text)


class OutputHistory:
    """
    Ordered chunk store owned by one Session.

    Not thread-safe on its own: the owning Session serializes every call
    under its lock.
    """

    def __init__(self, policy: HistoryPolicy, max_chunks: int = 5000):
        self.policy = policy
        self.max_chunks = 1 if policy == HistoryPolicy.REPLACE else max(1, max_chunks)
        self._chunks: deque[OutputChunk] = deque(maxlen=self.max_chunks)
        self.dropped = 0

    def record(self, chunk: OutputChunk) -> None:
        """Store a chunk according to the policy."""
        if self.policy == HistoryPolicy.REPLACE:
            self._chunks.clear()
        elif len(self._chunks) == self.max_chunks:
            self.dropped += 1
        self._chunks.append(chunk)

    def slice(self, limit: Optional[int] = None, offset: int = 0) -> list[OutputChunk]:
        """
        Return chunks [offset, offset + limit), clipped to bounds.

        Args:
            limit: Maximum number of chunks; None means everything from offset
            offset: Index of the first chunk (negative is treated as 0)

        Returns:
            A new list; an offset past the end yields an empty list
        """
        offset = max(0, offset or 0)
        if offset >= len(self._chunks):
            return []
        chunks = list(self._chunks)
        if limit is None:
            return chunks[offset:]
        return chunks[offset:offset + max(0, limit)]

    def latest(self) -> Optional[OutputChunk]:
        return self._chunks[-1] if self._chunks else None

    def __len__(self) -> int:
        return len(self._chunks)


class RecentText:
    """Rolling tail of normalized output used for prompt detection."""

    def __init__(self, max_chars: int = 4096):
        self.max_chars = max_chars
        self._text = ""

    def extend(self, text: str) -> str:
        self._text = (self._text + text)[-self.max_chars:]
        return self._text

    def replace(self, text: str) -> str:
        self._text = text[-self.max_chars:]
        return self._text

    @property
    def text(self) -> str:
        return self._text
