"""Bounded transcript of what the avatar said this session.

Only the most recent turns are kept; older ones fall off the front. The
transcript is never persisted across sessions.
"""

import time
from collections import deque
from dataclasses import dataclass, field

from config import TRANSCRIPT_SIZE

_SOURCE_LABELS = {"ai": "AI", "user": "User"}


@dataclass(frozen=True)
class TranscriptEntry:
    """A single completed turn."""
    text: str
    source: str = "ai"
    timestamp: float = field(default_factory=time.time)

    def __str__(self):
        label = _SOURCE_LABELS.get(self.source, self.source)
        return f"{label}: {self.text}"


class Transcript:
    """Ring buffer of the last max_entries turns."""

    def __init__(self, max_entries: int = TRANSCRIPT_SIZE):
        self._entries: deque = deque(maxlen=max_entries)

    def append(self, text: str, source: str = "ai") -> TranscriptEntry:
        entry = TranscriptEntry(text=text, source=source)
        self._entries.append(entry)
        return entry

    def lines(self) -> list[str]:
        """Entries formatted as "AI: text", oldest first."""
        return [str(e) for e in self._entries]

    def clear(self):
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self):
        return iter(self._entries)
