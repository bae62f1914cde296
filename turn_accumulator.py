"""Collects streamed model text into one spoken turn.

Fragments are forwarded to synthesis the moment they arrive so speech can
start before the model finishes the turn. The accumulated text is only
needed for the transcript and for deciding whether a flush is due.
"""

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


@dataclass
class Turn:
    """One continuous block of model text meant to be spoken as one utterance."""
    fragments: list[str] = field(default_factory=list)
    open: bool = True

    @property
    def text(self) -> str:
        return "".join(self.fragments)


class TurnAccumulator:
    """At most one open Turn; forwards fragments and flushes on completion.

    Args:
        forward: async callable(text) sending a fragment to synthesis
        flush: async callable() asking synthesis to generate what it holds
    """

    def __init__(self, forward: Callable[[str], Awaitable[None]],
                 flush: Callable[[], Awaitable[None]]):
        self._forward = forward
        self._flush = flush
        self._turn: Turn | None = None

    @property
    def is_open(self) -> bool:
        return self._turn is not None and self._turn.open

    @property
    def text(self) -> str:
        return self._turn.text if self.is_open else ""

    async def append_fragment(self, text: str):
        if not self.is_open:
            self._turn = Turn()
        self._turn.fragments.append(text)
        await self._forward(text)

    async def complete_turn(self) -> str:
        """Close the open turn and return its text, flushing synthesis if non-empty."""
        turn, self._turn = self._turn, None
        if turn is None:
            return ""
        turn.open = False
        full_text = turn.text.strip()
        if full_text:
            await self._flush()
        return full_text

    def reset_on_interrupt(self):
        """Drop the open turn without forwarding or flushing anything."""
        if self.is_open:
            logger.debug("Turn discarded on interrupt: %r", self._turn.text[:80])
        self._turn = None
