"""Barge-in handling: the interruption epoch and the controller state machine.

When the model reports that the user started talking, the avatar must go
quiet at once. Dropping stale synthesis audio relies on detaching the
synthesis handler and closing that stream, not on checking a flag: messages
already queued behind a flag check would still slip through. The flag
(forwarding_allowed) is only a second line of defence.

Every deferred action (reconnect, recovery) captures the epoch when it is
scheduled and does nothing if the epoch moved on before it fires.
"""

import asyncio
import inspect
import logging
from enum import Enum
from typing import Awaitable, Callable

from config import RECOVERY_DELAY

logger = logging.getLogger(__name__)


class Epoch:
    """Monotonic interruption counter plus the deferred tasks tagged with it."""

    def __init__(self):
        self._value = 0
        self._pending: set[asyncio.Task] = set()

    @property
    def value(self) -> int:
        return self._value

    def advance(self) -> int:
        self._value += 1
        return self._value

    def defer(self, delay: float, action: Callable[[], Awaitable[None] | None],
              label: str = "deferred action") -> asyncio.Task:
        """Run action after delay, unless the epoch has advanced by then.

        The task result is True if the action ran, False if it was abandoned.
        """
        captured = self._value

        async def fire():
            await asyncio.sleep(delay)
            if self._value != captured:
                logger.debug("Epoch: %s abandoned (scheduled at %d, now %d)",
                             label, captured, self._value)
                return False
            try:
                result = action()
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Epoch: %s failed", label)
            return True

        task = asyncio.get_running_loop().create_task(fire())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    @property
    def pending(self) -> int:
        return len(self._pending)

    def cancel_pending(self):
        """Cancel every outstanding deferred action except the caller's own."""
        current = asyncio.current_task()
        for task in list(self._pending):
            if task is not current:
                task.cancel()


class InterruptionState(Enum):
    STEADY = "steady"
    INTERRUPTING = "interrupting"
    RECOVERING = "recovering"


class InterruptionController:
    """Silences synthesis and render on barge-in, then restores them.

    Args:
        epoch: the session's interruption epoch
        synthesis: synthesis Transport (detached and closed on interrupt)
        renderer: render collaborator with an async clear_buffer()
        accumulator: TurnAccumulator reset on interrupt
        resume_synthesis: async callable that re-attaches the synthesis
            handler and reconnects; called when recovery fires
        is_active: predicate, True while a turn is open or audio is flowing
        on_state_change: callback(InterruptionState)
        recovery_delay: seconds between cleanup and resumption
    """

    def __init__(self, epoch: Epoch, synthesis, renderer, accumulator,
                 resume_synthesis: Callable[[], Awaitable[None]],
                 is_active: Callable[[], bool] = lambda: True,
                 on_state_change: Callable[[InterruptionState], None] | None = None,
                 recovery_delay: float = RECOVERY_DELAY):
        self._epoch = epoch
        self._synthesis = synthesis
        self._renderer = renderer
        self._accumulator = accumulator
        self._resume_synthesis = resume_synthesis
        self._is_active = is_active
        self._on_state_change = on_state_change or (lambda s: None)
        self._recovery_delay = recovery_delay

        self.state = InterruptionState.STEADY
        self.interrupt_count = 0

    @property
    def forwarding_allowed(self) -> bool:
        """Text may reach synthesis and audio may reach render only when steady."""
        return self.state is InterruptionState.STEADY

    def _set_state(self, state: InterruptionState):
        if state is not self.state:
            self.state = state
            self._on_state_change(state)

    async def interrupt(self) -> bool:
        """Handle a user-speech signal. Returns False if there was nothing to cut."""
        if self.state is InterruptionState.STEADY and not self._is_active():
            logger.debug("Barge-in: Nothing speaking, ignoring interruption signal")
            return False

        # Everything up to the first await runs without yielding, so no
        # handler can observe a half-interrupted session.
        epoch = self._epoch.advance()
        self.interrupt_count += 1
        self._synthesis.on_message(None)
        self._accumulator.reset_on_interrupt()
        self._set_state(InterruptionState.INTERRUPTING)
        logger.info("Barge-in: Interrupting (epoch %d)", epoch)

        # Render first: the synthesis close handshake can take a network round trip
        await self._renderer.clear_buffer()
        await self._synthesis.close()

        if self._epoch.value != epoch:
            # A newer interruption arrived during cleanup and owns recovery
            return True
        self._set_state(InterruptionState.RECOVERING)
        self._epoch.defer(self._recovery_delay, self._recover, label="barge-in recovery")
        return True

    async def _recover(self):
        epoch = self._epoch.value
        logger.info("Barge-in: Resuming synthesis (epoch %d)", epoch)
        try:
            await self._resume_synthesis()
        finally:
            if self._epoch.value == epoch:
                self._set_state(InterruptionState.STEADY)

    def reset(self):
        """Return to steady state without side effects (session stop)."""
        self.state = InterruptionState.STEADY
