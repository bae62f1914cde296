"""One long-lived websocket stream to one provider.

The model, synthesis and render streams all go through the same Transport
so the session can treat them uniformly and tests can swap in a fake
connector.

Lifecycle: CLOSED -> CONNECTING -> OPEN -> CLOSING -> CLOSED. A connection
lost while OPEN drops straight to CLOSED and, if reconnect is armed, gets
an epoch-tagged reconnect attempt after a short delay.
"""

import asyncio
import inspect
import json
import logging
from enum import Enum
from typing import Any, Awaitable, Callable

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from config import MAX_PROTOCOL_FAILURES, MAX_RECONNECT_ATTEMPTS, RECONNECT_DELAY
from errors import NotOpenError, ProtocolError, TransportConnectionError
from interruption import Epoch

logger = logging.getLogger(__name__)

MessageHandler = Callable[[Any], Awaitable[None] | None]


class TransportState(Enum):
    CLOSED = "closed"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"


class Transport:
    """Bidirectional stream with auto-reconnect and a single message handler.

    Args:
        name: short label used in logs and events ("model", "synthesis", "render")
        endpoint: websocket URL
        epoch: shared interruption epoch, used to tag deferred reconnects
        credential: provider credential; connect() refuses to run without one
        on_open: async hook(transport) sent provider setup payloads after open
        on_close: hook(transport, reason) fired when the peer drops the stream
        on_unavailable: hook(transport, error) fired when a lost stream
            cannot be recovered
        should_reconnect: predicate, True while the owning session is live
        auto_reconnect: reconnect policy, re-armed on every successful open
        connector: async callable(endpoint, **kwargs) returning a connection;
            defaults to websockets.connect
    """

    def __init__(self, name: str, endpoint: str, epoch: Epoch, *,
                 credential: str | None = None,
                 on_open: Callable[["Transport"], Awaitable[None]] | None = None,
                 on_close: Callable[["Transport", str], None] | None = None,
                 on_unavailable: Callable[["Transport", Exception], None] | None = None,
                 should_reconnect: Callable[[], bool] | None = None,
                 auto_reconnect: bool = True,
                 reconnect_delay: float = RECONNECT_DELAY,
                 max_reconnect_attempts: int = MAX_RECONNECT_ATTEMPTS,
                 max_protocol_failures: int = MAX_PROTOCOL_FAILURES,
                 connector=None, connect_kwargs: dict | None = None):
        self.name = name
        self.endpoint = endpoint
        self._epoch = epoch
        self._credential = credential
        self._on_open = on_open
        self._on_close = on_close
        self._on_unavailable = on_unavailable
        self._should_reconnect = should_reconnect or (lambda: True)
        self.auto_reconnect = auto_reconnect
        self._reconnect_delay = reconnect_delay
        self._max_reconnect_attempts = max_reconnect_attempts
        self._max_protocol_failures = max_protocol_failures
        self._connector = connector or websockets.connect
        self._connect_kwargs = connect_kwargs if connect_kwargs is not None else {
            "ping_interval": 20,
            "max_size": None,
        }

        self.state = TransportState.CLOSED
        self._conn = None
        self._handler: MessageHandler | None = None
        self._receive_task: asyncio.Task | None = None
        self._reconnect_armed = False
        self._reconnect_attempts = 0
        self._protocol_failures = 0
        # Bumped by close(); a connect() that started before it is discarded
        self._attempt = 0
        self._background: set[asyncio.Task] = set()

    def __repr__(self):
        return f"Transport({self.name!r}, {self.state.value})"

    @property
    def is_open(self) -> bool:
        return self.state is TransportState.OPEN

    @property
    def reconnect_armed(self) -> bool:
        return self._reconnect_armed

    # ── Lifecycle ─────────────────────────────────────────────────

    async def connect(self):
        """Open the stream and run the on_open hook.

        Raises TransportConnectionError on a missing credential, an
        unreachable endpoint, a rejected handshake, a failing on_open hook,
        or a close() that lands while connecting.
        """
        if self.state in (TransportState.OPEN, TransportState.CONNECTING):
            return
        if not self._credential:
            raise TransportConnectionError(
                f"{self.name} stream has no credential", transport=self.name)

        attempt = self._attempt
        self.state = TransportState.CONNECTING
        logger.info("Transport[%s]: Connecting", self.name)
        try:
            conn = await self._connector(self.endpoint, **self._connect_kwargs)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            if attempt == self._attempt:
                self.state = TransportState.CLOSED
            raise TransportConnectionError(
                f"{self.name} stream failed to open: {e}", transport=self.name) from e

        if attempt != self._attempt:
            await self._discard(conn)
            raise TransportConnectionError(
                f"{self.name} stream closed while connecting", transport=self.name)

        self._conn = conn
        self.state = TransportState.OPEN
        self._reconnect_armed = self.auto_reconnect
        self._protocol_failures = 0
        self._receive_task = asyncio.get_running_loop().create_task(
            self._receive_loop(conn), name=f"transport-{self.name}")

        if self._on_open:
            try:
                await self._on_open(self)
            except (NotOpenError, ConnectionClosed) as e:
                await self.close()
                raise TransportConnectionError(
                    f"{self.name} stream setup failed: {e}", transport=self.name) from e

        self._reconnect_attempts = 0
        logger.info("Transport[%s]: Open", self.name)

    async def close(self):
        """Close the stream on purpose. Idempotent.

        Reconnect is disarmed before anything else so a stale reconnect
        cannot reopen the stream after shutdown.
        """
        self._reconnect_armed = False
        self._attempt += 1
        self._handler = None
        if self.state is TransportState.CLOSED:
            return
        if self.state is TransportState.CONNECTING:
            # connect() sees the bumped attempt counter and discards its connection
            self.state = TransportState.CLOSED
            return

        self.state = TransportState.CLOSING
        conn, self._conn = self._conn, None
        task, self._receive_task = self._receive_task, None
        if task and task is not asyncio.current_task():
            task.cancel()
        if conn is not None:
            await self._discard(conn)
        self.state = TransportState.CLOSED
        logger.info("Transport[%s]: Closed", self.name)

    async def _discard(self, conn):
        try:
            await conn.close()
        except (OSError, WebSocketException) as e:
            logger.debug("Transport[%s]: Error closing connection: %s", self.name, e)

    # ── Messaging ─────────────────────────────────────────────────

    async def send(self, payload):
        """Send a dict (as JSON), a str (as text) or bytes (as binary)."""
        if self.state is not TransportState.OPEN or self._conn is None:
            raise NotOpenError(f"{self.name} stream is {self.state.value}")
        if isinstance(payload, dict):
            payload = json.dumps(payload)
        try:
            await self._conn.send(payload)
        except ConnectionClosed as e:
            raise NotOpenError(f"{self.name} stream closed during send: {e}") from e

    def on_message(self, handler: MessageHandler | None):
        """Register the active handler, or detach with None.

        Takes effect for the next message the receive loop dispatches.
        """
        self._handler = handler

    async def _receive_loop(self, conn):
        reason = "closed by peer"
        try:
            async for raw in conn:
                if self._conn is not conn:
                    break
                await self._dispatch(raw)
        except ConnectionClosed as e:
            reason = str(e) or reason

        if self._conn is conn and self.state is TransportState.OPEN:
            self._connection_lost(reason)

    async def _dispatch(self, raw):
        handler = self._handler
        if handler is None:
            logger.debug("Transport[%s]: No handler, dropping message", self.name)
            return
        try:
            result = handler(raw)
            if inspect.isawaitable(result):
                await result
        except ProtocolError as e:
            self.record_protocol_error(e)
        except Exception:
            logger.exception("Transport[%s]: Message handler failed", self.name)
        else:
            self._protocol_failures = 0

    def record_protocol_error(self, error):
        """Count a malformed message; too many in a row drops the stream."""
        self._protocol_failures += 1
        logger.warning("Transport[%s]: Protocol error (%d/%d): %s", self.name,
                       self._protocol_failures, self._max_protocol_failures, error)
        if self._protocol_failures >= self._max_protocol_failures and self._conn is not None:
            logger.error("Transport[%s]: Stream unusable, dropping connection", self.name)
            self._protocol_failures = 0
            conn = self._conn
            self._connection_lost("too many protocol errors")
            task = asyncio.get_running_loop().create_task(self._discard(conn))
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    # ── Reconnect policy ──────────────────────────────────────────

    def _connection_lost(self, reason: str):
        self.state = TransportState.CLOSED
        self._conn = None
        task, self._receive_task = self._receive_task, None
        if task and task is not asyncio.current_task():
            task.cancel()
        logger.warning("Transport[%s]: Connection lost (%s)", self.name, reason)
        if self._on_close:
            self._on_close(self, reason)

        if not self._should_reconnect():
            return
        if self._reconnect_armed:
            self.schedule_reconnect()
        else:
            self._give_up(TransportConnectionError(
                f"{self.name} stream lost with reconnect disabled: {reason}",
                transport=self.name))

    def arm_reconnect(self):
        """Re-enable auto-reconnect for a stream the owner closed and wants back."""
        self._reconnect_armed = self.auto_reconnect

    def schedule_reconnect(self):
        """Queue one reconnect attempt, tagged with the current epoch.

        Does nothing while reconnect is disarmed; only close() disarms it,
        and only connect() or arm_reconnect() arm it again.
        """
        if not self._reconnect_armed:
            logger.debug("Transport[%s]: Reconnect disarmed, not scheduling", self.name)
            return None
        logger.info("Transport[%s]: Reconnecting in %.0fms (epoch %d)",
                    self.name, self._reconnect_delay * 1000, self._epoch.value)
        return self._epoch.defer(self._reconnect_delay, self._reconnect,
                                 label=f"{self.name} reconnect")

    async def _reconnect(self):
        if self.state is not TransportState.CLOSED or not self._should_reconnect():
            return
        if not self._reconnect_armed:
            logger.debug("Transport[%s]: Reconnect disarmed, skipping", self.name)
            return
        attempt = self._attempt
        try:
            await self.connect()
        except TransportConnectionError as e:
            if attempt != self._attempt or not self._reconnect_armed:
                logger.debug("Transport[%s]: Closed during reconnect, giving up quietly",
                             self.name)
                return
            self._reconnect_attempts += 1
            if self._reconnect_attempts >= self._max_reconnect_attempts:
                self._give_up(e)
            else:
                logger.warning("Transport[%s]: Reconnect failed (%s), attempt %d/%d",
                               self.name, e, self._reconnect_attempts,
                               self._max_reconnect_attempts)
                self.schedule_reconnect()

    def _give_up(self, error: Exception):
        self._reconnect_armed = False
        logger.error("Transport[%s]: Unavailable: %s", self.name, error)
        if self._on_unavailable:
            self._on_unavailable(self, error)
