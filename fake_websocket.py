"""In-memory stand-ins for websocket connections, used by the tests.

FakeConnector replaces websockets.connect: every call records a
FakeConnection that tests can feed inbound messages into, drop from the
"server" side, and inspect for outbound sends.
"""

import asyncio
import json

from websockets.exceptions import ConnectionClosedOK

_CLOSED = object()


class FakeConnection:
    def __init__(self, endpoint):
        self.endpoint = endpoint
        self.sent = []
        self.closed = False
        self._inbox = asyncio.Queue()

    async def send(self, data):
        if self.closed:
            raise ConnectionClosedOK(None, None)
        self.sent.append(data)

    def sent_json(self) -> list[dict]:
        """Outbound text frames decoded as JSON (binary and plain-text frames skipped)."""
        out = []
        for data in self.sent:
            if isinstance(data, str):
                try:
                    out.append(json.loads(data))
                except ValueError:
                    continue
        return out

    def sent_binary(self) -> list[bytes]:
        return [d for d in self.sent if isinstance(d, bytes)]

    def feed(self, message):
        """Deliver an inbound frame; dicts are JSON-encoded."""
        if isinstance(message, dict):
            message = json.dumps(message)
        self._inbox.put_nowait(message)

    def drop(self):
        """Simulate the server closing the stream."""
        self.closed = True
        self._inbox.put_nowait(_CLOSED)

    async def close(self):
        self.closed = True
        self._inbox.put_nowait(_CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self):
        message = await self._inbox.get()
        if message is _CLOSED:
            raise StopAsyncIteration
        return message


class FakeConnector:
    """Callable matching websockets.connect(url, **kwargs).

    Endpoints containing any of the fail_for substrings raise OSError.
    """

    def __init__(self, fail_for=()):
        self.fail_for = set(fail_for)
        self.connections: list[FakeConnection] = []
        self.calls: list[str] = []

    async def __call__(self, endpoint, **kwargs):
        self.calls.append(endpoint)
        if any(s in endpoint for s in self.fail_for):
            raise OSError(f"unreachable: {endpoint}")
        conn = FakeConnection(endpoint)
        self.connections.append(conn)
        return conn

    def for_endpoint(self, fragment: str) -> list[FakeConnection]:
        return [c for c in self.connections if fragment in c.endpoint]

    def latest(self, fragment: str) -> FakeConnection:
        conns = self.for_endpoint(fragment)
        assert conns, f"no connection opened for {fragment!r}"
        return conns[-1]
