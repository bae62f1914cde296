"""Session event bus: in-process callbacks plus an optional JSONL log.

The hosting UI subscribes to status, transcript and error events. When a
log directory is configured every event is also appended as one JSON line
to <log_dir>/<sid>/events.jsonl, for after-the-fact debugging of barge-in
timing.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable

logger = logging.getLogger(__name__)

# Long string payload values are cut to this many characters in the log
_MAX_VALUE_CHARS = 500


class EventType(str, Enum):
    STATUS = "status"
    TRANSPORT_OPEN = "transport_open"
    TRANSPORT_CLOSED = "transport_closed"
    RENDER_CONNECTED = "render_connected"
    RENDER_DISCONNECTED = "render_disconnected"
    TURN_COMPLETE = "turn_complete"
    BARGE_IN = "barge_in"
    RECOVERED = "recovered"
    ERROR = "error"


@dataclass
class SessionEvent:
    """One event: timestamp, source, type, interruption epoch, session id, payload."""
    ts: float
    src: str
    type: str
    epoch: int
    sid: str
    payload: dict = field(default_factory=dict)

    def to_json_line(self) -> str:
        payload = {}
        for key, val in self.payload.items():
            if isinstance(val, str) and len(val) > _MAX_VALUE_CHARS:
                val = val[:_MAX_VALUE_CHARS] + "...[truncated]"
            payload[key] = val
        data = {"ts": self.ts, "src": self.src, "type": self.type,
                "epoch": self.epoch, "sid": self.sid, **payload}
        return json.dumps(data, separators=(",", ":"), default=str) + "\n"

    @classmethod
    def from_json_line(cls, line: str) -> "SessionEvent":
        data = json.loads(line)
        core = {k: data.pop(k) for k in ("ts", "src", "type", "epoch", "sid")}
        return cls(**core, payload=data)


class SessionEventBus:
    """Fan-out of session events to registered callbacks and the JSONL log.

    Usage:
        bus = SessionEventBus("20261019_141500", log_dir=Path("~/avatar-logs"))
        bus.on(EventType.TURN_COMPLETE, show_line)
        bus.on("*", record_everything)
        bus.emit(EventType.STATUS, epoch=0, status="active")
        bus.close()
    """

    def __init__(self, sid: str, src: str = "avatar_session", log_dir: Path | None = None):
        self.sid = sid
        self._src = src
        self._log_path = Path(log_dir).expanduser() / sid / "events.jsonl" if log_dir else None
        self._file = None
        self._callbacks: dict[str, list[Callable]] = {}

    @property
    def log_path(self) -> Path | None:
        return self._log_path

    def on(self, event_type, callback: Callable[[SessionEvent], None]):
        """Register callback for an EventType (or its value), or "*" for all."""
        key = event_type.value if isinstance(event_type, EventType) else event_type
        self._callbacks.setdefault(key, []).append(callback)

    def emit(self, event_type, epoch: int = 0, **payload) -> SessionEvent:
        key = event_type.value if isinstance(event_type, EventType) else event_type
        evt = SessionEvent(ts=time.time(), src=self._src, type=key,
                           epoch=epoch, sid=self.sid, payload=payload)
        self._write(evt)
        for cb_type in (key, "*"):
            for cb in self._callbacks.get(cb_type, []):
                try:
                    cb(evt)
                except Exception:
                    logger.exception("Session events: Callback error for %s", key)
        return evt

    def _write(self, evt: SessionEvent):
        if self._log_path is None:
            return
        try:
            if self._file is None:
                self._log_path.parent.mkdir(parents=True, exist_ok=True)
                self._file = open(self._log_path, "a")
            self._file.write(evt.to_json_line())
            self._file.flush()
        except OSError as e:
            logger.warning("Session events: Log write error: %s", e)

    def read_log(self, event_type=None) -> list[SessionEvent]:
        """Read back logged events, optionally filtered by type."""
        if self._log_path is None or not self._log_path.exists():
            return []
        key = event_type.value if isinstance(event_type, EventType) else event_type
        events = []
        with open(self._log_path) as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    evt = SessionEvent.from_json_line(line)
                except (json.JSONDecodeError, KeyError):
                    continue
                if key and evt.type != key:
                    continue
                events.append(evt)
        return events

    def close(self):
        if self._file:
            self._file.close()
            self._file = None
