#!/usr/bin/env python3
"""Tests for the session event bus.

Tests: SessionEvent JSON round-trip and truncation, callbacks by type and
       wildcard, callback error containment, JSONL log and read_log filtering.

Run: python3 test_session_events.py
"""

import asyncio
import json
import sys
import tempfile
from pathlib import Path
from unittest.mock import MagicMock

sys.path.insert(0, str(Path(__file__).parent))

from session_events import EventType, SessionEvent, SessionEventBus

PASSED = 0
FAILED = 0
ERRORS = []


def test(name):
    def decorator(fn):
        fn._test_name = name
        return fn
    return decorator


def run_test(fn):
    global PASSED, FAILED
    name = getattr(fn, '_test_name', fn.__name__)
    try:
        if asyncio.iscoroutinefunction(fn):
            asyncio.run(fn())
        else:
            fn()
        PASSED += 1
        print(f"  PASS: {name}")
    except AssertionError as e:
        FAILED += 1
        ERRORS.append((name, str(e)))
        print(f"  FAIL: {name} -- {e}")
    except Exception as e:
        FAILED += 1
        ERRORS.append((name, f"{type(e).__name__}: {e}"))
        print(f"  ERROR: {name} -- {type(e).__name__}: {e}")


# ======================================================================
# Test Group 1: SessionEvent dataclass
# ======================================================================

@test("SessionEvent to_json_line produces one JSON line with payload inlined")
def test_event_to_json():
    evt = SessionEvent(ts=1760880000.0, src="avatar_session", type="status",
                       epoch=2, sid="20261019_141500", payload={"status": "active"})
    line = evt.to_json_line()
    assert line.endswith("\n")
    assert line.count("\n") == 1
    parsed = json.loads(line)
    assert parsed == {"ts": 1760880000.0, "src": "avatar_session", "type": "status",
                      "epoch": 2, "sid": "20261019_141500", "status": "active"}


@test("SessionEvent round-trips through JSON")
def test_event_roundtrip():
    original = SessionEvent(ts=1.5, src="s", type="turn_complete", epoch=0,
                            sid="x", payload={"text": "hello"})
    restored = SessionEvent.from_json_line(original.to_json_line())
    assert restored == original


@test("Long string payload values are truncated in the log line")
def test_event_truncation():
    evt = SessionEvent(ts=1.0, src="s", type="error", epoch=0, sid="x",
                       payload={"message": "x" * 2000})
    parsed = json.loads(evt.to_json_line())
    assert parsed["message"].endswith("...[truncated]")
    assert len(parsed["message"]) == 500 + len("...[truncated]")
    assert len(evt.payload["message"]) == 2000


# ======================================================================
# Test Group 2: Callbacks
# ======================================================================

@test("Callbacks fire for their own type and for the wildcard")
def test_callbacks_by_type():
    bus = SessionEventBus("sid")
    on_status = MagicMock()
    on_error = MagicMock()
    on_all = MagicMock()
    bus.on(EventType.STATUS, on_status)
    bus.on("error", on_error)
    bus.on("*", on_all)

    evt = bus.emit(EventType.STATUS, epoch=1, status="connecting")
    on_status.assert_called_once_with(evt)
    on_error.assert_not_called()
    assert on_all.call_count == 1
    assert evt.type == "status"
    assert evt.epoch == 1
    assert evt.payload == {"status": "connecting"}

    bus.emit(EventType.ERROR, message="boom")
    on_error.assert_called_once()
    assert on_all.call_count == 2


@test("A failing callback does not block the others")
def test_callback_error_contained():
    bus = SessionEventBus("sid")
    bad = MagicMock(side_effect=RuntimeError("ui gone"))
    good = MagicMock()
    bus.on(EventType.BARGE_IN, bad)
    bus.on(EventType.BARGE_IN, good)
    bus.emit(EventType.BARGE_IN, epoch=3)
    good.assert_called_once()


# ======================================================================
# Test Group 3: JSONL log
# ======================================================================

@test("Without a log directory nothing is written")
def test_no_log_dir():
    bus = SessionEventBus("sid")
    bus.emit(EventType.STATUS, status="idle")
    assert bus.log_path is None
    assert bus.read_log() == []


@test("Events are appended to <log_dir>/<sid>/events.jsonl and read back")
def test_log_written_and_read():
    with tempfile.TemporaryDirectory() as tmpdir:
        bus = SessionEventBus("20261019_141500", log_dir=Path(tmpdir))
        bus.emit(EventType.STATUS, status="connecting")
        bus.emit(EventType.TURN_COMPLETE, epoch=0, text="hello")
        bus.emit(EventType.STATUS, status="active")
        bus.close()

        assert bus.log_path == Path(tmpdir) / "20261019_141500" / "events.jsonl"
        lines = bus.log_path.read_text().splitlines()
        assert len(lines) == 3
        for line in lines:
            json.loads(line)

        statuses = bus.read_log(EventType.STATUS)
        assert [e.payload["status"] for e in statuses] == ["connecting", "active"]
        assert len(bus.read_log()) == 3


@test("read_log skips corrupt lines")
def test_read_log_skips_corrupt():
    with tempfile.TemporaryDirectory() as tmpdir:
        bus = SessionEventBus("sid", log_dir=Path(tmpdir))
        bus.emit(EventType.ERROR, message="first")
        bus.close()
        with open(bus.log_path, "a") as f:
            f.write("{not json\n")
            f.write('{"ts": 1}\n')
        events = bus.read_log()
        assert len(events) == 1
        assert events[0].payload["message"] == "first"


# ======================================================================
# Run all tests
# ======================================================================

if __name__ == "__main__":
    print("=" * 60)
    print("Session Event Bus Tests")
    print("=" * 60)

    tests = [
        obj for name, obj in sorted(globals().items())
        if callable(obj) and hasattr(obj, '_test_name')
    ]

    print(f"\nRunning {len(tests)} tests...\n")

    for fn in tests:
        run_test(fn)

    print(f"\n{'=' * 60}")
    print(f"Results: {PASSED} passed, {FAILED} failed out of {PASSED + FAILED}")

    if ERRORS:
        print(f"\nFailures:")
        for name, err in ERRORS:
            print(f"  - {name}: {err}")

    print("=" * 60)
    sys.exit(0 if FAILED == 0 else 1)
