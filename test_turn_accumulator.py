#!/usr/bin/env python3
"""Tests for turn accumulation and the bounded transcript.

Run: python3 test_turn_accumulator.py
"""

import asyncio
import sys
from pathlib import Path
from unittest.mock import AsyncMock

sys.path.insert(0, str(Path(__file__).parent))

from transcript import Transcript, TranscriptEntry
from turn_accumulator import TurnAccumulator

PASSED = 0
FAILED = 0
ERRORS = []


def test(name):
    """Decorator to register and run a test."""
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
        print(f"  FAIL: {name} — {e}")
    except Exception as e:
        FAILED += 1
        ERRORS.append((name, f"{type(e).__name__}: {e}"))
        print(f"  ERROR: {name} — {type(e).__name__}: {e}")


def make_accumulator():
    forward = AsyncMock()
    flush = AsyncMock()
    return TurnAccumulator(forward=forward, flush=flush), forward, flush


# ══════════════════════════════════════════════════════════════════
# Test Group 1: Turn accumulation
# ══════════════════════════════════════════════════════════════════

@test("No turn is open initially")
def test_initially_closed():
    acc, _, _ = make_accumulator()
    assert not acc.is_open
    assert acc.text == ""


@test("Each fragment is forwarded immediately, in order")
async def test_fragments_forwarded():
    acc, forward, flush = make_accumulator()
    await acc.append_fragment("Hello ")
    await acc.append_fragment("there")
    assert [c.args[0] for c in forward.await_args_list] == ["Hello ", "there"]
    assert acc.is_open
    assert acc.text == "Hello there"
    flush.assert_not_awaited()


@test("complete_turn returns the trimmed text and flushes once")
async def test_complete_turn():
    acc, _, flush = make_accumulator()
    await acc.append_fragment("a")
    await acc.append_fragment("b ")
    assert await acc.complete_turn() == "ab"
    flush.assert_awaited_once()
    assert not acc.is_open


@test("A fragment after completion starts a new turn")
async def test_new_turn_after_complete():
    acc, _, _ = make_accumulator()
    await acc.append_fragment("a")
    await acc.append_fragment("b")
    await acc.complete_turn()
    await acc.append_fragment("c")
    assert acc.is_open
    assert acc.text == "c"


@test("complete_turn with no open turn is a no-op")
async def test_complete_without_turn():
    acc, _, flush = make_accumulator()
    assert await acc.complete_turn() == ""
    flush.assert_not_awaited()


@test("A whitespace-only turn is closed without a flush")
async def test_blank_turn_not_flushed():
    acc, _, flush = make_accumulator()
    await acc.append_fragment("  ")
    assert await acc.complete_turn() == ""
    flush.assert_not_awaited()
    assert not acc.is_open


@test("reset_on_interrupt discards the turn without forwarding or flushing")
async def test_reset_on_interrupt():
    acc, forward, flush = make_accumulator()
    await acc.append_fragment("cut off mid")
    forward.reset_mock()
    acc.reset_on_interrupt()
    assert not acc.is_open
    assert acc.text == ""
    forward.assert_not_awaited()
    flush.assert_not_awaited()
    assert await acc.complete_turn() == ""


# ══════════════════════════════════════════════════════════════════
# Test Group 2: Transcript
# ══════════════════════════════════════════════════════════════════

@test("Entries render as 'AI: text'")
def test_transcript_format():
    t = Transcript()
    t.append("hello")
    assert t.lines() == ["AI: hello"]
    assert str(TranscriptEntry("hi", source="user")) == "User: hi"


@test("Only the last 10 turns are kept")
def test_transcript_bounded():
    t = Transcript()
    for i in range(12):
        t.append(f"turn {i}")
    assert len(t) == 10
    assert t.lines()[0] == "AI: turn 2"
    assert t.lines()[-1] == "AI: turn 11"


@test("clear empties the transcript")
def test_transcript_clear():
    t = Transcript(max_entries=3)
    t.append("x")
    t.clear()
    assert len(t) == 0
    assert list(t) == []


# ══════════════════════════════════════════════════════════════════
# Run all tests
# ══════════════════════════════════════════════════════════════════

if __name__ == "__main__":
    print("=" * 60)
    print("Turn Accumulator Tests")
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
