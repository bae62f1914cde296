#!/usr/bin/env python3
"""Tests for microphone capture with PyAudio mocked out.

Run: python3 test_capture.py
"""

import asyncio
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import numpy as np

sys.path.insert(0, str(Path(__file__).parent))

from capture import MicrophoneCapture

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


def fake_pyaudio():
    module = MagicMock()
    module.paFloat32 = 1
    module.paContinue = 0
    return module


@test("start opens a mono float32 input stream at 48kHz with 2048-sample buffers")
async def test_start_opens_stream():
    pyaudio = fake_pyaudio()
    with patch.dict(sys.modules, {"pyaudio": pyaudio}):
        mic = MicrophoneCapture()
        mic.start(lambda frame: None)
        pa = pyaudio.PyAudio.return_value
        kwargs = pa.open.call_args.kwargs
        assert kwargs["rate"] == 48000
        assert kwargs["channels"] == 1
        assert kwargs["input"] is True
        assert kwargs["frames_per_buffer"] == 2048
        assert kwargs["format"] == pyaudio.paFloat32
        pa.open.return_value.start_stream.assert_called_once()
        assert mic.running
        mic.stop()


@test("Captured buffers reach the callback on the event loop")
async def test_callback_delivers_frames():
    pyaudio = fake_pyaudio()
    received = []
    with patch.dict(sys.modules, {"pyaudio": pyaudio}):
        mic = MicrophoneCapture()
        mic.start(received.append)
        data = np.linspace(-1, 1, 2048, dtype=np.float32).tobytes()
        result = mic._callback(data, 2048, {}, 0)
        assert result == (None, pyaudio.paContinue)
        assert received == []
        await asyncio.sleep(0)
        assert len(received) == 1
        assert received[0].dtype == np.float32
        assert len(received[0]) == 2048
        assert mic.frames_captured == 1
        mic.stop()


@test("stop closes the stream, terminates PyAudio and is repeatable")
async def test_stop():
    pyaudio = fake_pyaudio()
    with patch.dict(sys.modules, {"pyaudio": pyaudio}):
        mic = MicrophoneCapture()
        mic.start(lambda frame: None)
        pa = pyaudio.PyAudio.return_value
        mic.stop()
        mic.stop()
        pa.open.return_value.close.assert_called_once()
        pa.terminate.assert_called_once()
        assert not mic.running


@test("start twice keeps the first stream")
async def test_start_twice():
    pyaudio = fake_pyaudio()
    with patch.dict(sys.modules, {"pyaudio": pyaudio}):
        mic = MicrophoneCapture()
        mic.start(lambda frame: None)
        mic.start(lambda frame: None)
        assert pyaudio.PyAudio.return_value.open.call_count == 1
        mic.stop()


# ══════════════════════════════════════════════════════════════════
# Run all tests
# ══════════════════════════════════════════════════════════════════

if __name__ == "__main__":
    print("=" * 60)
    print("Capture Tests")
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
