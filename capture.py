"""Microphone capture feeding 2048-sample float frames to the session.

PyAudio runs its stream callback on its own thread; frames are handed to
the asyncio loop with call_soon_threadsafe so the session only ever sees
them on the event loop thread.
"""

import asyncio
import logging
from typing import Callable

import numpy as np

from audio_codec import CAPTURE_SAMPLE_RATE, FRAME_SIZE

logger = logging.getLogger(__name__)


class MicrophoneCapture:
    """Mono float32 capture at a fixed rate, pushed one frame at a time."""

    def __init__(self, sample_rate: int = CAPTURE_SAMPLE_RATE,
                 frame_size: int = FRAME_SIZE, device_index: int | None = None):
        self.sample_rate = sample_rate
        self.frame_size = frame_size
        self.device_index = device_index
        self._pa = None
        self._stream = None
        self._loop = None
        self._on_frame = None
        self.frames_captured = 0

    @property
    def running(self) -> bool:
        return self._stream is not None

    def start(self, on_frame: Callable[[np.ndarray], None]):
        """Open the input stream. Must be called from the event loop thread."""
        if self._stream is not None:
            return
        import pyaudio

        self._loop = asyncio.get_running_loop()
        self._on_frame = on_frame
        self._pa = pyaudio.PyAudio()
        self._stream = self._pa.open(
            format=pyaudio.paFloat32,
            channels=1,
            rate=self.sample_rate,
            input=True,
            input_device_index=self.device_index,
            frames_per_buffer=self.frame_size,
            stream_callback=self._callback,
        )
        self._stream.start_stream()
        logger.info("Capture: Started (%d Hz, %d-sample frames)",
                    self.sample_rate, self.frame_size)

    def _callback(self, in_data, frame_count, time_info, status):
        import pyaudio

        frame = np.frombuffer(in_data, dtype=np.float32).copy()
        self.frames_captured += 1
        loop = self._loop
        if loop is not None and not loop.is_closed():
            loop.call_soon_threadsafe(self._on_frame, frame)
        return (None, pyaudio.paContinue)

    def stop(self):
        """Close the stream and release PyAudio. Safe to call repeatedly."""
        stream, self._stream = self._stream, None
        pa, self._pa = self._pa, None
        if stream is not None:
            try:
                stream.stop_stream()
                stream.close()
            except OSError as e:
                logger.debug("Capture: Error closing stream: %s", e)
        if pa is not None:
            pa.terminate()
            logger.info("Capture: Stopped (%d frames)", self.frames_captured)
        self._loop = None
