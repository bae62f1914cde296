"""Audio format conversion between capture, model and renderer.

Capture delivers float32 mono frames at 48kHz. The model wants base64 PCM16
at 16kHz; the synthesis provider already emits PCM16 at the rate the
renderer consumes, so that direction is a plain base64 decode.

Decimation is nearest-neighbour with no anti-alias filter. Latency matters
more than fidelity on the way into speech recognition.
"""

import base64
import binascii
import math

import numpy as np

from errors import DecodeError

# Audio settings
CAPTURE_SAMPLE_RATE = 48000
MODEL_SAMPLE_RATE = 16000
FRAME_SIZE = 2048  # samples per captured frame
MODEL_MIME_TYPE = f"audio/pcm;rate={MODEL_SAMPLE_RATE}"


def decimate(samples, source_rate: int, target_rate: int) -> np.ndarray:
    """Pick every ratio-th sample, where ratio = source_rate / target_rate.

    Output length is floor(len(samples) / ratio), so 2048 samples at
    48kHz -> 16kHz give 682, not 683.
    """
    if source_rate <= 0 or target_rate <= 0:
        raise ValueError(f"Sample rates must be positive, got {source_rate} -> {target_rate}")
    samples = np.asarray(samples, dtype=np.float64)
    ratio = source_rate / target_rate
    out_len = math.floor(len(samples) / ratio)
    idx = np.floor(np.arange(out_len) * ratio).astype(np.int64)
    return samples[idx]


def float_to_pcm16(samples) -> bytes:
    """Convert [-1, 1] floats to signed 16-bit little-endian PCM.

    Out-of-range input saturates. Negatives scale by 32768, the rest by
    32767, and the result truncates toward zero.
    """
    clipped = np.clip(np.asarray(samples, dtype=np.float64), -1.0, 1.0)
    scaled = np.where(clipped < 0, clipped * 0x8000, clipped * 0x7FFF)
    return np.trunc(scaled).astype("<i2").tobytes()


def encode_for_model(frame, source_rate: int = CAPTURE_SAMPLE_RATE,
                     target_rate: int = MODEL_SAMPLE_RATE) -> str:
    """Downsample a captured frame and return it as base64 PCM16."""
    pcm = float_to_pcm16(decimate(frame, source_rate, target_rate))
    return base64.b64encode(pcm).decode("ascii")


def decode_from_synthesis(data: str) -> bytes:
    """Decode a base64 synthesis chunk into raw bytes for the renderer.

    Whitespace and line breaks inside the payload are ignored; any other
    character outside the base64 alphabet is an error.
    """
    try:
        if isinstance(data, str):
            data = "".join(data.split())
        elif isinstance(data, (bytes, bytearray)):
            data = b"".join(data.split())
        return base64.b64decode(data, validate=True)
    except (binascii.Error, TypeError, ValueError) as e:
        raise DecodeError(f"Malformed synthesis audio: {e}") from e
