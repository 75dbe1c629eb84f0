from __future__ import annotations

import numpy as np

SAMPLE_RATE = 8000
ULAW_SILENCE = 0xFF

_BIAS = 0x84
_CLIP = 32635


def ulaw_encode(pcm16: np.ndarray) -> bytes:
    """Encode a PCM16 int16 array to G.711 mu-law bytes."""

    if pcm16.size == 0:
        return b""

    x = pcm16.astype(np.int32)
    sign = (x < 0).astype(np.int32)
    x = np.minimum(np.abs(x), _CLIP) + _BIAS

    exponent = np.zeros_like(x)
    for exp in range(1, 8):
        exponent = np.where(x >= (1 << (exp + 7)), exp, exponent)

    mantissa = (x >> (exponent + 3)) & 0x0F
    ulaw = np.bitwise_not((sign << 7) | (exponent << 4) | mantissa).astype(np.uint8)
    return ulaw.tobytes()


def ulaw_decode(ulaw_bytes: bytes) -> np.ndarray:
    """Decode G.711 mu-law bytes to a PCM16 int16 array."""

    u = np.bitwise_not(np.frombuffer(ulaw_bytes, dtype=np.uint8)).astype(np.int32)
    sign = u & 0x80
    exponent = (u >> 4) & 0x07
    mantissa = u & 0x0F

    magnitude = (((mantissa << 3) + _BIAS) << exponent) - _BIAS
    return np.where(sign != 0, -magnitude, magnitude).astype(np.int16)
