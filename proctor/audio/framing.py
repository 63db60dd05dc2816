from __future__ import annotations
from typing import List

import numpy as np

from proctor.errors import InvalidInput
from proctor.types import AudioWindow


def as_mono_float(samples) -> np.ndarray:
    """Validate a sample buffer and return it as float64 mono."""
    try:
        x = np.asarray(samples, dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise InvalidInput(f"audio buffer is not numeric: {e}") from e
    if x.ndim != 1:
        raise InvalidInput(f"audio buffer must be 1-D, got shape {x.shape}")
    if x.size == 0:
        raise InvalidInput("audio buffer is empty")
    if not np.all(np.isfinite(x)):
        raise InvalidInput("audio buffer contains non-finite samples")
    return x


class AudioFramer:
    """Fixed-size, fixed-hop framing of a chunked sample stream.

    Chunks may have any length. Window timestamps are derived from the first
    chunk's timestamp plus the sample offset, so they do not drift with chunking.
    """

    def __init__(self, sample_rate: int = 16000, window_size: int = 512, hop_size: int = 256):
        if hop_size <= 0 or window_size <= 0 or hop_size > window_size:
            raise ValueError("need 0 < hop_size <= window_size")
        self.sample_rate = int(sample_rate)
        self.window_size = int(window_size)
        self.hop_size = int(hop_size)
        self.reset()

    def reset(self) -> None:
        self._buf = np.zeros(0, dtype=np.float64)
        self._t0: float | None = None
        self._consumed = 0  # samples dropped from the front of _buf so far

    @property
    def buffered(self) -> int:
        return int(self._buf.size)

    def feed(self, samples, timestamp: float) -> List[AudioWindow]:
        x = as_mono_float(samples)
        if self._t0 is None:
            self._t0 = float(timestamp)
        self._buf = np.concatenate([self._buf, x])

        out: List[AudioWindow] = []
        dur = self.window_size / float(self.sample_rate)
        start = 0
        while self._buf.size - start >= self.window_size:
            win = self._buf[start:start + self.window_size].copy()
            ts = self._t0 + (self._consumed + start) / float(self.sample_rate)
            out.append(AudioWindow(timestamp=ts, duration=dur, samples=win))
            start += self.hop_size
        if start:
            self._buf = self._buf[start:]
            self._consumed += start
        return out
