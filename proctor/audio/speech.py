from __future__ import annotations
from dataclasses import dataclass
from typing import Dict

import numpy as np

from proctor.config import SpeechConfig
from proctor.types import Modality, Signal, SpeechActivity
from .framing import as_mono_float


def next_pow2(n: int) -> int:
    return 1 << max(0, int(n) - 1).bit_length()


def voice_band_ratio(x: np.ndarray, sample_rate: int, low_hz: float, high_hz: float) -> float:
    """Fraction of spectral power (DC excluded) inside [low_hz, high_hz].
    Scale-free: multiplying x by any non-zero gain leaves the ratio unchanged.
    Only exact digital silence (no power outside DC) reads as 0.
    """
    n_fft = next_pow2(x.size)
    win = np.hanning(x.size) if x.size > 1 else np.ones(1)
    spec = np.fft.rfft(x * win, n=n_fft)
    power = spec.real ** 2 + spec.imag ** 2
    freqs = np.fft.rfftfreq(n_fft, d=1.0 / sample_rate)
    total = float(power[1:].sum())
    if total <= 0.0:
        return 0.0
    band = (freqs >= low_hz) & (freqs <= high_hz)
    band[0] = False
    return float(power[band].sum() / total)


@dataclass
class SpeechState:
    voiced_run: int = 0
    speaking: bool = False


class SpeechActivityDetector:
    """Voice-band energy ratio per window with a consecutive-window debounce."""

    def __init__(self, cfg: SpeechConfig | None = None):
        self.cfg = cfg or SpeechConfig()
        self.state = SpeechState()

    def reset(self) -> None:
        self.state = SpeechState()

    def process_window(self, samples, timestamp: float) -> SpeechActivity:
        c = self.cfg
        x = as_mono_float(samples)
        ratio = voice_band_ratio(x, c.sample_rate, c.voice_low_hz, c.voice_high_hz)
        voiced = ratio >= c.ratio_threshold

        st = self.state
        st.voiced_run = st.voiced_run + 1 if voiced else 0
        st.speaking = st.voiced_run >= c.min_speech_windows
        return SpeechActivity(timestamp=float(timestamp), is_speech=st.speaking, voice_ratio=ratio, voiced=voiced)


@dataclass
class SpeechRunState:
    run_start: float | None = None
    run_end: float = 0.0
    reported: bool = False


class SpeechRunTracker:
    """Turns per-window activity into one speech signal per run.

    The signal goes out when the run reaches sustained_speech_s, or when a shorter run ends.
    """

    def __init__(self, sustained_s: float = 2.0, window_s: float = 0.032):
        self.sustained_s = sustained_s
        self.window_s = window_s
        self.state = SpeechRunState()

    def update(self, act: SpeechActivity) -> Signal | None:
        st = self.state
        if act.is_speech:
            if st.run_start is None:
                st.run_start = act.timestamp
                st.reported = False
            st.run_end = act.timestamp + self.window_s
            dur = st.run_end - st.run_start
            if not st.reported and dur >= self.sustained_s:
                st.reported = True
                return Signal(Modality.SPEECH, st.run_start, self._meta(dur, True, act))
            return None

        if st.run_start is None:
            return None
        dur = st.run_end - st.run_start
        start, reported = st.run_start, st.reported
        self.state = SpeechRunState()
        if reported:
            return None
        return Signal(Modality.SPEECH, start, self._meta(dur, False, act))

    @staticmethod
    def _meta(dur: float, sustained: bool, act: SpeechActivity) -> Dict[str, object]:
        return {"sustained": sustained, "duration_s": round(dur, 2), "voice_ratio": round(act.voice_ratio, 3)}
