from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Dict

from proctor.config import PhoneConfig


class PhonePhase(str, Enum):
    IDLE = "idle"
    ACCUMULATING = "accumulating"
    FIRED = "fired"


@dataclass
class PhoneSuspicionState:
    counter: int = 0
    last_fired_ts: float | None = None


class PhoneSuspicionTracker:
    """Hysteresis + cooldown over per-frame "looking down" / "no face" evidence.

    Looking down adds 2 and fires at `threshold`; a missing face adds 1 and fires at
    `threshold + no_face_extra`; a visible face that is not looking down decays by 1.
    Both paths share one counter. Cooldown is measured on frame timestamps (seconds).
    """

    def __init__(self, cfg: PhoneConfig | None = None):
        self.cfg = cfg or PhoneConfig()
        self.state = PhoneSuspicionState()

    def reset(self) -> None:
        self.state = PhoneSuspicionState()

    def phase(self, ts: float) -> PhonePhase:
        st = self.state
        if st.last_fired_ts is not None and ts - st.last_fired_ts <= self.cfg.cooldown_s:
            return PhonePhase.FIRED
        return PhonePhase.ACCUMULATING if st.counter > 0 else PhonePhase.IDLE

    def update(self, ts: float, face_present: bool, pitch_deg: float | None, error: bool = False) -> bool:
        """Advance one frame; returns True when a phone-suspicion firing happens on this frame."""
        c = self.cfg
        st = self.state
        if error:
            # Vision failures never count as evidence
            return False

        if face_present and pitch_deg is not None and pitch_deg > c.looking_down_deg:
            st.counter += c.down_increment
            bar = c.threshold
        elif not face_present:
            st.counter += 1
            bar = c.threshold + c.no_face_extra
        else:
            st.counter = max(0, st.counter - 1)
            bar = c.threshold

        if st.counter >= bar and self._cooled_down(ts):
            st.last_fired_ts = ts
            st.counter = 0
            return True
        return False

    def _cooled_down(self, ts: float) -> bool:
        last = self.state.last_fired_ts
        return last is None or ts - last > self.cfg.cooldown_s

    def snapshot(self, ts: float) -> Dict[str, object]:
        return {
            "counter": self.state.counter,
            "last_fired_ts": self.state.last_fired_ts,
            "phase": self.phase(ts).value,
        }
