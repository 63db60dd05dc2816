from __future__ import annotations
from dataclasses import dataclass
from typing import List

from proctor.config import PresenceConfig
from proctor.types import Modality, Signal


@dataclass
class PresenceState:
    absent_since: float | None = None
    absence_reported: bool = False
    multi_face: bool = False


class FacePresenceMonitor:
    """Dwell/edge tracking for face absence and extra faces."""

    def __init__(self, cfg: PresenceConfig | None = None):
        self.cfg = cfg or PresenceConfig()
        self.state = PresenceState()

    def update(self, ts: float, face_count: int, error: bool = False) -> List[Signal]:
        if error:
            return []
        st = self.state
        out: List[Signal] = []

        # Absence: one signal per spell once it has lasted face_absent_min_s
        if face_count == 0:
            if st.absent_since is None:
                st.absent_since = ts
                st.absence_reported = False
            dwell = ts - st.absent_since
            if not st.absence_reported and dwell >= self.cfg.face_absent_min_s:
                st.absence_reported = True
                out.append(Signal(Modality.FACE, ts, {"reason": "no_face", "absent_s": round(dwell, 2)}))
        else:
            st.absent_since = None
            st.absence_reported = False

        # Multiple faces: rising edge only
        multi = face_count > 1
        if multi and not st.multi_face:
            out.append(Signal(Modality.MULTI_FACE, ts, {"face_count": int(face_count)}))
        st.multi_face = multi
        return out
