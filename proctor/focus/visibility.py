from __future__ import annotations
from dataclasses import dataclass

from proctor.types import Modality, Signal


@dataclass
class VisibilityState:
    visible: bool = True
    hidden_since: float | None = None


class TabVisibilityMonitor:
    """Edge detector on the exam surface's visibility. Repeated reads of the same state are ignored."""

    def __init__(self, initially_visible: bool = True):
        self.state = VisibilityState(visible=initially_visible)

    def on_visibility_change(self, is_visible: bool, ts: float) -> Signal | None:
        st = self.state
        is_visible = bool(is_visible)
        if is_visible == st.visible:
            return None
        st.visible = is_visible
        if not is_visible:
            st.hidden_since = ts
            return Signal(Modality.TAB, ts, {"transition": "hidden"})
        meta = {"transition": "visible"}
        if st.hidden_since is not None:
            meta["hidden_for_s"] = round(ts - st.hidden_since, 3)
        st.hidden_since = None
        return Signal(Modality.TAB, ts, meta)
