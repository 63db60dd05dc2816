from __future__ import annotations
from collections import Counter
from typing import Any, Dict, List, Optional

from proctor.config import ReportConfig


class IntegrityReporter:
    """Heuristic session report from an event log.

    Stands in for the remote analysis service when none is configured; the
    remote service is free to return a richer report with the same top-level keys.
    """

    def __init__(self, cfg: Optional[ReportConfig] = None):
        self.cfg = cfg or ReportConfig()
        self.mode = "heuristic"

    def report(self, events: List[Dict[str, Any]]) -> Dict[str, Any]:
        c = self.cfg
        by_modality = Counter(str(e.get("modality")) for e in events)
        by_severity = Counter(str(e.get("severity")) for e in events)

        risk = (
            by_severity.get("low", 0) * c.w_low
            + by_severity.get("medium", 0) * c.w_medium
            + by_severity.get("high", 0) * c.w_high
        )
        risk = max(0.0, min(100.0, risk))
        if risk >= c.high_risk_score:
            level = "high"
        elif risk >= c.medium_risk_score:
            level = "medium"
        else:
            level = "low"

        stamps = [float(e["timestamp"]) for e in events if e.get("timestamp") is not None]
        return {
            "mode": self.mode,
            "risk_score": round(risk, 1),
            "risk_level": level,
            "event_count": len(events),
            "counts": dict(by_modality),
            "severity_counts": dict(by_severity),
            "first_ts": min(stamps) if stamps else None,
            "last_ts": max(stamps) if stamps else None,
            "summary": self._summary(by_modality, level),
        }

    @staticmethod
    def _summary(by_modality: Counter, level: str) -> str:
        if not by_modality:
            return "No integrity events recorded."
        parts = [f"{n} {m.replace('_', '-')}" for m, n in sorted(by_modality.items(), key=lambda kv: (-kv[1], kv[0]))]
        return f"{level.capitalize()} risk: " + ", ".join(parts) + " event(s)."
