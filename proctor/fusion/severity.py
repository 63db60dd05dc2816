from __future__ import annotations
from typing import Dict, Mapping, Optional

from proctor.types import Modality, Severity, Signal

# "speech" is for sustained speech while silence is required; "speech_short" covers the rest
DEFAULT_SEVERITY: Dict[str, str] = {
    "phone": "high",
    "multi_face": "high",
    "speech": "medium",
    "speech_short": "low",
    "tab": "medium",
    "face": "low",
}


class SeverityTable:
    def __init__(self, overrides: Optional[Mapping[str, str]] = None, silent_required: bool = True):
        table = dict(DEFAULT_SEVERITY)
        for k, v in (overrides or {}).items():
            if k not in table:
                raise ValueError(f"Unknown severity key: {k}")
            table[k] = Severity(v).value
        self.table = table
        self.silent_required = silent_required

    def key_for(self, signal: Signal) -> str:
        if signal.modality is Modality.SPEECH:
            sustained = bool(signal.metadata.get("sustained"))
            return "speech" if (sustained and self.silent_required) else "speech_short"
        return signal.modality.value

    def assign(self, signal: Signal) -> Severity:
        return Severity(self.table[self.key_for(signal)])
