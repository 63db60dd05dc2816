from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Sequence

import numpy as np


class GazeDirection(str, Enum):
    CENTER = "center"
    LEFT = "left"
    RIGHT = "right"
    UP = "up"
    DOWN = "down"
    UNDETECTED = "undetected"


class Modality(str, Enum):
    FACE = "face"
    PHONE = "phone"
    SPEECH = "speech"
    TAB = "tab"
    MULTI_FACE = "multi_face"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# Tie-break for events sharing a timestamp (lower sorts first)
MODALITY_PRIORITY: Dict[Modality, int] = {
    Modality.PHONE: 0,
    Modality.MULTI_FACE: 1,
    Modality.SPEECH: 2,
    Modality.TAB: 3,
    Modality.FACE: 4,
}


@dataclass
class FrameObservation:
    """One inference result from the vision collaborator.

    status is "ok" or "error"; an error is not the same thing as an empty frame.
    landmarks: optional (N, 2|3) normalized coords of the primary face.
    matrix: optional 16-element row-major facial transform of the primary face.
    """
    timestamp: float
    face_count: int = 0
    landmarks: Optional[np.ndarray] = None
    matrix: Optional[Sequence[float]] = None
    status: str = "ok"
    error: str | None = None

    @property
    def face_present(self) -> bool:
        return self.face_count > 0

    @property
    def is_error(self) -> bool:
        return self.status == "error"


@dataclass(frozen=True)
class HeadPose:
    pitch: float
    yaw: float
    roll: float

    def to_dict(self) -> Dict[str, float]:
        return {"pitch": round(self.pitch, 2), "yaw": round(self.yaw, 2), "roll": round(self.roll, 2)}


@dataclass
class FrameResult:
    face_detected: bool
    multiple_faces: bool
    phone_detected: bool
    head_pose: HeadPose | None
    gaze_direction: GazeDirection
    error: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "face_detected": self.face_detected,
            "multiple_faces": self.multiple_faces,
            "phone_detected": self.phone_detected,
            "head_pose": self.head_pose.to_dict() if self.head_pose else None,
            "gaze_direction": self.gaze_direction.value,
            "error": self.error,
        }


@dataclass
class AudioWindow:
    timestamp: float
    duration: float
    samples: np.ndarray


@dataclass(frozen=True)
class SpeechActivity:
    timestamp: float
    is_speech: bool
    voice_ratio: float
    voiced: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "is_speech": self.is_speech,
            "voice_ratio": round(self.voice_ratio, 4),
            "voiced": self.voiced,
        }


@dataclass(frozen=True)
class Signal:
    """A detector's candidate event. Only the aggregator turns it into an IntegrityEvent."""
    modality: Modality
    timestamp: float
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class IntegrityEvent:
    id: str
    modality: Modality
    severity: Severity
    timestamp: float
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def sort_key(self) -> tuple[float, int]:
        return (self.timestamp, MODALITY_PRIORITY[self.modality])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "modality": self.modality.value,
            "severity": self.severity.value,
            "timestamp": self.timestamp,
            "metadata": dict(self.metadata),
        }
