from __future__ import annotations
from dataclasses import dataclass, field, asdict, fields
from typing import Any, Dict, Optional
import copy
import json
from pathlib import Path

from proctor.fusion.severity import DEFAULT_SEVERITY
from proctor.types import Modality, Severity


@dataclass
class HeadPoseConfig:
    # Euler order used to decompose the face transform; depends on the producer's convention
    euler_order: str = "YXZ"


@dataclass
class GazeConfig:
    down_pitch_deg: float = 20.0
    up_pitch_deg: float = -15.0
    right_yaw_deg: float = 25.0
    left_yaw_deg: float = -25.0
    use_iris_refinement: bool = False
    iris_focus_th: float = 0.3


@dataclass
class PhoneConfig:
    looking_down_deg: float = 20.0
    threshold: int = 5
    no_face_extra: int = 2
    down_increment: int = 2
    cooldown_s: float = 3.0


@dataclass
class PresenceConfig:
    face_absent_min_s: float = 1.0


@dataclass
class SpeechConfig:
    sample_rate: int = 16000
    window_size: int = 512
    hop_size: int = 256
    voice_low_hz: float = 300.0
    voice_high_hz: float = 3400.0
    ratio_threshold: float = 0.6
    min_speech_windows: int = 3
    sustained_speech_s: float = 2.0


@dataclass
class FusionConfig:
    cooldown_s: Dict[str, float] = field(default_factory=lambda: {
        "phone": 5.0,
        "multi_face": 5.0,
        "speech": 5.0,
        "tab": 1.0,
        "face": 3.0,
    })
    severity_overrides: Dict[str, str] = field(default_factory=dict)
    severity_weights: Dict[str, float] = field(default_factory=lambda: {
        "low": 1.0,
        "medium": 3.0,
        "high": 6.0,
    })
    score_half_life_s: float = 60.0
    escalation_threshold: float = 5.0
    silent_required: bool = True
    persist_batch_size: int = 10
    max_consecutive_failures: int = 3
    close_timeout_s: float = 30.0


@dataclass
class IngestConfig:
    audio_queue_size: int = 64
    # "block" waits up to put_timeout_s before evicting; "evict_oldest" evicts at once
    audio_overflow: str = "evict_oldest"
    put_timeout_s: float = 0.05


@dataclass
class ReportConfig:
    medium_risk_score: float = 40.0
    high_risk_score: float = 70.0
    w_low: float = 5.0
    w_medium: float = 12.0
    w_high: float = 30.0


@dataclass
class EngineConfig:
    head_pose: HeadPoseConfig = field(default_factory=HeadPoseConfig)
    gaze: GazeConfig = field(default_factory=GazeConfig)
    phone: PhoneConfig = field(default_factory=PhoneConfig)
    presence: PresenceConfig = field(default_factory=PresenceConfig)
    speech: SpeechConfig = field(default_factory=SpeechConfig)
    fusion: FusionConfig = field(default_factory=FusionConfig)
    ingest: IngestConfig = field(default_factory=IngestConfig)
    report: ReportConfig = field(default_factory=ReportConfig)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def copy(self) -> "EngineConfig":
        return copy.deepcopy(self)


def _merge(section_cls, data: Optional[Dict[str, Any]]):
    known = {f.name for f in fields(section_cls)}
    unknown = set(data or {}) - known
    if unknown:
        raise ValueError(f"Unknown {section_cls.__name__} keys: {sorted(unknown)}")
    base = asdict(section_cls())
    for k, v in (data or {}).items():
        # dict-valued options merge per key so partial overrides keep the other defaults
        if isinstance(base.get(k), dict) and isinstance(v, dict):
            base[k] = {**base[k], **v}
        else:
            base[k] = v
    return section_cls(**base)


def config_from_dict(data: Optional[Dict[str, Any]]) -> EngineConfig:
    data = data or {}
    sections = {f.name: f for f in fields(EngineConfig)}
    unknown = set(data) - set(sections)
    if unknown:
        raise ValueError(f"Unknown config sections: {sorted(unknown)}")
    kwargs = {}
    for name, f in sections.items():
        section_cls = type(f.default_factory())
        kwargs[name] = _merge(section_cls, data.get(name))
    cfg = EngineConfig(**kwargs)
    validate(cfg)
    return cfg


def load_config(path: str | Path) -> EngineConfig:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Proctor config not found: {p}")
    data = json.loads(p.read_text())
    return config_from_dict(data)


def validate(cfg: EngineConfig) -> None:
    sp = cfg.speech
    if sp.window_size <= 0 or sp.hop_size <= 0:
        raise ValueError("speech window_size and hop_size must be positive")
    if sp.hop_size > sp.window_size:
        raise ValueError("speech hop_size must not exceed window_size")
    if not (0.0 <= sp.voice_low_hz < sp.voice_high_hz <= sp.sample_rate / 2.0):
        raise ValueError("voice band must lie within [0, Nyquist]")
    if cfg.ingest.audio_overflow not in ("block", "evict_oldest"):
        raise ValueError(f"Unknown audio_overflow policy: {cfg.ingest.audio_overflow}")
    if cfg.ingest.audio_queue_size <= 0:
        raise ValueError("audio_queue_size must be positive")
    if cfg.phone.threshold <= 0:
        raise ValueError("phone threshold must be positive")
    fu = cfg.fusion
    levels = {s.value for s in Severity}
    unknown = set(fu.cooldown_s) - {m.value for m in Modality}
    if unknown:
        raise ValueError(f"Unknown cooldown modalities: {sorted(unknown)}")
    unknown = set(fu.severity_overrides) - set(DEFAULT_SEVERITY)
    if unknown:
        raise ValueError(f"Unknown severity keys: {sorted(unknown)}")
    for key, level in fu.severity_overrides.items():
        if level not in levels:
            raise ValueError(f"Invalid severity for {key}: {level!r}")
    unknown = set(fu.severity_weights) - levels
    if unknown:
        raise ValueError(f"Unknown severity weights: {sorted(unknown)}")
