# main.py
from contextlib import asynccontextmanager
from dataclasses import asdict
from pathlib import Path
from typing import Dict, List, Literal, Optional
import io
import logging
import os
import threading
import time

import numpy as np
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from PIL import Image
from pydantic import BaseModel, Field

from proctor.config import EngineConfig, load_config, validate
from proctor.errors import InitializationFailure, InvalidInput, TransientDetectionError
from proctor.fusion.collaborators import (
    HttpAnalysisClient, HttpPersistenceClient, InMemoryStore, LocalAnalysisClient,
)
from proctor.scoring.integrity_report import IntegrityReporter
from proctor.session import ExamSession
from proctor.types import FrameObservation
from proctor.vision.landmarker import DEFAULT_MODEL_PATH, FaceLandmarkerAdapter

# Logging (one-line INFO summaries per request)
if not logging.getLogger().handlers:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
log = logging.getLogger("proctor")

CONFIG_PATH = os.getenv("PROCTOR_CONFIG", "config/proctor_config.json")
FACE_MODEL_PATH = os.getenv("PROCTOR_FACE_MODEL", DEFAULT_MODEL_PATH)
ANALYSIS_URL = os.getenv("PROCTOR_ANALYSIS_URL")
STORE_URL = os.getenv("PROCTOR_STORE_URL")
SERVICE_TOKEN = os.getenv("PROCTOR_SERVICE_TOKEN")


def load_engine_config() -> EngineConfig:
    if Path(CONFIG_PATH).exists():
        return load_config(CONFIG_PATH)
    log.info("no config at %s; using defaults", CONFIG_PATH)
    return EngineConfig()


# ---------- State ----------
class State:
    def __init__(self):
        self.start_ts = time.time()
        self.cfg = load_engine_config()
        self.sessions: Dict[str, ExamSession] = {}
        self.store = HttpPersistenceClient(STORE_URL, token=SERVICE_TOKEN) if STORE_URL else InMemoryStore()
        self.frame_count = 0
        self.last_error = ""

    def analysis_client(self):
        if ANALYSIS_URL:
            return HttpAnalysisClient(ANALYSIS_URL, token=SERVICE_TOKEN)
        return LocalAnalysisClient(IntegrityReporter(self.cfg.report))

S = State()
cfg_lock = threading.Lock()


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Tear down every live session so pending escalations are flushed
    for sid in list(S.sessions):
        sess = S.sessions.pop(sid)
        try:
            await sess.close()
        except Exception:
            log.exception("failed to close session %s", sid)


# ---------- App ----------
app = FastAPI(title="Proctor Fusion Service", version="0.3.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"], allow_methods=["*"], allow_headers=["*"]
)


@app.exception_handler(InvalidInput)
async def invalid_input_handler(request: Request, exc: InvalidInput):
    return JSONResponse({"error": "invalid_input", "detail": str(exc)}, status_code=422)


@app.exception_handler(InitializationFailure)
async def init_failure_handler(request: Request, exc: InitializationFailure):
    log.error("initialization failure: %s", exc)
    return JSONResponse({"error": "initialization_failure", "detail": str(exc)}, status_code=503)


def np_from_jpeg(data: bytes) -> np.ndarray:
    try:
        img = Image.open(io.BytesIO(data)).convert("RGB")
    except Exception as e:
        raise InvalidInput(f"not a decodable image: {e}") from e
    return np.array(img)


def get_session(session_id: str) -> ExamSession:
    sess = S.sessions.get(session_id)
    if sess is None:
        raise HTTPException(status_code=404, detail=f"unknown session {session_id}")
    return sess


# ---------- Request Models ----------
class SessionCreate(BaseModel):
    session_id: Optional[str] = None


class FrameIn(BaseModel):
    timestamp: Optional[float] = None
    face_count: int = Field(default=0, ge=0)
    matrix: Optional[List[float]] = None
    landmarks: Optional[List[List[float]]] = None
    status: Literal["ok", "error"] = "ok"
    error: Optional[str] = None


class AudioIn(BaseModel):
    samples: List[float]
    timestamp: Optional[float] = None


class VisibilityIn(BaseModel):
    is_visible: bool
    timestamp: Optional[float] = None


# ---------- Config Models ----------
class PhoneConfigPatch(BaseModel):
    looking_down_deg: Optional[float] = None
    threshold: Optional[int] = None
    no_face_extra: Optional[int] = None
    down_increment: Optional[int] = None
    cooldown_s: Optional[float] = None


class GazeConfigPatch(BaseModel):
    down_pitch_deg: Optional[float] = None
    up_pitch_deg: Optional[float] = None
    right_yaw_deg: Optional[float] = None
    left_yaw_deg: Optional[float] = None
    use_iris_refinement: Optional[bool] = None
    iris_focus_th: Optional[float] = None


class SpeechConfigPatch(BaseModel):
    window_size: Optional[int] = None
    hop_size: Optional[int] = None
    voice_low_hz: Optional[float] = None
    voice_high_hz: Optional[float] = None
    ratio_threshold: Optional[float] = None
    min_speech_windows: Optional[int] = None
    sustained_speech_s: Optional[float] = None


class FusionConfigPatch(BaseModel):
    cooldown_s: Optional[Dict[str, float]] = None
    severity_overrides: Optional[Dict[str, str]] = None
    severity_weights: Optional[Dict[str, float]] = None
    score_half_life_s: Optional[float] = None
    escalation_threshold: Optional[float] = None
    silent_required: Optional[bool] = None
    persist_batch_size: Optional[int] = None


CONFIG_PATCHES = {
    "phone": PhoneConfigPatch,
    "gaze": GazeConfigPatch,
    "speech": SpeechConfigPatch,
    "fusion": FusionConfigPatch,
}


def get_config_section(name: str) -> dict:
    if name not in CONFIG_PATCHES:
        raise HTTPException(status_code=404, detail=f"unknown config section {name}")
    return asdict(getattr(S.cfg, name))


# ---------- Routes ----------
@app.get("/health")
def health():
    return {"ok": True, "uptime_s": round(time.time() - S.start_ts, 1), "sessions": len(S.sessions)}


@app.get("/config/{section}")
def get_config(section: str):
    return {"ok": True, "config": get_config_section(section)}


@app.patch("/config/{section}")
async def patch_config(section: str, request: Request):
    model = CONFIG_PATCHES.get(section)
    if model is None:
        raise HTTPException(status_code=404, detail=f"unknown config section {section}")
    try:
        # malformed JSON and pydantic ValidationError are both ValueErrors
        patch = model.model_validate(await request.json())
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    # Applies to sessions created afterwards; live sessions keep their own copy
    with cfg_lock:
        cfg = S.cfg.copy()
        target = getattr(cfg, section)
        for k, v in patch.model_dump(exclude_none=True).items():
            current = getattr(target, k)
            if isinstance(current, dict) and isinstance(v, dict):
                v = {**current, **v}
            setattr(target, k, v)
        try:
            validate(cfg)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        S.cfg = cfg
    return {"ok": True, "config": get_config_section(section)}


@app.post("/sessions")
async def create_session(body: Optional[SessionCreate] = None):
    sid = body.session_id if body else None
    if sid and sid in S.sessions:
        raise HTTPException(status_code=409, detail=f"session {sid} already exists")
    with cfg_lock:
        cfg = S.cfg.copy()
    sess = ExamSession(sid, cfg=cfg, analysis=S.analysis_client(), store=S.store)
    await sess.start()
    S.sessions[sess.id] = sess
    return {"ok": True, "session_id": sess.id}


@app.get("/sessions/{session_id}")
async def session_state(session_id: str):
    sess = get_session(session_id)
    await sess.aggregator.drain()
    return {"ok": True, "state": sess.snapshot()}


@app.delete("/sessions/{session_id}")
async def end_session(session_id: str):
    sess = get_session(session_id)
    S.sessions.pop(session_id, None)
    final = await sess.close()
    return {"ok": True, "state": final, "events": sess.events()}


@app.get("/sessions/{session_id}/events")
async def session_events(session_id: str):
    sess = get_session(session_id)
    await sess.aggregator.drain()
    return {"ok": True, "events": sess.events()}


@app.post("/sessions/{session_id}/frame")
async def post_frame(session_id: str, frame: FrameIn):
    sess = get_session(session_id)
    obs = FrameObservation(
        timestamp=frame.timestamp if frame.timestamp is not None else time.time(),
        face_count=frame.face_count,
        landmarks=np.asarray(frame.landmarks, dtype=np.float32) if frame.landmarks else None,
        matrix=frame.matrix,
        status=frame.status,
        error=frame.error,
    )
    res = await sess.submit_observation(obs)
    S.frame_count += 1
    if res is None:
        return {"ok": True, "dropped": True}
    log.info("frame session=%s faces=%d gaze=%s phone=%s err=%s", session_id, frame.face_count,
             res.gaze_direction.value, res.phone_detected, res.error)
    return {"ok": True, "dropped": False, "result": res.to_dict()}


@app.post("/sessions/{session_id}/frame/jpeg")
async def post_jpeg(session_id: str, request: Request, ts: Optional[float] = None):
    t0 = time.perf_counter()
    sess = get_session(session_id)
    if sess.vision is None:
        # Model is loaded per session and released at teardown
        sess.vision = FaceLandmarkerAdapter(FACE_MODEL_PATH).open()
    try:
        frame = np_from_jpeg(await request.body())  # HxWx3 RGB uint8
        res = await sess.submit_image(frame, ts if ts is not None else time.time())
    except (InvalidInput, InitializationFailure):
        raise
    except TransientDetectionError as e:
        return JSONResponse({"error": str(e)}, status_code=409)
    except Exception as e:
        log.exception("/frame/jpeg failed")
        S.last_error = str(e)
        return JSONResponse({"error": S.last_error}, status_code=500)
    S.frame_count += 1
    if res is None:
        return {"ok": True, "dropped": True}
    log.info("jpeg session=%s lat=%.1fms faces=%s gaze=%s phone=%s", session_id,
             (time.perf_counter() - t0) * 1000.0, res.face_detected, res.gaze_direction.value, res.phone_detected)
    return {"ok": True, "dropped": False, "result": res.to_dict()}


@app.post("/sessions/{session_id}/audio")
async def post_audio(session_id: str, chunk: AudioIn):
    sess = get_session(session_id)
    queued = await sess.submit_audio(chunk.samples, chunk.timestamp if chunk.timestamp is not None else time.time())
    last = sess.last_speech.to_dict() if sess.last_speech else None
    return {"ok": True, "windows_queued": queued, "last_activity": last}


@app.post("/sessions/{session_id}/visibility")
async def post_visibility(session_id: str, change: VisibilityIn):
    sess = get_session(session_id)
    ts = change.timestamp if change.timestamp is not None else time.time()
    sig = sess.on_visibility_change(change.is_visible, ts)
    return {"ok": True, "changed": sig is not None}
