from __future__ import annotations
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional
import asyncio
import logging
import time
import uuid

import numpy as np

from proctor.audio.framing import AudioFramer
from proctor.audio.speech import SpeechActivityDetector, SpeechRunTracker
from proctor.config import EngineConfig
from proctor.errors import InvalidInput, TransientDetectionError
from proctor.focus.visibility import TabVisibilityMonitor
from proctor.fusion.aggregator import EventAggregator
from proctor.fusion.collaborators import AnalysisClient, InMemoryStore, LocalAnalysisClient, PersistenceClient
from proctor.scoring.integrity_report import IntegrityReporter
from proctor.types import (
    AudioWindow, FrameObservation, FrameResult, GazeDirection, Modality, Signal, SpeechActivity,
)
from proctor.vision.gaze import GazeClassifier
from proctor.vision.head_pose import HeadPoseEstimator
from proctor.vision.landmarker import FaceLandmarkerAdapter
from proctor.vision.phone import PhoneSuspicionTracker
from proctor.vision.presence import FacePresenceMonitor

log = logging.getLogger("proctor.session")


@dataclass
class IngestStats:
    frames: int = 0
    frames_dropped: int = 0
    frame_errors: int = 0
    invalid_frames: int = 0
    audio_windows: int = 0
    audio_evicted: int = 0
    audio_errors: int = 0
    visibility_changes: int = 0


class ExamSession:
    """Session-scoped context: owns every tracker plus the aggregator for one exam sitting.

    Video: one frame in flight; frames that arrive meanwhile are dropped.
    Audio: windows go through a bounded queue drained by one worker; never dropped
    silently (overflow evicts the oldest window with a warning, or blocks briefly first).
    """

    def __init__(
        self,
        session_id: Optional[str] = None,
        cfg: Optional[EngineConfig] = None,
        analysis: Optional[AnalysisClient] = None,
        store: Optional[PersistenceClient] = None,
        vision: Optional[FaceLandmarkerAdapter] = None,
    ):
        self.id = session_id or f"EXM_{uuid.uuid4().hex[:8].upper()}"
        self.cfg = (cfg or EngineConfig()).copy()
        c = self.cfg
        self.started_at = time.time()

        self.head_pose = HeadPoseEstimator(c.head_pose.euler_order)
        self.gaze = GazeClassifier(c.gaze)
        self.phone = PhoneSuspicionTracker(c.phone)
        self.presence = FacePresenceMonitor(c.presence)
        self.framer = AudioFramer(c.speech.sample_rate, c.speech.window_size, c.speech.hop_size)
        self.speech = SpeechActivityDetector(c.speech)
        window_s = c.speech.window_size / float(c.speech.sample_rate)
        self.speech_runs = SpeechRunTracker(c.speech.sustained_speech_s, window_s)
        self.visibility = TabVisibilityMonitor()
        self.store = store or InMemoryStore()
        self.aggregator = EventAggregator(
            self.id,
            analysis or LocalAnalysisClient(IntegrityReporter(c.report)),
            self.store,
            c.fusion,
        )
        self.vision = vision
        self.stats = IngestStats()
        self.last_result: FrameResult | None = None
        self.last_speech: SpeechActivity | None = None
        self.last_frame_ts: float | None = None

        self._video_busy = asyncio.Lock()
        self._audio_q: asyncio.Queue = asyncio.Queue(maxsize=c.ingest.audio_queue_size)
        self._audio_worker: asyncio.Task | None = None
        self._closing = False
        self._closed = False

    # ---------- lifecycle ----------
    async def start(self) -> "ExamSession":
        self.aggregator.start()
        if self._audio_worker is None:
            self._audio_worker = asyncio.get_running_loop().create_task(self._consume_audio(), name=f"audio-{self.id}")
        log.info("session %s started", self.id)
        return self

    @property
    def closing(self) -> bool:
        return self._closing

    async def close(self) -> Dict[str, Any]:
        """Tear down: stop producers, flush escalation and persistence, release the vision model."""
        if self._closed:
            return self.snapshot()
        self._closing = True
        if self._audio_worker is not None:
            self._audio_worker.cancel()
            try:
                await self._audio_worker
            except asyncio.CancelledError:
                pass
            self._audio_worker = None
        # frames that were mid-inference finish before the aggregator shuts
        async with self._video_busy:
            pass
        await self.aggregator.close()
        if self.vision is not None:
            self.vision.close()
        self._closed = True
        log.info("session %s closed events=%d escalations=%d", self.id,
                 len(self.aggregator.state.events), self.aggregator.state.escalations)
        return self.snapshot()

    def _emit(self, signals: List[Signal]) -> None:
        for s in signals:
            if s is not None:
                self.aggregator.submit(s)

    # ---------- video ----------
    def process_frame(self, obs: FrameObservation) -> FrameResult:
        """Per-frame pipeline: head pose -> gaze, head pose -> phone tracker, presence -> signals."""
        if self._closing:
            raise TransientDetectionError("session is closing")
        self.stats.frames += 1
        ts = float(obs.timestamp)
        self.last_frame_ts = ts

        if obs.is_error:
            # Fail closed: tracker untouched, gaze undetected
            self.stats.frame_errors += 1
            log.warning("session=%s vision error at ts=%.3f: %s", self.id, ts, obs.error)
            result = FrameResult(False, False, False, None, GazeDirection.UNDETECTED, error="vision_error")
            self.last_result = result
            return result

        pose = None
        if obs.face_present and obs.matrix is not None:
            try:
                pose = self.head_pose.compute(obs.matrix)
            except InvalidInput as e:
                self.stats.invalid_frames += 1
                log.warning("session=%s rejected frame at ts=%.3f: %s", self.id, ts, e)
                result = FrameResult(obs.face_present, obs.face_count > 1, False, None,
                                     GazeDirection.UNDETECTED, error="invalid_input")
                self.last_result = result
                return result

        gaze = self.gaze.classify(pose, obs.landmarks) if obs.face_present else GazeDirection.UNDETECTED
        fired = self.phone.update(ts, obs.face_present, pose.pitch if pose else None)
        signals = self.presence.update(ts, obs.face_count)
        if fired:
            meta = {"gaze": gaze.value, "face_present": obs.face_present}
            if pose is not None:
                meta["pitch"] = round(pose.pitch, 1)
            signals.append(Signal(Modality.PHONE, ts, meta))
        self._emit(signals)

        result = FrameResult(
            face_detected=obs.face_present,
            multiple_faces=obs.face_count > 1,
            phone_detected=fired,
            head_pose=pose,
            gaze_direction=gaze,
        )
        self.last_result = result
        return result

    async def submit_observation(self, obs: FrameObservation) -> FrameResult | None:
        """process_frame behind the one-in-flight guard; returns None when the frame is dropped."""
        if self._closing:
            return None
        if self._video_busy.locked():
            self.stats.frames_dropped += 1
            log.debug("session=%s dropped frame ts=%.3f (busy)", self.id, obs.timestamp)
            return None
        async with self._video_busy:
            return self.process_frame(obs)

    async def submit_image(self, rgb: np.ndarray, ts: float) -> FrameResult | None:
        """Run the vision adapter on an RGB frame in a worker thread, then process it."""
        if self.vision is None:
            raise TransientDetectionError("no vision adapter configured for this session")
        if self._closing:
            return None
        if self._video_busy.locked():
            self.stats.frames_dropped += 1
            log.debug("session=%s dropped image ts=%.3f (busy)", self.id, ts)
            return None
        async with self._video_busy:
            obs = await asyncio.to_thread(self.vision.observe, rgb, ts)
            if self._closing:
                return None
            return self.process_frame(obs)

    # ---------- audio ----------
    def process_audio_window(self, samples, timestamp: float) -> SpeechActivity:
        if self._closing:
            raise TransientDetectionError("session is closing")
        act = self.speech.process_window(samples, timestamp)
        self.stats.audio_windows += 1
        self.last_speech = act
        sig = self.speech_runs.update(act)
        if sig is not None:
            self._emit([sig])
        return act

    async def submit_audio(self, samples, timestamp: float) -> int:
        """Frame a chunk of samples and queue the windows; returns how many were queued."""
        if self._closing:
            return 0
        windows = self.framer.feed(samples, timestamp)
        for w in windows:
            await self._enqueue_window(w)
            # let the consumer keep pace with large chunks
            await asyncio.sleep(0)
        return len(windows)

    async def _enqueue_window(self, w: AudioWindow) -> None:
        q = self._audio_q
        ing = self.cfg.ingest
        if ing.audio_overflow == "block" and q.full():
            try:
                await asyncio.wait_for(q.put(w), timeout=ing.put_timeout_s)
                return
            except asyncio.TimeoutError:
                pass
        while q.full():
            old = q.get_nowait()
            q.task_done()
            self.stats.audio_evicted += 1
            log.warning("session=%s audio queue full; evicted window ts=%.3f", self.id, old.timestamp)
        q.put_nowait(w)

    async def _consume_audio(self) -> None:
        while True:
            w = await self._audio_q.get()
            try:
                if not self._closing:
                    self.process_audio_window(w.samples, w.timestamp)
            except (InvalidInput, TransientDetectionError) as e:
                self.stats.audio_errors += 1
                log.warning("session=%s audio window ts=%.3f skipped: %s", self.id, w.timestamp, e)
            except Exception:
                self.stats.audio_errors += 1
                log.exception("session=%s audio window ts=%.3f failed", self.id, w.timestamp)
            finally:
                self._audio_q.task_done()

    async def drain_audio(self) -> None:
        await self._audio_q.join()

    # ---------- focus ----------
    def on_visibility_change(self, is_visible: bool, timestamp: float) -> Signal | None:
        if self._closing:
            return None
        sig = self.visibility.on_visibility_change(is_visible, timestamp)
        if sig is not None:
            self.stats.visibility_changes += 1
            self._emit([sig])
        return sig

    # ---------- queries ----------
    async def settle(self) -> None:
        """Wait for queued audio, queued signals and any in-flight escalation."""
        if self._audio_worker is not None:
            await self._audio_q.join()
        await self.aggregator.settle()

    def events(self) -> List[Dict[str, Any]]:
        return [e.to_dict() for e in self.aggregator.events]

    def snapshot(self) -> Dict[str, Any]:
        return {
            "session_id": self.id,
            "started_at": self.started_at,
            "closing": self._closing,
            "closed": self._closed,
            "phone": self.phone.snapshot(self.last_frame_ts or 0.0),
            "visible": self.visibility.state.visible,
            "speaking": self.speech.state.speaking,
            "ingest": asdict(self.stats),
            "fusion": self.aggregator.snapshot(),
        }
