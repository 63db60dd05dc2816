from __future__ import annotations
from pathlib import Path
import logging
import threading

import numpy as np

from proctor.errors import InitializationFailure
from proctor.types import FrameObservation
from .face_mesh_utils import landmarks_from_result

log = logging.getLogger("proctor.vision")

DEFAULT_MODEL_PATH = "models/face_landmarker.task"


class FaceLandmarkerAdapter:
    """Wraps MediaPipe's FaceLandmarker (VIDEO mode) and turns results into FrameObservations.

    MediaPipe graphs are not thread-safe, so calls are serialized with a lock.
    Inference errors become status="error" observations rather than empty frames.
    """

    def __init__(self, model_path: str | Path = DEFAULT_MODEL_PATH, max_faces: int = 2,
                 min_detection_confidence: float = 0.5):
        self.model_path = Path(model_path)
        self.max_faces = max_faces
        self.min_detection_confidence = min_detection_confidence
        self._lock = threading.Lock()
        self._landmarker = None
        self._last_ms = -1

    def open(self) -> "FaceLandmarkerAdapter":
        if self._landmarker is not None:
            return self
        if not self.model_path.exists():
            raise InitializationFailure(f"face landmarker model not found: {self.model_path}")
        try:
            from mediapipe.tasks import python as mp_tasks
            from mediapipe.tasks.python import vision as mp_vision

            options = mp_vision.FaceLandmarkerOptions(
                base_options=mp_tasks.BaseOptions(model_asset_path=str(self.model_path)),
                running_mode=mp_vision.RunningMode.VIDEO,
                num_faces=self.max_faces,
                min_face_detection_confidence=self.min_detection_confidence,
                output_facial_transformation_matrixes=True,
            )
            self._landmarker = mp_vision.FaceLandmarker.create_from_options(options)
        except Exception as e:
            raise InitializationFailure(f"could not create face landmarker: {e}") from e
        log.info("FaceLandmarker initialized from %s", self.model_path)
        return self

    def close(self) -> None:
        with self._lock:
            if self._landmarker is not None:
                self._landmarker.close()
                self._landmarker = None
                log.info("FaceLandmarker closed")

    @property
    def is_open(self) -> bool:
        return self._landmarker is not None

    def observe(self, rgb: np.ndarray, ts: float) -> FrameObservation:
        """Run inference on one HxWx3 uint8 RGB frame taken at ts (seconds)."""
        import mediapipe as mp

        if self._landmarker is None:
            raise InitializationFailure("face landmarker is not open")
        try:
            image = mp.Image(image_format=mp.ImageFormat.SRGB, data=np.ascontiguousarray(rgb, dtype=np.uint8))
            with self._lock:
                # VIDEO mode requires strictly increasing timestamps
                ms = max(int(ts * 1000.0), self._last_ms + 1)
                self._last_ms = ms
                result = self._landmarker.detect_for_video(image, ms)
        except Exception as e:
            log.warning("face landmarker failed at ts=%.3f: %r", ts, e)
            return FrameObservation(timestamp=ts, status="error", error=str(e))

        faces = result.face_landmarks or []
        landmarks = landmarks_from_result(faces[0]) if faces else None
        matrix = None
        mats = getattr(result, "facial_transformation_matrixes", None) or []
        if faces and mats:
            matrix = np.asarray(mats[0], dtype=np.float64).reshape(-1).tolist()
        return FrameObservation(timestamp=ts, face_count=len(faces), landmarks=landmarks, matrix=matrix)
