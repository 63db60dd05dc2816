from __future__ import annotations
from typing import List, Sequence
import numpy as np

# MediaPipe face mesh indices: eye corners/eyelids and (refined mesh only) iris rings
LEFT_EYE = [33, 133, 160, 158, 153, 144]
RIGHT_EYE = [362, 263, 387, 385, 380, 373]
RIGHT_IRIS = [469, 470, 471, 472]
LEFT_IRIS = [474, 475, 476, 477]

REFINED_MESH_SIZE = 478


def as_landmark_array(landmarks) -> np.ndarray | None:
    """Coerce a landmark set into an (N, 2) float array of normalized x/y, or None."""
    if landmarks is None:
        return None
    arr = np.asarray(landmarks, dtype=np.float32)
    if arr.ndim != 2 or arr.shape[0] == 0 or arr.shape[1] < 2:
        return None
    return arr[:, :2]


def has_iris(landmarks: np.ndarray) -> bool:
    return landmarks.shape[0] >= REFINED_MESH_SIZE


def iris_centers(landmarks: np.ndarray) -> tuple[np.ndarray | None, np.ndarray | None]:
    """Return (left_iris_center, right_iris_center), or (None, None) without a refined mesh."""
    if not has_iris(landmarks):
        return None, None
    return landmarks[LEFT_IRIS].mean(axis=0), landmarks[RIGHT_IRIS].mean(axis=0)


def eye_boxes(landmarks: np.ndarray) -> tuple[List[float], List[float]]:
    """Eye boxes [bx, by, bw, bh] in the landmarks' own (normalized) coordinates."""
    def _box(idx: Sequence[int]) -> List[float]:
        pts = landmarks[list(idx)]
        minx, maxx = float(pts[:, 0].min()), float(pts[:, 0].max())
        miny, maxy = float(pts[:, 1].min()), float(pts[:, 1].max())
        return [minx, miny, max(1e-6, maxx - minx), max(1e-6, maxy - miny)]
    return _box(LEFT_EYE), _box(RIGHT_EYE)


def iris_offset(landmarks: np.ndarray) -> tuple[float, float] | None:
    """Mean iris offset from the eye-box centers, each axis roughly in [-0.5, 0.5].
    Positive dx is image-right, positive dy is image-down.
    """
    li, ri = iris_centers(landmarks)
    if li is None or ri is None:
        return None
    le_box, re_box = eye_boxes(landmarks)

    def _norm(c: np.ndarray, b: List[float]) -> tuple[float, float]:
        bx, by, bw, bh = b
        return (float(c[0]) - bx) / bw, (float(c[1]) - by) / bh

    lix, liy = _norm(li, le_box)
    rix, riy = _norm(ri, re_box)
    dx = ((lix - 0.5) + (rix - 0.5)) * 0.5
    dy = ((liy - 0.5) + (riy - 0.5)) * 0.5
    return dx, dy


def landmarks_from_result(face_landmarks) -> np.ndarray:
    """(N, 3) array from one face of a MediaPipe FaceLandmarker result."""
    return np.array([[p.x, p.y, p.z] for p in face_landmarks], dtype=np.float32)
