from __future__ import annotations

from proctor.config import GazeConfig
from proctor.types import GazeDirection, HeadPose
from .face_mesh_utils import as_landmark_array, iris_offset


class GazeClassifier:
    """Coarse gaze bucket from head pose.

    Downward glances (phone in lap) are flagged at a smaller angle than upward ones.
    With use_iris_refinement, a "center" head pose can be refined by where the irises
    sit inside the eye boxes; this needs a refined (478-point) mesh.
    """

    def __init__(self, cfg: GazeConfig | None = None):
        self.cfg = cfg or GazeConfig()

    def classify(self, pose: HeadPose | None, landmarks=None) -> GazeDirection:
        c = self.cfg
        if pose is None:
            return GazeDirection.UNDETECTED
        if pose.pitch > c.down_pitch_deg:
            return GazeDirection.DOWN
        if pose.pitch < c.up_pitch_deg:
            return GazeDirection.UP
        if pose.yaw > c.right_yaw_deg:
            return GazeDirection.RIGHT
        if pose.yaw < c.left_yaw_deg:
            return GazeDirection.LEFT
        if c.use_iris_refinement and landmarks is not None:
            return self._refine(landmarks)
        return GazeDirection.CENTER

    def _refine(self, landmarks) -> GazeDirection:
        lm = as_landmark_array(landmarks)
        off = iris_offset(lm) if lm is not None else None
        if off is None:
            return GazeDirection.CENTER
        dx, dy = off
        th = self.cfg.iris_focus_th
        if abs(dx) < th and abs(dy) < th:
            return GazeDirection.CENTER
        if abs(dx) >= abs(dy):
            return GazeDirection.RIGHT if dx > 0 else GazeDirection.LEFT
        return GazeDirection.DOWN if dy > 0 else GazeDirection.UP
