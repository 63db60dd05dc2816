from __future__ import annotations
from typing import Sequence
import math

import numpy as np

from proctor.errors import InvalidInput
from proctor.types import HeadPose

EULER_ORDERS = ("XYZ", "YXZ", "ZXY", "ZYX", "YZX", "XZY")

# Below this |sin| the middle angle is treated as gimbal-locked
_LOCK_EPS = 0.9999999


def _clamp(v: float) -> float:
    return max(-1.0, min(1.0, v))


def _rotation_block(data: Sequence[float] | np.ndarray) -> np.ndarray:
    try:
        arr = np.asarray(data, dtype=np.float64).reshape(-1)
    except (TypeError, ValueError) as e:
        raise InvalidInput(f"transform matrix is not numeric: {e}") from e
    if arr.size != 16:
        raise InvalidInput(f"transform matrix must have 16 elements, got {arr.size}")
    if not np.all(np.isfinite(arr)):
        raise InvalidInput("transform matrix contains non-finite values")
    m = arr.reshape(4, 4)[:3, :3].copy()
    # Strip per-axis scale so only rotation remains
    norms = np.linalg.norm(m, axis=0)
    if np.any(norms < 1e-9):
        raise InvalidInput("transform matrix has a degenerate rotation block")
    return m / norms


def euler_from_rotation(m: np.ndarray, order: str = "YXZ") -> tuple[float, float, float]:
    """Decompose a 3x3 rotation into (x, y, z) radians for the given intrinsic order."""
    m11, m12, m13 = m[0]
    m21, m22, m23 = m[1]
    m31, m32, m33 = m[2]

    if order == "XYZ":
        y = math.asin(_clamp(m13))
        if abs(m13) < _LOCK_EPS:
            x = math.atan2(-m23, m33)
            z = math.atan2(-m12, m11)
        else:
            x = math.atan2(m32, m22)
            z = 0.0
    elif order == "YXZ":
        x = math.asin(-_clamp(m23))
        if abs(m23) < _LOCK_EPS:
            y = math.atan2(m13, m33)
            z = math.atan2(m21, m22)
        else:
            y = math.atan2(-m31, m11)
            z = 0.0
    elif order == "ZXY":
        x = math.asin(_clamp(m32))
        if abs(m32) < _LOCK_EPS:
            y = math.atan2(-m31, m33)
            z = math.atan2(-m12, m22)
        else:
            y = 0.0
            z = math.atan2(m21, m11)
    elif order == "ZYX":
        y = math.asin(-_clamp(m31))
        if abs(m31) < _LOCK_EPS:
            x = math.atan2(m32, m33)
            z = math.atan2(m21, m11)
        else:
            x = 0.0
            z = math.atan2(-m12, m22)
    elif order == "YZX":
        z = math.asin(_clamp(m21))
        if abs(m21) < _LOCK_EPS:
            x = math.atan2(-m23, m22)
            y = math.atan2(-m31, m11)
        else:
            x = 0.0
            y = math.atan2(m13, m33)
    elif order == "XZY":
        z = math.asin(-_clamp(m12))
        if abs(m12) < _LOCK_EPS:
            x = math.atan2(m32, m22)
            y = math.atan2(m13, m11)
        else:
            x = math.atan2(-m23, m33)
            y = 0.0
    else:
        raise ValueError(f"Unsupported Euler order: {order}")
    return x, y, z


def head_pose_from_matrix(data: Sequence[float] | np.ndarray, order: str = "YXZ") -> HeadPose:
    """Pitch/yaw/roll in degrees from a 16-element row-major face transform.
    Raises InvalidInput for anything that is not exactly 16 finite numbers.
    """
    if order not in EULER_ORDERS:
        raise ValueError(f"Unsupported Euler order: {order}")
    m = _rotation_block(data)
    x, y, z = euler_from_rotation(m, order)
    return HeadPose(pitch=math.degrees(x), yaw=math.degrees(y), roll=math.degrees(z))


class HeadPoseEstimator:
    def __init__(self, euler_order: str = "YXZ"):
        if euler_order not in EULER_ORDERS:
            raise ValueError(f"Unsupported Euler order: {euler_order}")
        self.euler_order = euler_order

    def compute(self, data: Sequence[float] | np.ndarray) -> HeadPose:
        """Decompose with the configured order; raises InvalidInput on a malformed matrix."""
        return head_pose_from_matrix(data, self.euler_order)

    def estimate(self, data: Sequence[float] | np.ndarray | None) -> HeadPose | None:
        """Like head_pose_from_matrix but returns None ("no pose") instead of raising."""
        if data is None:
            return None
        try:
            return self.compute(data)
        except InvalidInput:
            return None
