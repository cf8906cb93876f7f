"""Mapping between raw servo units and normalized joint percentages.

Bipolar joints cover ``[-100, 100]`` and the gripper covers ``[0, 100]``.
Without a complete calibration the codec falls back to the servo's full
0..4095 travel centred on 2048 so the arm stays usable before calibration.
"""

from __future__ import annotations

import math
from enum import Enum
from typing import Optional, Tuple

from ..contracts.models import JointCalibration

RAW_MIN = 0
RAW_MAX = 4095
RAW_CENTER = 2048

GRIPPER_NAMES = frozenset({"jaw", "gripper"})


class JointKind(str, Enum):
    BIPOLAR = "bipolar"
    GRIPPER = "gripper"


def kind_for(joint_name: str) -> JointKind:
    if joint_name.lower() in GRIPPER_NAMES:
        return JointKind.GRIPPER
    return JointKind.BIPOLAR


def value_range(kind: JointKind) -> Tuple[float, float]:
    if kind is JointKind.GRIPPER:
        return 0.0, 100.0
    return -100.0, 100.0


def clamp(value: float, kind: JointKind) -> float:
    lower, upper = value_range(kind)
    return max(lower, min(upper, value))


def _bound(value: int, lower: int, upper: int) -> int:
    return max(lower, min(upper, value))


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _usable(calibration: Optional[JointCalibration]) -> bool:
    return (
        calibration is not None
        and calibration.is_calibrated
        and calibration.min_raw is not None
        and calibration.max_raw is not None
    )


def normalize(raw: int, kind: JointKind, calibration: Optional[JointCalibration] = None) -> float:
    if not _usable(calibration):
        if kind is JointKind.GRIPPER:
            return clamp(raw / RAW_MAX * 100.0, kind)
        return clamp((raw - RAW_CENTER) / RAW_CENTER * 100.0, kind)

    assert calibration is not None
    low, high = calibration.min_raw, calibration.max_raw
    assert low is not None and high is not None
    span = high - low
    if span == 0:
        return 0.0
    bounded = _bound(raw, min(low, high), max(low, high))
    ratio = (bounded - low) / span
    if kind is JointKind.GRIPPER:
        return ratio * 100.0
    return ratio * 200.0 - 100.0


def denormalize(value: float, kind: JointKind, calibration: Optional[JointCalibration] = None) -> int:
    if not _usable(calibration):
        if kind is JointKind.GRIPPER:
            raw = _round_half_up(value / 100.0 * RAW_MAX)
        else:
            raw = _round_half_up(RAW_CENTER + value / 100.0 * RAW_CENTER)
        return _bound(raw, RAW_MIN, RAW_MAX)

    assert calibration is not None
    low, high = calibration.min_raw, calibration.max_raw
    assert low is not None and high is not None
    if kind is JointKind.GRIPPER:
        ratio = value / 100.0
    else:
        ratio = (value + 100.0) / 200.0
    ratio = max(0.0, min(1.0, ratio))
    raw = _round_half_up(low + ratio * (high - low))
    return _bound(raw, min(low, high), max(low, high))


def normalized_to_radians(
    value: float,
    kind: JointKind,
    limits: Optional[Tuple[float, float]] = None,
) -> float:
    """Convert a normalized value to a render angle inside the joint's radian limits."""
    if limits is None:
        return value / 100.0 * math.pi
    lower, upper = limits
    if kind is JointKind.GRIPPER:
        ratio = value / 100.0
    else:
        ratio = (value + 100.0) / 200.0
    return lower + ratio * (upper - lower)


__all__ = [
    "GRIPPER_NAMES",
    "JointKind",
    "RAW_CENTER",
    "RAW_MAX",
    "RAW_MIN",
    "clamp",
    "denormalize",
    "kind_for",
    "normalize",
    "normalized_to_radians",
    "value_range",
]
