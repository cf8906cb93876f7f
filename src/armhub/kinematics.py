"""Joint tables for supported arms and URDF joint extraction."""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from .contracts.models import JointState

logger = logging.getLogger(__name__)

SO100_SERVO_IDS: Dict[str, int] = {
    "Rotation": 1,
    "Pitch": 2,
    "Elbow": 3,
    "Wrist_Pitch": 4,
    "Wrist_Roll": 5,
    "Jaw": 6,
}

ACTUATED_TYPES = frozenset({"revolute", "continuous"})


def so100_joints() -> List[JointState]:
    return [JointState(name=name, servo_id=servo_id) for name, servo_id in SO100_SERVO_IDS.items()]


def joints_from_urdf(
    path: Path | str,
    servo_ids: Optional[Mapping[str, int]] = None,
) -> List[JointState]:
    """Read revolute joints from a URDF file in document order.

    Servo ids come from ``servo_ids`` when the joint is listed there, otherwise
    they are assigned from the joint's 1-based position.
    """
    root = ET.parse(str(path)).getroot()
    joints: List[JointState] = []
    for element in root.iter("joint"):
        if element.get("type") not in ACTUATED_TYPES:
            continue
        name = element.get("name")
        if not name:
            continue
        limits = None
        limit = element.find("limit")
        if limit is not None and limit.get("lower") is not None and limit.get("upper") is not None:
            limits = (float(limit.get("lower")), float(limit.get("upper")))
        position = len(joints) + 1
        servo_id = servo_ids.get(name, position) if servo_ids else position
        joints.append(JointState(name=name, limits=limits, servo_id=servo_id))
    logger.debug("urdf.joints", extra={"path": str(path), "joints": [j.name for j in joints]})
    return joints


__all__ = ["SO100_SERVO_IDS", "joints_from_urdf", "so100_joints"]
