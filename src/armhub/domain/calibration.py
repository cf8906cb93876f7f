"""Per-connection calibration state machine.

``UNCALIBRATED -> CALIBRATING -> CALIBRATED``, with ``cancel()`` returning a
session to ``UNCALIBRATED`` and ``skip()`` / ``load_preset()`` jumping straight
to ``CALIBRATED``. The state only tracks numbers; sampling the hardware is the
transport's job.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Optional

import orjson

from ..contracts.models import CalibrationSnapshot, JointCalibration, PresetJoint
from ..runtime.events import Observers, Subscription
from .codec import RAW_CENTER, RAW_MAX, RAW_MIN, kind_for, normalize

logger = logging.getLogger(__name__)

DEFAULT_MIN_RANGE = 500

SO100_PRESET: Dict[str, PresetJoint] = {
    "Rotation": PresetJoint(min=764, max=3388, current=2180),
    "Pitch": PresetJoint(min=1138, max=3501, current=1159),
    "Elbow": PresetJoint(min=660, max=2876, current=2874),
    "Wrist_Pitch": PresetJoint(min=762, max=3075, current=2138),
    "Wrist_Roll": PresetJoint(min=154, max=3995, current=2081),
    "Jaw": PresetJoint(min=2013, max=3555, current=2061),
}


class CalibrationPhase(str, Enum):
    UNCALIBRATED = "uncalibrated"
    CALIBRATING = "calibrating"
    CALIBRATED = "calibrated"


@dataclass(slots=True)
class CalibrationProgress:
    phase: CalibrationPhase
    progress: float
    ranges: Dict[str, int] = field(default_factory=dict)
    current: Dict[str, int] = field(default_factory=dict)


class CalibrationState:
    def __init__(self, joints: Iterable[str], *, min_range: int = DEFAULT_MIN_RANGE) -> None:
        self._joints: List[str] = list(joints)
        self.min_range = min_range
        self.phase = CalibrationPhase.UNCALIBRATED
        self._calibrations: Dict[str, JointCalibration] = {name: JointCalibration() for name in self._joints}
        self._raw: Dict[str, int] = {}
        self._changed: Observers[CalibrationProgress] = Observers("calibration.changed")
        self._completed: Observers[Dict[str, int]] = Observers("calibration.completed")

    @property
    def joints(self) -> List[str]:
        return list(self._joints)

    @property
    def is_calibrating(self) -> bool:
        return self.phase is CalibrationPhase.CALIBRATING

    @property
    def needs_calibration(self) -> bool:
        return bool(self.uncalibrated_joints())

    def uncalibrated_joints(self) -> List[str]:
        return [name for name in self._joints if not self._calibrations[name].is_calibrated]

    def calibration_for(self, joint: str) -> JointCalibration:
        return self._calibrations[joint].model_copy()

    def range_of(self, joint: str) -> int:
        return self._calibrations[joint].range

    def last_raw(self, joint: str) -> Optional[int]:
        return self._raw.get(joint)

    def raw_positions(self) -> Dict[str, int]:
        return dict(self._raw)

    @property
    def progress(self) -> float:
        if not self._joints:
            return 0.0
        total = sum(min(100.0, self.range_of(name) / self.min_range * 100.0) for name in self._joints)
        return total / len(self._joints)

    def report(self) -> CalibrationProgress:
        return CalibrationProgress(
            phase=self.phase,
            progress=self.progress,
            ranges={name: self.range_of(name) for name in self._joints},
            current=dict(self._raw),
        )

    def on_change(self, callback: Callable[[CalibrationProgress], None]) -> Subscription:
        return self._changed.subscribe(callback)

    def on_complete(self, callback: Callable[[Dict[str, int]], None]) -> Subscription:
        return self._completed.subscribe(callback)

    def start(self) -> None:
        """Open a session, collapsing every joint's range to its last known raw value."""
        self.phase = CalibrationPhase.CALIBRATING
        for name in self._joints:
            raw = self._raw.get(name)
            self._calibrations[name] = JointCalibration(is_calibrated=False, min_raw=raw, max_raw=raw)
        logger.info("calibration.started", extra={"joints": self._joints})
        self._changed.emit(self.report())

    def observe(self, joint: str, raw: int) -> None:
        if joint not in self._calibrations:
            return
        self._raw[joint] = raw
        if self.phase is not CalibrationPhase.CALIBRATING:
            return
        cal = self._calibrations[joint]
        if cal.min_raw is None or raw < cal.min_raw:
            cal.min_raw = raw
        if cal.max_raw is None or raw > cal.max_raw:
            cal.max_raw = raw

    def observe_many(self, positions: Mapping[str, int]) -> None:
        for joint, raw in positions.items():
            self.observe(joint, raw)
        if self.phase is CalibrationPhase.CALIBRATING:
            self._changed.emit(self.report())

    def complete(self) -> Dict[str, int]:
        """Close the session and return the final raw position of each calibrated joint.

        Joints whose discovered range is below ``min_range`` stay uncalibrated
        and are reported in a ``calibration.incomplete`` warning; the phase only
        becomes ``CALIBRATED`` once every joint qualifies.
        """
        final_positions: Dict[str, int] = {}
        insufficient: Dict[str, int] = {}
        for name in self._joints:
            cal = self._calibrations[name]
            if cal.range >= self.min_range:
                cal.is_calibrated = True
                raw = self._raw.get(name)
                if raw is not None:
                    final_positions[name] = raw
            else:
                cal.is_calibrated = False
                insufficient[name] = cal.range

        if insufficient:
            self.phase = CalibrationPhase.UNCALIBRATED
            logger.warning(
                "calibration.incomplete",
                extra={"insufficient": insufficient, "min_range": self.min_range},
            )
        else:
            self.phase = CalibrationPhase.CALIBRATED
            logger.info("calibration.completed", extra={"final_positions": final_positions})

        self._changed.emit(self.report())
        self._completed.emit(dict(final_positions))
        return final_positions

    def cancel(self) -> None:
        self.phase = CalibrationPhase.UNCALIBRATED
        self._calibrations = {name: JointCalibration() for name in self._joints}
        logger.info("calibration.cancelled")
        self._changed.emit(self.report())

    def skip(self) -> Dict[str, int]:
        """Mark every joint calibrated over the servo's full travel."""
        for name in self._joints:
            self._calibrations[name] = JointCalibration(is_calibrated=True, min_raw=RAW_MIN, max_raw=RAW_MAX)
            self._raw.setdefault(name, RAW_CENTER)
        return self._finish("calibration.skipped")

    def load_preset(self, preset: Mapping[str, PresetJoint]) -> Dict[str, int]:
        """Apply known-good ranges; joints missing from the preset get the full range."""
        for name in self._joints:
            entry = preset.get(name)
            if entry is None:
                self._calibrations[name] = JointCalibration(is_calibrated=True, min_raw=RAW_MIN, max_raw=RAW_MAX)
                self._raw.setdefault(name, RAW_CENTER)
                continue
            self._calibrations[name] = JointCalibration(is_calibrated=True, min_raw=entry.min, max_raw=entry.max)
            self._raw[name] = entry.current
        return self._finish("calibration.preset_loaded")

    def _finish(self, event: str) -> Dict[str, int]:
        self.phase = CalibrationPhase.CALIBRATED
        final_positions = {name: self._raw[name] for name in self._joints if name in self._raw}
        logger.info(event, extra={"joints": self._joints})
        self._changed.emit(self.report())
        self._completed.emit(dict(final_positions))
        return final_positions

    def snapshot(self) -> CalibrationSnapshot:
        joints: Dict[str, PresetJoint] = {}
        for name in self._joints:
            cal = self._calibrations[name]
            if not cal.is_calibrated or cal.min_raw is None or cal.max_raw is None:
                continue
            current = self._raw.get(name, (cal.min_raw + cal.max_raw) // 2)
            joints[name] = PresetJoint(min=cal.min_raw, max=cal.max_raw, current=current)
        return CalibrationSnapshot(joints=joints)

    def normalize(self, joint: str, raw: int) -> float:
        return normalize(raw, kind_for(joint), self._calibrations.get(joint))


def sync_positions(
    state: CalibrationState,
    final_positions: Mapping[str, int],
    update: Callable[[str, float], None],
) -> None:
    """Re-seed normalized joint values from raw positions through ``update``."""
    for joint, raw in final_positions.items():
        update(joint, state.normalize(joint, raw))


def save_snapshot(snapshot: CalibrationSnapshot, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(orjson.dumps(snapshot.model_dump(), option=orjson.OPT_INDENT_2))
    logger.info("calibration.saved", extra={"path": str(path), "joints": list(snapshot.joints)})


def load_snapshot(path: Path) -> CalibrationSnapshot:
    snapshot = CalibrationSnapshot.model_validate(orjson.loads(path.read_bytes()))
    logger.info("calibration.loaded", extra={"path": str(path), "joints": list(snapshot.joints)})
    return snapshot


__all__ = [
    "CalibrationPhase",
    "CalibrationProgress",
    "CalibrationState",
    "DEFAULT_MIN_RANGE",
    "SO100_PRESET",
    "load_snapshot",
    "save_snapshot",
    "sync_positions",
]
