from .calibration import CalibrationPhase, CalibrationProgress, CalibrationState, SO100_PRESET
from .codec import JointKind, clamp, denormalize, kind_for, normalize

__all__ = [
    "CalibrationPhase",
    "CalibrationProgress",
    "CalibrationState",
    "JointKind",
    "SO100_PRESET",
    "clamp",
    "denormalize",
    "kind_for",
    "normalize",
]
