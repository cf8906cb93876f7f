"""Robot arm hardware abstraction: calibration, drivers and the command pipeline."""

from .config import RobotSettings
from .contracts.models import JointState, JointValue, RemoteDriverConfig, RobotCommand, USBDriverConfig
from .errors import (
    ArmHubError,
    CalibrationRequired,
    ConnectionFailed,
    DriverNotConnected,
    HardwareReadFailed,
    HardwareWriteFailed,
    RelayError,
    UnknownJoint,
)
from .manager import RobotManager, RoomCreateResult
from .robot import JointChange, Robot

__version__ = "0.1.0"

__all__ = [
    "ArmHubError",
    "CalibrationRequired",
    "ConnectionFailed",
    "DriverNotConnected",
    "HardwareReadFailed",
    "HardwareWriteFailed",
    "JointChange",
    "JointState",
    "JointValue",
    "RelayError",
    "RemoteDriverConfig",
    "Robot",
    "RobotCommand",
    "RobotManager",
    "RobotSettings",
    "RoomCreateResult",
    "USBDriverConfig",
    "UnknownJoint",
]
