from .envelope import Envelope
from .models import (
    EVENT_TYPE_JOINT_UPDATE,
    EVENT_TYPE_ROOM_INFO,
    EVENT_TYPE_STATE_SYNC,
    CalibrationSnapshot,
    ConnectionStatus,
    DriverConfig,
    JointCalibration,
    JointState,
    JointUpdate,
    JointValue,
    PresetJoint,
    RemoteDriverConfig,
    RobotCommand,
    RoomInfo,
    StateSync,
    USBDriverConfig,
)

__all__ = [
    "CalibrationSnapshot",
    "ConnectionStatus",
    "DriverConfig",
    "EVENT_TYPE_JOINT_UPDATE",
    "EVENT_TYPE_ROOM_INFO",
    "EVENT_TYPE_STATE_SYNC",
    "Envelope",
    "JointCalibration",
    "JointState",
    "JointUpdate",
    "JointValue",
    "PresetJoint",
    "RemoteDriverConfig",
    "RobotCommand",
    "RoomInfo",
    "StateSync",
    "USBDriverConfig",
]
