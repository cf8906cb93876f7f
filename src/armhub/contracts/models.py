from __future__ import annotations

import time
from typing import Annotated, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field

EVENT_TYPE_JOINT_UPDATE = "robot.joint_update"
EVENT_TYPE_STATE_SYNC = "robot.state_sync"
EVENT_TYPE_ROOM_INFO = "robot.room_info"


class JointState(BaseModel):
    """Live state of one joint; ``value`` is always normalized and clamped."""

    name: str
    value: float = 0.0
    limits: Optional[Tuple[float, float]] = None
    servo_id: Optional[int] = Field(default=None, ge=0, le=253)


class JointValue(BaseModel):
    name: str
    value: float

    model_config = {"extra": "forbid"}


class RobotCommand(BaseModel):
    joints: list[JointValue]
    timestamp: float = Field(default_factory=time.time)

    model_config = {"extra": "forbid"}

    @classmethod
    def from_values(cls, values: dict[str, float], timestamp: float | None = None) -> "RobotCommand":
        joints = [JointValue(name=name, value=value) for name, value in values.items()]
        if timestamp is None:
            return cls(joints=joints)
        return cls(joints=joints, timestamp=timestamp)

    def as_dict(self) -> dict[str, float]:
        return {joint.name: joint.value for joint in self.joints}


class ConnectionStatus(BaseModel):
    is_connected: bool = False
    error: Optional[str] = None
    last_connected: Optional[float] = None


class JointCalibration(BaseModel):
    is_calibrated: bool = False
    min_raw: Optional[int] = None
    max_raw: Optional[int] = None

    @property
    def range(self) -> int:
        if self.min_raw is None or self.max_raw is None:
            return 0
        return self.max_raw - self.min_raw


class PresetJoint(BaseModel):
    """Known-good raw range for one joint, plus where it currently sits."""

    min: int = Field(ge=0, le=4095)
    max: int = Field(ge=0, le=4095)
    current: int = Field(ge=0, le=4095)


class CalibrationSnapshot(BaseModel):
    """Persistable calibration of one physical arm."""

    version: int = 1
    joints: dict[str, PresetJoint]
    saved_at: float = Field(default_factory=time.time)

    model_config = {"extra": "forbid"}


class USBDriverConfig(BaseModel):
    type: Literal["usb"] = "usb"
    baud_rate: int = Field(default=1_000_000, gt=0)
    port: Optional[str] = None


class RemoteDriverConfig(BaseModel):
    type: Literal["remote"] = "remote"
    room_id: str
    workspace_id: str = "default-workspace"
    relay_url: str = "mqtt://localhost:1883"


DriverConfig = Annotated[Union[USBDriverConfig, RemoteDriverConfig], Field(discriminator="type")]


class RoomInfo(BaseModel):
    room_id: str
    workspace_id: str
    created_at: float = Field(default_factory=time.time)
    participants: dict[str, list[str]] = Field(default_factory=lambda: {"producers": [], "consumers": []})


class JointUpdate(BaseModel):
    """Sparse update published by a relay producer for each applied command."""

    joints: list[JointValue]
    source: Optional[str] = None
    timestamp: float = Field(default_factory=time.time)

    model_config = {"extra": "forbid"}


class StateSync(BaseModel):
    """Full joint snapshot published periodically for late joiners."""

    state: dict[str, float]
    source: Optional[str] = None
    timestamp: float = Field(default_factory=time.time)

    model_config = {"extra": "forbid"}


__all__ = [
    "CalibrationSnapshot",
    "ConnectionStatus",
    "DriverConfig",
    "EVENT_TYPE_JOINT_UPDATE",
    "EVENT_TYPE_ROOM_INFO",
    "EVENT_TYPE_STATE_SYNC",
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
