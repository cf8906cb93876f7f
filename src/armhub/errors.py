"""Exception taxonomy for the robot hardware layer."""

from __future__ import annotations

from typing import Iterable, Optional, Tuple


class ArmHubError(Exception):
    """Base class for every error raised by armhub."""


class ConnectionFailed(ArmHubError):
    """A transport (serial link or relay) could not be opened."""


class DriverNotConnected(ArmHubError):
    """An operation needs a connected driver or transport."""


class HardwareError(ArmHubError):
    """A servo operation failed after the retry budget was exhausted."""

    operation = "access"

    def __init__(self, servo_ids: Iterable[int], cause: Optional[BaseException] = None, attempts: int = 1) -> None:
        self.servo_ids: Tuple[int, ...] = tuple(servo_ids)
        self.cause = cause
        self.attempts = attempts
        ids = ", ".join(str(sid) for sid in self.servo_ids) or "?"
        super().__init__(f"Failed to {self.operation} servo {ids} after {attempts} attempt(s): {cause}")

    @property
    def servo_id(self) -> Optional[int]:
        return self.servo_ids[0] if self.servo_ids else None


class HardwareWriteFailed(HardwareError):
    operation = "write"


class HardwareReadFailed(HardwareError):
    operation = "read"


class CalibrationRequired(ArmHubError):
    """A hardware driver was asked to go active before it was calibrated."""

    def __init__(self, driver: str, joints: Iterable[str] = ()) -> None:
        self.driver = driver
        self.joints = tuple(joints)
        detail = f" (uncalibrated: {', '.join(self.joints)})" if self.joints else ""
        super().__init__(f"{driver} requires calibration. Please complete calibration first{detail}.")


class UnknownJoint(ArmHubError, KeyError):
    """A command referenced a joint that the robot does not have."""

    def __init__(self, name: str, robot_id: str | None = None) -> None:
        self.name = name
        self.robot_id = robot_id
        where = f" on robot {robot_id}" if robot_id else ""
        super().__init__(f"Joint {name!r} not found{where}")

    def __str__(self) -> str:
        return str(self.args[0])


class RelayError(ArmHubError):
    """The relay service rejected or failed a request."""


__all__ = [
    "ArmHubError",
    "CalibrationRequired",
    "ConnectionFailed",
    "DriverNotConnected",
    "HardwareError",
    "HardwareReadFailed",
    "HardwareWriteFailed",
    "RelayError",
    "UnknownJoint",
]
