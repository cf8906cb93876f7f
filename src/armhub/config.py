"""Environment-driven tunables for the robot hardware layer."""

from __future__ import annotations

from pathlib import Path
from typing import Literal, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, Field, field_validator

from .runtime.env import EnvMapping, get_bool, get_float, get_int, get_optional_str, get_str

ENV_PREFIX = "ARMHUB"


def _key(section: str, field_name: str) -> str:
    return f"{ENV_PREFIX}_{section.upper()}_{field_name.upper()}"


class USBSettings(BaseModel):
    """Serial link parameters and write retry policy."""

    baud_rate: int = Field(default=1_000_000, gt=0)
    port: Optional[str] = None
    servo_write_delay: float = Field(default=0.008, ge=0)
    max_retries: int = Field(default=3, ge=1)
    retry_delay: float = Field(default=0.100, ge=0)
    connection_timeout: float = Field(default=5.0, gt=0)
    read_timeout: float = Field(default=0.2, gt=0)

    @classmethod
    def from_env(cls, env: EnvMapping | None = None) -> USBSettings:
        d = cls()
        return cls(
            baud_rate=get_int(_key("usb", "baud_rate"), d.baud_rate, env=env),
            port=get_optional_str(_key("usb", "port"), env=env),
            servo_write_delay=get_float(_key("usb", "servo_write_delay"), d.servo_write_delay, env=env),
            max_retries=get_int(_key("usb", "max_retries"), d.max_retries, env=env),
            retry_delay=get_float(_key("usb", "retry_delay"), d.retry_delay, env=env),
            connection_timeout=get_float(_key("usb", "connection_timeout"), d.connection_timeout, env=env),
            read_timeout=get_float(_key("usb", "read_timeout"), d.read_timeout, env=env),
        )


class PollingSettings(BaseModel):
    consumer_polling_rate: float = 0.040
    calibration_polling_rate: float = 0.016
    error_backoff_rate: float = 0.200
    max_polling_errors: int = Field(default=5, ge=1)
    raw_change_threshold: int = Field(default=1, ge=0)

    @field_validator("consumer_polling_rate", "calibration_polling_rate", "error_backoff_rate")
    @classmethod
    def _positive_interval(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("polling intervals must be positive")
        return value

    @classmethod
    def from_env(cls, env: EnvMapping | None = None) -> PollingSettings:
        d = cls()
        return cls(
            consumer_polling_rate=get_float(
                _key("polling", "consumer_polling_rate"), d.consumer_polling_rate, env=env
            ),
            calibration_polling_rate=get_float(
                _key("polling", "calibration_polling_rate"), d.calibration_polling_rate, env=env
            ),
            error_backoff_rate=get_float(_key("polling", "error_backoff_rate"), d.error_backoff_rate, env=env),
            max_polling_errors=get_int(_key("polling", "max_polling_errors"), d.max_polling_errors, env=env),
            raw_change_threshold=get_int(
                _key("polling", "raw_change_threshold"), d.raw_change_threshold, env=env
            ),
        )


class CommandSettings(BaseModel):
    dedup_window: float = Field(default=0.016, ge=0)
    dedup_epsilon: float = Field(default=0.5, ge=0)
    max_queue_size: int = Field(default=50, ge=1)
    memory_cleanup_interval: float = Field(default=30.0, gt=0)

    @classmethod
    def from_env(cls, env: EnvMapping | None = None) -> CommandSettings:
        d = cls()
        return cls(
            dedup_window=get_float(_key("commands", "dedup_window"), d.dedup_window, env=env),
            dedup_epsilon=get_float(_key("commands", "dedup_epsilon"), d.dedup_epsilon, env=env),
            max_queue_size=get_int(_key("commands", "max_queue_size"), d.max_queue_size, env=env),
            memory_cleanup_interval=get_float(
                _key("commands", "memory_cleanup_interval"), d.memory_cleanup_interval, env=env
            ),
        )


class RemoteSettings(BaseModel):
    relay_url: str = "mqtt://localhost:1883"
    workspace_id: str = "default-workspace"
    state_sync_interval: float = Field(default=0.100, gt=0)
    message_timeout: float = Field(default=5.0, gt=0)
    reconnect_delay: float = Field(default=2.0, ge=0)

    @field_validator("relay_url")
    @classmethod
    def _mqtt_scheme(cls, value: str) -> str:
        scheme = urlparse(value).scheme
        if scheme not in ("mqtt", "tcp"):
            raise ValueError(f"unsupported relay url scheme: {scheme!r}")
        return value

    @classmethod
    def from_env(cls, env: EnvMapping | None = None) -> RemoteSettings:
        d = cls()
        return cls(
            relay_url=get_str(_key("remote", "relay_url"), d.relay_url, env=env),
            workspace_id=get_str(_key("remote", "workspace_id"), d.workspace_id, env=env),
            state_sync_interval=get_float(_key("remote", "state_sync_interval"), d.state_sync_interval, env=env),
            message_timeout=get_float(_key("remote", "message_timeout"), d.message_timeout, env=env),
            reconnect_delay=get_float(_key("remote", "reconnect_delay"), d.reconnect_delay, env=env),
        )


class CalibrationSettings(BaseModel):
    min_range_threshold: int = Field(default=500, gt=0)
    final_position_timeout: float = Field(default=2.0, gt=0)
    calibration_path: Optional[Path] = None

    @classmethod
    def from_env(cls, env: EnvMapping | None = None) -> CalibrationSettings:
        d = cls()
        path = get_optional_str(_key("calibration", "calibration_path"), env=env)
        return cls(
            min_range_threshold=get_int(
                _key("calibration", "min_range_threshold"), d.min_range_threshold, env=env
            ),
            final_position_timeout=get_float(
                _key("calibration", "final_position_timeout"), d.final_position_timeout, env=env
            ),
            calibration_path=Path(path) if path else None,
        )


class RobotSettings(BaseModel):
    """All tunables of the hardware layer, grouped by concern."""

    usb: USBSettings = Field(default_factory=USBSettings)
    polling: PollingSettings = Field(default_factory=PollingSettings)
    commands: CommandSettings = Field(default_factory=CommandSettings)
    remote: RemoteSettings = Field(default_factory=RemoteSettings)
    calibration: CalibrationSettings = Field(default_factory=CalibrationSettings)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: EnvMapping | None = None) -> RobotSettings:
        return cls(
            usb=USBSettings.from_env(env),
            polling=PollingSettings.from_env(env),
            commands=CommandSettings.from_env(env),
            remote=RemoteSettings.from_env(env),
            calibration=CalibrationSettings.from_env(env),
            log_level=get_str(f"{ENV_PREFIX}_LOG_LEVEL", "INFO", env=env).upper(),
        )


class BridgeSettings(BaseModel):
    """Settings for the ``python -m armhub`` bridge process."""

    mode: Literal["leader", "follower"] = "leader"
    robot_id: str = "so100"
    room_id: Optional[str] = None
    join_existing: bool = False
    calibration: Literal["file", "preset", "skip"] = "preset"
    robot: RobotSettings = Field(default_factory=RobotSettings)

    @classmethod
    def from_env(cls, env: EnvMapping | None = None) -> BridgeSettings:
        d = cls()
        return cls.model_validate(
            {
                "mode": get_str(_key("bridge", "mode"), d.mode, env=env).lower(),
                "robot_id": get_str(_key("bridge", "robot_id"), d.robot_id, env=env),
                "room_id": get_optional_str(_key("bridge", "room_id"), env=env),
                "join_existing": get_bool(_key("bridge", "join_existing"), d.join_existing, env=env),
                "calibration": get_str(_key("bridge", "calibration"), d.calibration, env=env).lower(),
                "robot": RobotSettings.from_env(env),
            }
        )


__all__ = [
    "BridgeSettings",
    "CalibrationSettings",
    "CommandSettings",
    "PollingSettings",
    "RemoteSettings",
    "RobotSettings",
    "USBSettings",
]
