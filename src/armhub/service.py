"""Bridge between a local arm and a relay room.

``leader``: the local arm is read by hand and its movements are published.
``follower``: commands from the room drive the local arm.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .config import BridgeSettings
from .contracts.models import RemoteDriverConfig, USBDriverConfig
from .domain.calibration import SO100_PRESET
from .errors import ArmHubError
from .manager import RobotManager
from .robot import Robot

logger = logging.getLogger(__name__)


class BridgeService:
    def __init__(self, settings: BridgeSettings, manager: Optional[RobotManager] = None) -> None:
        self.settings = settings
        self.manager = manager or RobotManager(settings.robot)
        self.robot: Optional[Robot] = None

    def _usb_config(self) -> USBDriverConfig:
        usb = self.settings.robot.usb
        return USBDriverConfig(baud_rate=usb.baud_rate, port=usb.port)

    def _remote_config(self) -> RemoteDriverConfig:
        remote = self.settings.robot.remote
        return RemoteDriverConfig(
            room_id=self.settings.room_id or self.manager.generate_room_id(self.settings.robot_id),
            workspace_id=remote.workspace_id,
            relay_url=remote.relay_url,
        )

    async def calibrate(self, robot: Robot) -> None:
        source = self.settings.calibration
        path = self.settings.robot.calibration.calibration_path
        if source == "file":
            if path is None or not path.exists():
                raise ArmHubError(f"Calibration file not found: {path}")
            await robot.load_calibration_file(path)
        elif source == "skip":
            await robot.skip_calibration()
        else:
            await robot.load_calibration_preset(SO100_PRESET)
        logger.info("bridge.calibrated", extra={"source": source, "robot_id": robot.id})

    async def start(self) -> Robot:
        robot = self.manager.create_so100_robot(self.settings.robot_id)
        self.robot = robot
        await self.calibrate(robot)
        remote = self._remote_config()
        if self.settings.mode == "leader":
            await robot.set_consumer(self._usb_config())
            if self.settings.join_existing:
                await robot.join_as_producer(remote)
            else:
                await robot.add_producer(remote)
        else:
            if self.settings.join_existing:
                await robot.join_as_consumer(remote)
            else:
                await robot.set_consumer(remote)
            await robot.add_producer(self._usb_config())
        logger.info(
            "bridge.started",
            extra={"mode": self.settings.mode, "robot_id": robot.id, "room_id": remote.room_id},
        )
        return robot

    async def stop(self) -> None:
        await self.manager.destroy()
        self.robot = None
        logger.info("bridge.stopped")

    async def run(self, stop_event: asyncio.Event) -> None:
        try:
            await self.start()
            await stop_event.wait()
        finally:
            await self.stop()


__all__ = ["BridgeService"]
