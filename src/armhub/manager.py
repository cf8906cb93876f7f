"""Registry of robots plus relay room bookkeeping."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from .adapters.mqtt_relay import MQTTRoomDirectory
from .config import RobotSettings
from .contracts.models import JointState, RemoteDriverConfig, RoomInfo
from .domain.ports import RoomDirectory, ServoBus
from .errors import ArmHubError
from .kinematics import joints_from_urdf, so100_joints
from .robot import Robot

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RoomCreateResult:
    success: bool
    room_id: Optional[str] = None
    error: Optional[str] = None


class RobotManager:
    def __init__(
        self,
        settings: RobotSettings | None = None,
        *,
        directory: RoomDirectory | None = None,
        bus_factory: Optional[Callable[[], ServoBus]] = None,
        relay_factories: Optional[Mapping[str, Callable[..., Any]]] = None,
    ) -> None:
        self.settings = settings or RobotSettings()
        self._directory = directory or MQTTRoomDirectory(self.settings.remote.relay_url)
        self._bus_factory = bus_factory
        self._relay_factories = relay_factories
        self._robots: Dict[str, Robot] = {}
        self.rooms: Dict[str, List[RoomInfo]] = {}

    @property
    def robots(self) -> List[Robot]:
        return list(self._robots.values())

    @property
    def robot_count(self) -> int:
        return len(self._robots)

    def get_robot(self, robot_id: str) -> Optional[Robot]:
        return self._robots.get(robot_id)

    def _require(self, robot_id: str) -> Robot:
        robot = self._robots.get(robot_id)
        if robot is None:
            raise KeyError(f"Robot {robot_id} not found")
        return robot

    def create_robot(self, robot_id: str, joints: Iterable[JointState]) -> Robot:
        if robot_id in self._robots:
            raise ValueError(f"Robot with ID {robot_id} already exists")
        robot = Robot(
            robot_id,
            joints,
            settings=self.settings,
            bus_factory=self._bus_factory,
            relay_factories=self._relay_factories,
        )
        self._robots[robot_id] = robot
        logger.info("manager.robot.created", extra={"robot_id": robot_id, "total": len(self._robots)})
        return robot

    def create_so100_robot(self, robot_id: Optional[str] = None) -> Robot:
        return self.create_robot(robot_id or f"so100-{uuid.uuid4().hex[:6]}", so100_joints())

    def create_robot_from_urdf(
        self,
        robot_id: str,
        path: Path | str,
        servo_ids: Optional[Mapping[str, int]] = None,
    ) -> Robot:
        return self.create_robot(robot_id, joints_from_urdf(path, servo_ids))

    async def remove_robot(self, robot_id: str) -> None:
        robot = self._robots.pop(robot_id, None)
        if robot is None:
            return
        await robot.destroy()
        logger.info("manager.robot.removed", extra={"robot_id": robot_id, "total": len(self._robots)})

    # -- rooms ----------------------------------------------------------------------------

    async def list_rooms(self, workspace_id: str) -> List[RoomInfo]:
        return await self._directory.list_rooms(workspace_id)

    async def refresh_rooms(self, workspace_id: str) -> List[RoomInfo]:
        try:
            rooms = await self.list_rooms(workspace_id)
        except ArmHubError as exc:
            logger.error("manager.rooms.refresh_failed", extra={"workspace_id": workspace_id, "error": str(exc)})
            rooms = []
        self.rooms[workspace_id] = rooms
        return rooms

    async def create_room(self, workspace_id: str, room_id: Optional[str] = None) -> RoomCreateResult:
        try:
            info = await self._directory.create_room(workspace_id, room_id)
        except ArmHubError as exc:
            logger.error("manager.room.create_failed", extra={"workspace_id": workspace_id, "error": str(exc)})
            return RoomCreateResult(success=False, error=str(exc))
        await self.refresh_rooms(workspace_id)
        return RoomCreateResult(success=True, room_id=info.room_id)

    def generate_room_id(self, robot_id: str) -> str:
        return f"{robot_id}-{uuid.uuid4().hex[:6]}"

    def _remote_config(self, workspace_id: str, room_id: str) -> RemoteDriverConfig:
        return RemoteDriverConfig(
            room_id=room_id,
            workspace_id=workspace_id,
            relay_url=self.settings.remote.relay_url,
        )

    async def connect_consumer_to_room(self, workspace_id: str, robot_id: str, room_id: str) -> str:
        robot = self._require(robot_id)
        return await robot.join_as_consumer(self._remote_config(workspace_id, room_id))

    async def connect_producer_to_room(self, workspace_id: str, robot_id: str, room_id: str) -> str:
        robot = self._require(robot_id)
        return await robot.join_as_producer(self._remote_config(workspace_id, room_id))

    async def connect_producer_as_producer(
        self,
        workspace_id: str,
        robot_id: str,
        room_id: Optional[str] = None,
    ) -> RoomCreateResult:
        """Create a room (generating an id if needed) and join it as producer."""
        self._require(robot_id)
        created = await self.create_room(workspace_id, room_id or self.generate_room_id(robot_id))
        if not created.success or created.room_id is None:
            return created
        try:
            await self.connect_producer_to_room(workspace_id, robot_id, created.room_id)
        except ArmHubError as exc:
            return RoomCreateResult(success=False, room_id=created.room_id, error=str(exc))
        return created

    async def destroy(self) -> None:
        robots = list(self._robots.values())
        self._robots.clear()
        results = await asyncio.gather(*(robot.destroy() for robot in robots), return_exceptions=True)
        for robot, result in zip(robots, results):
            if isinstance(result, Exception):
                logger.error("manager.robot.destroy_failed", extra={"robot_id": robot.id, "error": str(result)})


__all__ = ["RobotManager", "RoomCreateResult"]
