"""Drivers backed by a relay room instead of local hardware."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import Callable, Dict, List, Optional

from ..adapters.mqtt_relay import MQTTRelayConsumer, MQTTRelayProducer, MQTTRoomDirectory
from ..config import RemoteSettings
from ..contracts.models import JointValue, RemoteDriverConfig, RobotCommand
from ..domain.ports import RelayConsumerClient, RelayProducerClient, RoomDirectory
from ..errors import ConnectionFailed, DriverNotConnected, RelayError
from .base import Consumer, Driver, Producer

logger = logging.getLogger(__name__)

ConsumerClientFactory = Callable[[RemoteDriverConfig], RelayConsumerClient]
ProducerClientFactory = Callable[[RemoteDriverConfig], RelayProducerClient]
DirectoryFactory = Callable[[RemoteDriverConfig], RoomDirectory]


def _mqtt_directory(config: RemoteDriverConfig) -> RoomDirectory:
    return MQTTRoomDirectory(config.relay_url)


class _RoomMember:
    """Room resolution shared by both relay roles.

    Unless ``join_existing`` is set the room is created first, which makes a
    standalone producer or consumer self-sufficient.
    """

    config: RemoteDriverConfig
    join_existing: bool
    _directory_factory: DirectoryFactory

    async def _resolve_room(self) -> str:
        if self.join_existing:
            return self.config.room_id
        directory = self._directory_factory(self.config)
        info = await directory.create_room(self.config.workspace_id, self.config.room_id)
        return info.room_id

    async def _join(self, driver: Driver, client, participant_id: str) -> None:
        try:
            room_id = await self._resolve_room()
            joined = await client.connect(self.config.workspace_id, room_id, participant_id)
        except (ConnectionFailed, RelayError) as exc:
            driver._set_status(False, f"Connection failed: {exc}")
            raise
        if not joined:
            error = f"Failed to join room {room_id}"
            driver._set_status(False, error)
            raise ConnectionFailed(error)


class RemoteConsumer(_RoomMember, Consumer):
    """Forwards every joint update or state sync received in a room as a command."""

    kind = "remote"

    def __init__(
        self,
        driver_id: str,
        config: RemoteDriverConfig,
        *,
        settings: RemoteSettings | None = None,
        join_existing: bool = False,
        client_factory: Optional[ConsumerClientFactory] = None,
        directory_factory: DirectoryFactory = _mqtt_directory,
        name: Optional[str] = None,
    ) -> None:
        Consumer.__init__(self, driver_id, name)
        self.config = config
        self.settings = settings or RemoteSettings()
        self.join_existing = join_existing
        self._client_factory = client_factory or self._mqtt_client
        self._directory_factory = directory_factory
        self._client: Optional[RelayConsumerClient] = None
        self.last_message_at: Optional[float] = None

    @property
    def participant_id(self) -> str:
        return f"consumer-{self.id}"

    def _mqtt_client(self, config: RemoteDriverConfig) -> RelayConsumerClient:
        return MQTTRelayConsumer(config.relay_url, reconnect_delay=self.settings.reconnect_delay)

    @property
    def is_stale(self) -> bool:
        """True when no message arrived within ``message_timeout`` while listening."""
        if not self.is_listening or self.last_message_at is None:
            return False
        return time.time() - self.last_message_at > self.settings.message_timeout

    async def connect(self) -> None:
        client = self._client_factory(self.config)
        client.on_joint_update(self._handle_joint_update)
        client.on_state_sync(self._handle_state_sync)
        await self._join(self, client, self.participant_id)
        self._client = client
        self._set_status(True)
        logger.info(
            "remote.consumer.connected",
            extra={"driver_id": self.id, "workspace_id": self.config.workspace_id, "room_id": self.config.room_id},
        )

    async def start_listening(self) -> None:
        if not self.is_connected:
            raise DriverNotConnected(f"{self.id} is not connected")
        self.is_listening = True
        self.last_message_at = time.time()

    async def stop_listening(self) -> None:
        self.is_listening = False

    def _handle_joint_update(self, joints: List[JointValue]) -> None:
        self.last_message_at = time.time()
        if not self.is_listening or not joints:
            return
        self._emit(RobotCommand(joints=list(joints)))

    def _handle_state_sync(self, state: Dict[str, float]) -> None:
        self.last_message_at = time.time()
        if not self.is_listening or not state:
            return
        self._emit(RobotCommand.from_values(state))

    async def disconnect(self) -> None:
        await self.stop_listening()
        client, self._client = self._client, None
        try:
            if client is not None:
                await client.disconnect()
        finally:
            self._set_status(False)
            logger.info("remote.consumer.disconnected", extra={"driver_id": self.id})


class RemoteProducer(_RoomMember, Producer):
    """Publishes commands to a room and re-publishes full state on a fixed interval."""

    kind = "remote"

    def __init__(
        self,
        driver_id: str,
        config: RemoteDriverConfig,
        *,
        settings: RemoteSettings | None = None,
        join_existing: bool = False,
        client_factory: Optional[ProducerClientFactory] = None,
        directory_factory: DirectoryFactory = _mqtt_directory,
        name: Optional[str] = None,
    ) -> None:
        Producer.__init__(self, driver_id, name)
        self.config = config
        self.settings = settings or RemoteSettings()
        self.join_existing = join_existing
        self._client_factory = client_factory or self._mqtt_client
        self._directory_factory = directory_factory
        self._client: Optional[RelayProducerClient] = None
        self._sync_task: Optional[asyncio.Task[None]] = None
        self._state: Dict[str, float] = {}

    @property
    def participant_id(self) -> str:
        return f"producer-{self.id}"

    def _mqtt_client(self, config: RemoteDriverConfig) -> RelayProducerClient:
        return MQTTRelayProducer(config.relay_url, reconnect_delay=self.settings.reconnect_delay)

    async def connect(self) -> None:
        client = self._client_factory(self.config)
        await self._join(self, client, self.participant_id)
        self._client = client
        self._set_status(True)
        self._sync_task = asyncio.create_task(self._state_sync_loop(), name=f"state-sync-{self.id}")
        logger.info(
            "remote.producer.connected",
            extra={"driver_id": self.id, "workspace_id": self.config.workspace_id, "room_id": self.config.room_id},
        )

    async def send_command(self, command: RobotCommand) -> None:
        if self._client is None or not self.is_connected:
            raise DriverNotConnected(f"{self.id} is not connected")
        self._state.update(command.as_dict())
        await self._client.send_joint_update(list(command.joints))

    def current_state(self) -> Dict[str, float]:
        if self.state_provider is not None:
            return self.state_provider()
        return dict(self._state)

    async def sync_state(self) -> None:
        if self._client is None:
            return
        state = self.current_state()
        if state:
            await self._client.send_state_sync(state)

    async def _state_sync_loop(self) -> None:
        while self._client is not None:
            await asyncio.sleep(self.settings.state_sync_interval)
            try:
                await self.sync_state()
            except DriverNotConnected:
                return
            except (RelayError, ConnectionFailed, OSError) as exc:
                logger.warning("remote.producer.sync.error", extra={"driver_id": self.id, "error": str(exc)})

    async def disconnect(self) -> None:
        task, self._sync_task = self._sync_task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        client, self._client = self._client, None
        try:
            if client is not None:
                await client.disconnect()
        finally:
            self._set_status(False)
            logger.info("remote.producer.disconnected", extra={"driver_id": self.id})


__all__ = ["RemoteConsumer", "RemoteProducer"]
