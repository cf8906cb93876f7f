"""Relay rooms carried over an MQTT broker.

A room is the topic tree ``armhub/<workspace>/<room>/``:

- ``info``   retained :class:`RoomInfo`, published when the room is created
- ``joints`` ``robot.joint_update`` envelopes (sparse per-command updates)
- ``state``  ``robot.state_sync`` envelopes (periodic full snapshots)

All payloads are orjson-encoded :class:`Envelope` objects.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import urlparse

import asyncio_mqtt as mqtt
from pydantic import BaseModel, ValidationError

from ..contracts.envelope import Envelope
from ..contracts.models import (
    EVENT_TYPE_JOINT_UPDATE,
    EVENT_TYPE_ROOM_INFO,
    EVENT_TYPE_STATE_SYNC,
    JointUpdate,
    JointValue,
    RoomInfo,
    StateSync,
)
from ..domain.ports import JointUpdateCallback, StateSyncCallback
from ..errors import ConnectionFailed, DriverNotConnected, RelayError

logger = logging.getLogger(__name__)

TOPIC_ROOT = "armhub"

ClientFactory = Callable[..., Any]
MessageHandler = Callable[[str, bytes], Awaitable[None]]


class ConnectionParams(BaseModel):
    hostname: str
    port: int = 1883
    username: Optional[str] = None
    password: Optional[str] = None

    def __repr__(self) -> str:
        password_str = "***REDACTED***" if self.password else None
        return (
            f"ConnectionParams(hostname={self.hostname!r}, port={self.port}, "
            f"username={self.username!r}, password={password_str!r})"
        )

    __str__ = __repr__


def parse_mqtt_url(url: str) -> ConnectionParams:
    """Parse ``mqtt://[user:pass@]host[:port]``."""
    parsed = urlparse(url)
    if parsed.scheme not in ("mqtt", "tcp"):
        raise ValueError(f"Invalid MQTT URL scheme: {parsed.scheme!r}. Expected 'mqtt://'.")
    return ConnectionParams(
        hostname=parsed.hostname or "localhost",
        port=parsed.port or 1883,
        username=parsed.username,
        password=parsed.password,
    )


def room_topic(workspace_id: str, room_id: str, leaf: str) -> str:
    return f"{TOPIC_ROOT}/{workspace_id}/{room_id}/{leaf}"


def _payload_bytes(payload: Any) -> Optional[bytes]:
    if isinstance(payload, bytes):
        return payload
    if isinstance(payload, bytearray):
        return bytes(payload)
    if isinstance(payload, str):
        return payload.encode("utf-8")
    return None


def topic_matches(topic: str, pattern: str) -> bool:
    """MQTT wildcard match supporting ``+`` and trailing ``#``."""
    topic_parts = topic.split("/")
    pattern_parts = pattern.split("/")
    for index, part in enumerate(pattern_parts):
        if part == "#":
            return True
        if index >= len(topic_parts):
            return False
        if part != "+" and part != topic_parts[index]:
            return False
    return len(topic_parts) == len(pattern_parts)


class RelaySession:
    """One broker connection with a background dispatch task.

    With ``reconnect_delay`` set, a broken connection is replaced every
    ``reconnect_delay`` seconds until it succeeds and the active subscriptions
    are restored on the new client. Without it the dispatch task stops on the
    first broker error.
    """

    def __init__(
        self,
        url: str,
        client_id: Optional[str] = None,
        *,
        client_factory: ClientFactory = mqtt.Client,
        keepalive: int = 60,
        reconnect_delay: Optional[float] = None,
    ) -> None:
        self._params = parse_mqtt_url(url)
        self.client_id = client_id or f"armhub-{uuid.uuid4().hex[:8]}"
        self._client_factory = client_factory
        self._keepalive = keepalive
        self._reconnect_delay = reconnect_delay
        self._client: Any = None
        self._handlers: Dict[str, MessageHandler] = {}
        self._subscriptions: Dict[str, int] = {}
        self._dispatch_task: Optional[asyncio.Task[None]] = None

    @property
    def connected(self) -> bool:
        return self._client is not None

    def _new_client(self) -> Any:
        return self._client_factory(
            hostname=self._params.hostname,
            port=self._params.port,
            username=self._params.username,
            password=self._params.password,
            client_id=self.client_id,
            keepalive=self._keepalive,
        )

    async def connect(self) -> None:
        if self._client is not None:
            return
        client = self._new_client()
        try:
            await client.__aenter__()
        except mqtt.MqttError as exc:
            raise ConnectionFailed(f"Failed to reach relay at {self._params.hostname}:{self._params.port}: {exc}") from exc
        self._client = client
        self._dispatch_task = asyncio.create_task(self._dispatch_messages(), name=f"relay-{self.client_id}")
        logger.info(
            "relay.connected",
            extra={"host": self._params.hostname, "port": self._params.port, "client_id": self.client_id},
        )

    async def disconnect(self) -> None:
        client, self._client = self._client, None
        task, self._dispatch_task = self._dispatch_task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if client is not None:
            with contextlib.suppress(mqtt.MqttError):
                await client.__aexit__(None, None, None)
            logger.info("relay.disconnected", extra={"client_id": self.client_id})
        self._handlers.clear()
        self._subscriptions.clear()

    async def publish(self, topic: str, envelope: Envelope, *, qos: int = 0, retain: bool = False) -> None:
        if self._client is None:
            raise DriverNotConnected("Relay session is not connected")
        try:
            await self._client.publish(topic, envelope.to_bytes(), qos=qos, retain=retain)
        except mqtt.MqttError as exc:
            raise RelayError(f"Publish to {topic} failed: {exc}") from exc

    async def subscribe(self, pattern: str, handler: MessageHandler, *, qos: int = 0) -> None:
        if self._client is None:
            raise DriverNotConnected("Relay session is not connected")
        self._handlers[pattern] = handler
        self._subscriptions[pattern] = qos
        await self._client.subscribe(pattern, qos=qos)
        logger.debug("relay.subscribed", extra={"topic": pattern})

    async def unsubscribe(self, pattern: str) -> None:
        self._handlers.pop(pattern, None)
        self._subscriptions.pop(pattern, None)
        if self._client is not None:
            await self._client.unsubscribe(pattern)

    async def _dispatch_messages(self) -> None:
        while self._client is not None:
            try:
                await self._read_messages(self._client)
                return
            except asyncio.CancelledError:
                raise
            except mqtt.MqttError as exc:
                logger.error("relay.dispatch.error", extra={"error": str(exc), "client_id": self.client_id})
                if self._reconnect_delay is None:
                    return
            await self._reconnect()

    async def _read_messages(self, client: Any) -> None:
        async with client.messages() as messages:
            async for message in messages:
                topic = str(message.topic)
                payload = _payload_bytes(message.payload)
                if payload is None:
                    logger.warning("relay.payload.unsupported", extra={"topic": topic})
                    continue
                for pattern, handler in list(self._handlers.items()):
                    if not topic_matches(topic, pattern):
                        continue
                    try:
                        await handler(topic, payload)
                    except Exception:
                        logger.exception("relay.handler.error", extra={"topic": topic})
                    break

    async def _reconnect(self) -> None:
        assert self._reconnect_delay is not None
        with contextlib.suppress(mqtt.MqttError):
            await self._client.__aexit__(None, None, None)
        attempt = 0
        while True:
            attempt += 1
            await asyncio.sleep(self._reconnect_delay)
            client = self._new_client()
            try:
                await client.__aenter__()
                for pattern, qos in list(self._subscriptions.items()):
                    await client.subscribe(pattern, qos=qos)
            except asyncio.CancelledError:
                with contextlib.suppress(mqtt.MqttError):
                    await client.__aexit__(None, None, None)
                raise
            except mqtt.MqttError as exc:
                logger.warning(
                    "relay.reconnect.failed",
                    extra={"attempt": attempt, "error": str(exc), "client_id": self.client_id},
                )
                continue
            self._client = client
            logger.info("relay.reconnected", extra={"attempt": attempt, "client_id": self.client_id})
            return


def _decode(payload: bytes, expected_type: str) -> Optional[Envelope]:
    try:
        envelope = Envelope.from_bytes(payload)
    except (ValueError, ValidationError) as exc:
        logger.warning("relay.envelope.invalid", extra={"error": str(exc)})
        return None
    if envelope.type != expected_type:
        logger.debug("relay.envelope.ignored", extra={"type": envelope.type})
        return None
    return envelope


class MQTTRelayProducer:
    """Publishes joint updates and state snapshots into one room."""

    def __init__(
        self,
        url: str,
        *,
        client_factory: ClientFactory = mqtt.Client,
        reconnect_delay: Optional[float] = None,
    ) -> None:
        self._url = url
        self._client_factory = client_factory
        self._reconnect_delay = reconnect_delay
        self._session: Optional[RelaySession] = None
        self._room: Optional[tuple[str, str]] = None
        self.participant_id: Optional[str] = None

    async def connect(self, workspace_id: str, room_id: str, participant_id: str) -> bool:
        session = RelaySession(
            self._url,
            participant_id,
            client_factory=self._client_factory,
            reconnect_delay=self._reconnect_delay,
        )
        try:
            await session.connect()
        except ConnectionFailed as exc:
            logger.error("relay.producer.connect_failed", extra={"room_id": room_id, "error": str(exc)})
            return False
        self._session = session
        self._room = (workspace_id, room_id)
        self.participant_id = participant_id
        return True

    async def disconnect(self) -> None:
        session, self._session = self._session, None
        if session is not None:
            await session.disconnect()

    def _topic(self, leaf: str) -> str:
        if self._room is None:
            raise DriverNotConnected("Relay producer is not in a room")
        return room_topic(*self._room, leaf)

    async def send_joint_update(self, joints: List[JointValue]) -> None:
        if self._session is None:
            raise DriverNotConnected("Relay producer is not connected")
        body = JointUpdate(joints=joints, source=self.participant_id)
        envelope = Envelope.new(event_type=EVENT_TYPE_JOINT_UPDATE, data=body, source=self.participant_id or "armhub")
        await self._session.publish(self._topic("joints"), envelope)

    async def send_state_sync(self, state: Dict[str, float]) -> None:
        if self._session is None:
            raise DriverNotConnected("Relay producer is not connected")
        body = StateSync(state=state, source=self.participant_id)
        envelope = Envelope.new(event_type=EVENT_TYPE_STATE_SYNC, data=body, source=self.participant_id or "armhub")
        await self._session.publish(self._topic("state"), envelope)


class MQTTRelayConsumer:
    """Subscribes to one room and hands decoded messages to callbacks."""

    def __init__(
        self,
        url: str,
        *,
        client_factory: ClientFactory = mqtt.Client,
        reconnect_delay: Optional[float] = None,
    ) -> None:
        self._url = url
        self._client_factory = client_factory
        self._reconnect_delay = reconnect_delay
        self._session: Optional[RelaySession] = None
        self._joint_callbacks: List[JointUpdateCallback] = []
        self._state_callbacks: List[StateSyncCallback] = []

    def on_joint_update(self, callback: JointUpdateCallback) -> None:
        self._joint_callbacks.append(callback)

    def on_state_sync(self, callback: StateSyncCallback) -> None:
        self._state_callbacks.append(callback)

    async def connect(self, workspace_id: str, room_id: str, participant_id: str) -> bool:
        session = RelaySession(
            self._url,
            participant_id,
            client_factory=self._client_factory,
            reconnect_delay=self._reconnect_delay,
        )
        try:
            await session.connect()
            await session.subscribe(room_topic(workspace_id, room_id, "joints"), self._handle_joints)
            await session.subscribe(room_topic(workspace_id, room_id, "state"), self._handle_state)
        except (ConnectionFailed, mqtt.MqttError) as exc:
            logger.error("relay.consumer.connect_failed", extra={"room_id": room_id, "error": str(exc)})
            await session.disconnect()
            return False
        self._session = session
        return True

    async def disconnect(self) -> None:
        session, self._session = self._session, None
        if session is not None:
            await session.disconnect()

    async def _handle_joints(self, topic: str, payload: bytes) -> None:
        envelope = _decode(payload, EVENT_TYPE_JOINT_UPDATE)
        if envelope is None:
            return
        update = JointUpdate.model_validate(envelope.data)
        for callback in list(self._joint_callbacks):
            callback(update.joints)

    async def _handle_state(self, topic: str, payload: bytes) -> None:
        envelope = _decode(payload, EVENT_TYPE_STATE_SYNC)
        if envelope is None:
            return
        sync = StateSync.model_validate(envelope.data)
        for callback in list(self._state_callbacks):
            callback(sync.state)


class MQTTRoomDirectory:
    """Room bookkeeping via retained ``info`` messages."""

    def __init__(
        self,
        url: str,
        *,
        client_factory: ClientFactory = mqtt.Client,
        collect_window: float = 0.5,
    ) -> None:
        self._url = url
        self._client_factory = client_factory
        self._collect_window = collect_window

    async def create_room(self, workspace_id: str, room_id: Optional[str] = None) -> RoomInfo:
        info = RoomInfo(room_id=room_id or uuid.uuid4().hex[:12], workspace_id=workspace_id)
        session = RelaySession(self._url, client_factory=self._client_factory)
        await session.connect()
        try:
            envelope = Envelope.new(event_type=EVENT_TYPE_ROOM_INFO, data=info)
            await session.publish(room_topic(workspace_id, info.room_id, "info"), envelope, qos=1, retain=True)
        finally:
            await session.disconnect()
        logger.info("relay.room.created", extra={"workspace_id": workspace_id, "room_id": info.room_id})
        return info

    async def list_rooms(self, workspace_id: str) -> List[RoomInfo]:
        rooms: Dict[str, RoomInfo] = {}

        async def _collect(topic: str, payload: bytes) -> None:
            envelope = _decode(payload, EVENT_TYPE_ROOM_INFO)
            if envelope is None:
                return
            try:
                info = RoomInfo.model_validate(envelope.data)
            except ValidationError as exc:
                logger.warning("relay.room.invalid", extra={"topic": topic, "error": str(exc)})
                return
            rooms[info.room_id] = info

        session = RelaySession(self._url, client_factory=self._client_factory)
        await session.connect()
        try:
            await session.subscribe(room_topic(workspace_id, "+", "info"), _collect)
            await asyncio.sleep(self._collect_window)
        finally:
            await session.disconnect()
        return sorted(rooms.values(), key=lambda room: room.created_at)


__all__ = [
    "ConnectionParams",
    "MQTTRelayConsumer",
    "MQTTRelayProducer",
    "MQTTRoomDirectory",
    "RelaySession",
    "parse_mqtt_url",
    "room_topic",
    "topic_matches",
]
