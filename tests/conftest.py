"""Shared pytest fixtures for armhub tests."""

from __future__ import annotations

import asyncio
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple

import pytest

from armhub.adapters.transport import ServoTransport
from armhub.config import CalibrationSettings, CommandSettings, PollingSettings, RobotSettings, USBSettings
from armhub.contracts.models import JointState, JointValue, RemoteDriverConfig, RoomInfo
from armhub.robot import Robot


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast tests without hardware or broker")
    config.addinivalue_line("markers", "integration: multi-component scenarios on in-memory fakes")


class FakeServoBus:
    """In-memory servo chain recording every torque and position write."""

    def __init__(self, positions: Optional[Mapping[int, int]] = None) -> None:
        self.positions: Dict[int, int] = dict(positions or {})
        self.connected = False
        self.connect_calls: List[Tuple[int, Optional[str]]] = []
        self.torque_writes: List[Tuple[int, bool]] = []
        self.position_writes: List[Dict[int, int]] = []
        self.batch_writes = 0
        self.batch_reads = 0
        self.single_reads = 0
        self.write_failures = 0
        self.read_failures = 0
        self.torque_failures: set[int] = set()
        self.connect_error: Optional[Exception] = None
        self.active = 0
        self.max_active = 0

    @property
    def is_connected(self) -> bool:
        return self.connected

    async def _enter(self) -> None:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        await asyncio.sleep(0)

    def _leave(self) -> None:
        self.active -= 1

    async def connect(self, baud_rate: int, port: Optional[str] = None) -> None:
        self.connect_calls.append((baud_rate, port))
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False

    async def read_position(self, servo_id: int) -> int:
        await self._enter()
        try:
            self.single_reads += 1
            if self.read_failures:
                self.read_failures -= 1
                raise OSError("read timeout")
            return self.positions.get(servo_id, 2048)
        finally:
            self._leave()

    async def sync_read_positions(self, servo_ids: Iterable[int]) -> Dict[int, int]:
        await self._enter()
        try:
            self.batch_reads += 1
            if self.read_failures:
                self.read_failures -= 1
                raise OSError("read timeout")
            return {sid: self.positions.get(sid, 2048) for sid in servo_ids}
        finally:
            self._leave()

    async def write_position(self, servo_id: int, raw: int) -> None:
        await self._enter()
        try:
            if self.write_failures:
                self.write_failures -= 1
                raise OSError("Port is busy")
            self.position_writes.append({servo_id: raw})
            self.positions[servo_id] = raw
        finally:
            self._leave()

    async def sync_write_positions(self, positions: Mapping[int, int]) -> None:
        await self._enter()
        try:
            if self.write_failures:
                self.write_failures -= 1
                raise OSError("Port is busy")
            self.batch_writes += 1
            self.position_writes.append(dict(positions))
            self.positions.update(positions)
        finally:
            self._leave()

    async def write_torque_enable(self, servo_id: int, enabled: bool) -> None:
        await self._enter()
        try:
            if servo_id in self.torque_failures:
                raise OSError(f"servo {servo_id} not responding")
            self.torque_writes.append((servo_id, enabled))
        finally:
            self._leave()


class FakeRelayConsumerClient:
    def __init__(self, joined: bool = True) -> None:
        self.joined = joined
        self.connected_to: Optional[Tuple[str, str, str]] = None
        self.disconnected = False
        self.joint_callbacks: List[Callable[[List[JointValue]], None]] = []
        self.state_callbacks: List[Callable[[Dict[str, float]], None]] = []

    async def connect(self, workspace_id: str, room_id: str, participant_id: str) -> bool:
        self.connected_to = (workspace_id, room_id, participant_id)
        return self.joined

    async def disconnect(self) -> None:
        self.disconnected = True

    def on_joint_update(self, callback) -> None:
        self.joint_callbacks.append(callback)

    def on_state_sync(self, callback) -> None:
        self.state_callbacks.append(callback)

    def push_joints(self, values: Dict[str, float]) -> None:
        joints = [JointValue(name=name, value=value) for name, value in values.items()]
        for callback in self.joint_callbacks:
            callback(joints)

    def push_state(self, state: Dict[str, float]) -> None:
        for callback in self.state_callbacks:
            callback(state)


class FakeRelayProducerClient:
    def __init__(self, joined: bool = True, fail_sends: bool = False) -> None:
        self.joined = joined
        self.fail_sends = fail_sends
        self.connected_to: Optional[Tuple[str, str, str]] = None
        self.disconnected = False
        self.joint_updates: List[List[JointValue]] = []
        self.state_syncs: List[Dict[str, float]] = []

    async def connect(self, workspace_id: str, room_id: str, participant_id: str) -> bool:
        self.connected_to = (workspace_id, room_id, participant_id)
        return self.joined

    async def disconnect(self) -> None:
        self.disconnected = True

    async def send_joint_update(self, joints: List[JointValue]) -> None:
        if self.fail_sends:
            raise OSError("relay unreachable")
        self.joint_updates.append(list(joints))

    async def send_state_sync(self, state: Dict[str, float]) -> None:
        self.state_syncs.append(dict(state))


class FakeRoomDirectory:
    def __init__(self) -> None:
        self.rooms: Dict[str, List[RoomInfo]] = {}

    async def create_room(self, workspace_id: str, room_id: Optional[str] = None) -> RoomInfo:
        info = RoomInfo(room_id=room_id or f"room-{len(self.rooms.get(workspace_id, [])) + 1}", workspace_id=workspace_id)
        self.rooms.setdefault(workspace_id, []).append(info)
        return info

    async def list_rooms(self, workspace_id: str) -> List[RoomInfo]:
        return list(self.rooms.get(workspace_id, []))


class ManualClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fast_settings() -> RobotSettings:
    """Settings with all pacing delays removed."""
    return RobotSettings(
        usb=USBSettings(servo_write_delay=0.0, retry_delay=0.0, connection_timeout=1.0),
        polling=PollingSettings(
            consumer_polling_rate=0.001,
            calibration_polling_rate=0.001,
            error_backoff_rate=0.001,
        ),
        commands=CommandSettings(),
        calibration=CalibrationSettings(final_position_timeout=0.5),
    )


@pytest.fixture
def fake_bus() -> FakeServoBus:
    return FakeServoBus({1: 1000, 2: 2000})


@pytest.fixture
def transport(fake_bus, fast_settings) -> ServoTransport:
    return ServoTransport(
        fake_bus,
        {"Rotation": 1, "Jaw": 2},
        usb=fast_settings.usb,
        polling=fast_settings.polling,
        calibration=fast_settings.calibration,
    )


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def relay_clients():
    """Fake relay clients keyed by role, plus the factories a Robot expects."""
    consumer = FakeRelayConsumerClient()
    producer = FakeRelayProducerClient()
    directory = FakeRoomDirectory()
    factories = {
        "consumer": lambda config: consumer,
        "producer": lambda config: producer,
        "directory": lambda config: directory,
    }
    return {"consumer": consumer, "producer": producer, "directory": directory, "factories": factories}


@pytest.fixture
def make_robot(fake_bus, fast_settings, clock, relay_clients):
    def _make(joint_names: Iterable[str] = ("Rotation", "Jaw"), **kwargs) -> Robot:
        joints = [JointState(name=name, servo_id=index) for index, name in enumerate(joint_names, start=1)]
        kwargs.setdefault("settings", fast_settings)
        kwargs.setdefault("bus_factory", lambda: fake_bus)
        kwargs.setdefault("relay_factories", relay_clients["factories"])
        kwargs.setdefault("clock", clock)
        return Robot("arm-1", joints, **kwargs)

    return _make


@pytest.fixture
def remote_config() -> RemoteDriverConfig:
    return RemoteDriverConfig(room_id="room-a", workspace_id="ws-1")


@pytest.fixture
def follower_bus() -> FakeServoBus:
    return FakeServoBus({1: 2048, 2: 2048})
