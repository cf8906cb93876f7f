"""The Robot aggregate: joint state, one consumer, many producers.

Every command, whether it comes from a consumer or from a manual
``update_joint`` call, goes through :meth:`Robot.submit`. Accepted commands
land in a bounded queue that a single worker task drains in order: clamp,
apply to joint state, then fan out to every connected producer.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Deque, Dict, Iterable, List, Mapping, Optional, Tuple

from .adapters.feetech import FeetechBus
from .adapters.transport import ServoTransport
from .config import RobotSettings
from .contracts.models import (
    ConnectionStatus,
    DriverConfig,
    JointState,
    JointValue,
    PresetJoint,
    RemoteDriverConfig,
    RobotCommand,
    USBDriverConfig,
)
from .domain.calibration import SO100_PRESET, CalibrationState, load_snapshot, save_snapshot, sync_positions
from .domain.codec import clamp, kind_for, normalized_to_radians
from .domain.ports import ServoBus
from .drivers.base import Consumer, Driver, Producer
from .drivers.remote import RemoteConsumer, RemoteProducer
from .drivers.usb import USBConsumer, USBProducer
from .errors import UnknownJoint
from .runtime.events import Observers, Subscription

logger = logging.getLogger(__name__)

CALIBRATION_HOLDER = "calibration"


@dataclass(slots=True, frozen=True)
class JointChange:
    name: str
    value: float
    limits: Optional[Tuple[float, float]] = None


def _short_id() -> str:
    return uuid.uuid4().hex[:8]


class Robot:
    def __init__(
        self,
        robot_id: str,
        joints: Iterable[JointState],
        *,
        settings: RobotSettings | None = None,
        bus_factory: Optional[Callable[[], ServoBus]] = None,
        relay_factories: Optional[Mapping[str, Callable[..., Any]]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.id = robot_id
        self.settings = settings or RobotSettings()
        self.joints: Dict[str, JointState] = {joint.name: joint.model_copy() for joint in joints}
        self.consumer: Optional[Consumer] = None
        self.producers: List[Producer] = []
        self.connection_status = ConnectionStatus()

        self._bus_factory = bus_factory or (lambda: FeetechBus(read_timeout=self.settings.usb.read_timeout))
        self._relay_factories = dict(relay_factories or {})
        self._clock = clock
        self._transport: Optional[ServoTransport] = None
        self._driver_subscriptions: Dict[str, List[Subscription]] = {}
        self._driver_lock = asyncio.Lock()
        self._attaching_consumer = False

        self._pending: Deque[RobotCommand] = deque()
        self._worker: Optional[asyncio.Task[None]] = None
        self._idle = asyncio.Event()
        self._idle.set()
        self.in_flight = False
        self._last_command_time: Optional[float] = None
        self._last_values: Dict[str, float] = {}

        self._joint_changed: Observers[JointChange] = Observers("robot.joint_changed")
        self._state_changed: Observers[ConnectionStatus] = Observers("robot.state_changed")

    def __repr__(self) -> str:
        return f"Robot(id={self.id!r}, joints={list(self.joints)})"

    # -- observation ---------------------------------------------------------------------

    def joint_values(self) -> Dict[str, float]:
        return {name: joint.value for name, joint in self.joints.items()}

    @property
    def is_manual_control_enabled(self) -> bool:
        if self._attaching_consumer:
            return False
        return not (self.consumer is not None and self.consumer.is_connected)

    @property
    def has_consumer(self) -> bool:
        return self.consumer is not None

    @property
    def connected_producer_count(self) -> int:
        return sum(1 for producer in self.producers if producer.is_connected)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def on_joint_change(self, callback: Callable[[JointChange], None]) -> Subscription:
        """Visual-sync hook: called after every applied joint value."""
        return self._joint_changed.subscribe(callback)

    def on_state_change(self, callback: Callable[[ConnectionStatus], None]) -> Subscription:
        return self._state_changed.subscribe(callback)

    def normalized_to_radians(self, name: str, value: float) -> float:
        joint = self.joints.get(name)
        if joint is None:
            raise UnknownJoint(name, self.id)
        return normalized_to_radians(value, kind_for(name), joint.limits)

    def _update_states(self, _status: Optional[ConnectionStatus] = None) -> None:
        connected = (self.consumer is not None and self.consumer.is_connected) or any(
            producer.is_connected for producer in self.producers
        )
        last = time.time() if connected else self.connection_status.last_connected
        self.connection_status = ConnectionStatus(is_connected=connected, last_connected=last)
        self._state_changed.emit(self.connection_status)

    def _set_joint(self, name: str, value: float) -> None:
        joint = self.joints[name]
        joint.value = clamp(value, kind_for(name))
        self._joint_changed.emit(JointChange(name=name, value=joint.value, limits=joint.limits))

    # -- command pipeline ------------------------------------------------------------------

    async def update_joint(self, name: str, value: float) -> bool:
        """Manual control; refused while a consumer is connected."""
        if not self.is_manual_control_enabled:
            logger.warning("robot.manual.disabled", extra={"robot_id": self.id, "joint": name})
            return False
        if name not in self.joints:
            raise UnknownJoint(name, self.id)
        return await self.execute_command(RobotCommand(joints=[JointValue(name=name, value=value)]))

    async def execute_command(self, command: RobotCommand) -> bool:
        """Submit ``command`` and wait until the queue has drained."""
        accepted = self.submit(command)
        if accepted:
            await self.wait_idle()
        return accepted

    def submit(self, command: RobotCommand) -> bool:
        """Deduplicate and enqueue ``command``; returns False when it was dropped."""
        now = self._clock()
        commands = self.settings.commands
        if self._last_command_time is not None:
            elapsed = now - self._last_command_time
            if elapsed > commands.memory_cleanup_interval and self._last_values:
                self._last_values.clear()
            elif elapsed < commands.dedup_window and not self._has_changes(command):
                logger.debug("robot.command.duplicate", extra={"robot_id": self.id})
                return False

        self._last_command_time = now
        for joint in command.joints:
            self._last_values[joint.name] = joint.value

        if len(self._pending) >= commands.max_queue_size:
            self._pending.popleft()
            logger.warning(
                "robot.command.queue_full",
                extra={"robot_id": self.id, "max_queue_size": commands.max_queue_size},
            )
        self._pending.append(command)
        self._idle.clear()
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._drain(), name=f"robot-{self.id}-commands")
        return True

    def _has_changes(self, command: RobotCommand) -> bool:
        epsilon = self.settings.commands.dedup_epsilon
        for joint in command.joints:
            previous = self._last_values.get(joint.name)
            if previous is None or abs(previous - joint.value) > epsilon:
                return True
        return False

    async def wait_idle(self) -> None:
        await self._idle.wait()

    async def _drain(self) -> None:
        try:
            while self._pending:
                command = self._pending.popleft()
                self.in_flight = True
                try:
                    await self._apply(command)
                except Exception:
                    logger.exception("robot.command.error", extra={"robot_id": self.id})
                finally:
                    self.in_flight = False
        finally:
            self._idle.set()

    def _hardware_blocks_state(self) -> bool:
        if self._transport is None:
            return False
        uses_usb = isinstance(self.consumer, USBConsumer) or any(isinstance(p, USBProducer) for p in self.producers)
        calibration = self._transport.calibration
        return calibration.is_calibrating or (uses_usb and calibration.needs_calibration)

    async def _apply(self, command: RobotCommand) -> None:
        hold_state = self._hardware_blocks_state()
        applied: List[JointValue] = []
        for joint in command.joints:
            if joint.name not in self.joints:
                logger.warning("robot.joint.unknown", extra={"robot_id": self.id, "joint": joint.name})
                continue
            value = clamp(joint.value, kind_for(joint.name))
            applied.append(JointValue(name=joint.name, value=value))
            if not hold_state:
                self._set_joint(joint.name, value)
        if hold_state:
            logger.debug("robot.state.held", extra={"robot_id": self.id})
        if applied:
            await self._fan_out(RobotCommand(joints=applied, timestamp=command.timestamp))

    async def _fan_out(self, command: RobotCommand) -> None:
        targets = [producer for producer in self.producers if producer.is_connected]
        if not targets:
            return
        results = await asyncio.gather(
            *(producer.send_command(command) for producer in targets),
            return_exceptions=True,
        )
        for producer, result in zip(targets, results):
            if isinstance(result, Exception):
                logger.error(
                    "robot.producer.send_failed",
                    extra={"robot_id": self.id, "driver_id": producer.id, "error": str(result)},
                )

    def _on_consumer_command(self, command: RobotCommand) -> None:
        self.submit(command)

    # -- hardware link and calibration ---------------------------------------------------

    @property
    def transport(self) -> ServoTransport:
        if self._transport is None:
            servo_ids = {
                name: joint.servo_id if joint.servo_id is not None else index
                for index, (name, joint) in enumerate(self.joints.items(), start=1)
            }
            self._transport = ServoTransport(
                self._bus_factory(),
                servo_ids,
                usb=self.settings.usb,
                polling=self.settings.polling,
                calibration=self.settings.calibration,
            )
            self._transport.calibration.on_complete(self.sync_to_calibration_positions)
        return self._transport

    @property
    def calibration(self) -> CalibrationState:
        return self.transport.calibration

    @property
    def needs_calibration(self) -> bool:
        return self.transport.needs_calibration

    def sync_to_calibration_positions(self, final_positions: Mapping[str, int]) -> None:
        """Re-seed joint values from raw positions without fanning out."""

        def _update(name: str, value: float) -> None:
            if name not in self.joints:
                logger.warning("robot.joint.unknown", extra={"robot_id": self.id, "joint": name})
                return
            self._set_joint(name, value)

        sync_positions(self.transport.calibration, final_positions, _update)

    async def start_calibration(self) -> None:
        await self.transport.acquire(CALIBRATION_HOLDER, CALIBRATION_HOLDER)
        try:
            await self.transport.start_calibration()
        except Exception:
            await self.transport.release(CALIBRATION_HOLDER)
            raise

    async def complete_calibration(self) -> Dict[str, int]:
        try:
            return await self.transport.complete_calibration()
        finally:
            await self.transport.release(CALIBRATION_HOLDER)

    async def cancel_calibration(self) -> None:
        try:
            await self.transport.cancel_calibration()
        finally:
            await self.transport.release(CALIBRATION_HOLDER)

    async def skip_calibration(self) -> Dict[str, int]:
        return await self.transport.skip_calibration()

    async def load_calibration_preset(self, preset: Mapping[str, PresetJoint] = SO100_PRESET) -> Dict[str, int]:
        return await self.transport.load_preset(preset)

    async def load_calibration_file(self, path: Path) -> Dict[str, int]:
        return await self.transport.load_snapshot(load_snapshot(path))

    def save_calibration(self, path: Path) -> None:
        save_snapshot(self.transport.calibration.snapshot(), path)

    # -- driver management -----------------------------------------------------------------

    def _usb_transport(self, config: USBDriverConfig) -> ServoTransport:
        transport = self.transport
        if not transport.is_connected:
            transport.usb = self.settings.usb.model_copy(
                update={"baud_rate": config.baud_rate, "port": config.port or self.settings.usb.port}
            )
        return transport

    def _remote_kwargs(self, role: str) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {"settings": self.settings.remote}
        client = self._relay_factories.get(role)
        if client is not None:
            kwargs["client_factory"] = client
        directory = self._relay_factories.get("directory")
        if directory is not None:
            kwargs["directory_factory"] = directory
        return kwargs

    def _create_consumer(self, config: DriverConfig, join_existing: bool) -> Consumer:
        if isinstance(config, USBDriverConfig):
            return USBConsumer(f"usb-consumer-{self.id}-{_short_id()}", self._usb_transport(config))
        if isinstance(config, RemoteDriverConfig):
            return RemoteConsumer(
                f"remote-consumer-{self.id}-{_short_id()}",
                config,
                join_existing=join_existing,
                **self._remote_kwargs("consumer"),
            )
        raise TypeError(f"Unknown consumer config: {config!r}")

    def _create_producer(self, config: DriverConfig, join_existing: bool) -> Producer:
        if isinstance(config, USBDriverConfig):
            return USBProducer(f"usb-producer-{self.id}-{_short_id()}", self._usb_transport(config))
        if isinstance(config, RemoteDriverConfig):
            return RemoteProducer(
                f"remote-producer-{self.id}-{_short_id()}",
                config,
                join_existing=join_existing,
                **self._remote_kwargs("producer"),
            )
        raise TypeError(f"Unknown producer config: {config!r}")

    def _track(self, driver: Driver, *subscriptions: Subscription) -> None:
        self._driver_subscriptions.setdefault(driver.id, []).extend(subscriptions)

    def _untrack(self, driver: Driver) -> None:
        for subscription in self._driver_subscriptions.pop(driver.id, []):
            subscription.unsubscribe()

    async def set_consumer(self, config: DriverConfig) -> str:
        """Attach the single consumer, replacing any existing one."""
        return await self._set_consumer(config, join_existing=False)

    async def join_as_consumer(self, config: RemoteDriverConfig) -> str:
        if not isinstance(config, RemoteDriverConfig):
            raise TypeError("join_as_consumer only supports remote drivers")
        return await self._set_consumer(config, join_existing=True)

    async def _set_consumer(self, config: DriverConfig, *, join_existing: bool) -> str:
        async with self._driver_lock:
            self._attaching_consumer = True
            try:
                await self._detach_consumer()
                return await self._attach_consumer(config, join_existing)
            finally:
                self._attaching_consumer = False

    async def _attach_consumer(self, config: DriverConfig, join_existing: bool) -> str:
        consumer = self._create_consumer(config, join_existing)
        await consumer.connect()
        self._track(
            consumer,
            consumer.on_command(self._on_consumer_command),
            consumer.on_status_change(self._update_states),
        )
        try:
            await consumer.start_listening()
        except Exception:
            self._untrack(consumer)
            await consumer.disconnect()
            self._update_states()
            raise

        self.consumer = consumer
        self._update_states()
        logger.info("robot.consumer.set", extra={"robot_id": self.id, "driver_id": consumer.id, "kind": consumer.kind})
        return consumer.id

    async def add_producer(self, config: DriverConfig) -> str:
        return await self._add_producer(config, join_existing=False)

    async def join_as_producer(self, config: RemoteDriverConfig) -> str:
        if not isinstance(config, RemoteDriverConfig):
            raise TypeError("join_as_producer only supports remote drivers")
        return await self._add_producer(config, join_existing=True)

    async def _add_producer(self, config: DriverConfig, *, join_existing: bool) -> str:
        producer = self._create_producer(config, join_existing)
        producer.state_provider = self.joint_values
        async with self._driver_lock:
            try:
                await producer.connect()
            except Exception:
                await producer.disconnect()
                raise
            self._track(producer, producer.on_status_change(self._update_states))
            self.producers.append(producer)
        self._update_states()
        logger.info("robot.producer.added", extra={"robot_id": self.id, "driver_id": producer.id, "kind": producer.kind})
        return producer.id

    async def remove_consumer(self) -> None:
        async with self._driver_lock:
            await self._detach_consumer()

    async def _detach_consumer(self) -> None:
        consumer, self.consumer = self.consumer, None
        if consumer is None:
            return
        try:
            await consumer.stop_listening()
            await consumer.disconnect()
        finally:
            self._untrack(consumer)
            self._update_states()

    async def remove_producer(self, driver_id: str) -> bool:
        for index, producer in enumerate(self.producers):
            if producer.id == driver_id:
                break
        else:
            return False
        del self.producers[index]
        try:
            await producer.disconnect()
        finally:
            self._untrack(producer)
            self._update_states()
        return True

    async def destroy(self) -> None:
        """Stop the command worker and disconnect every driver."""
        worker, self._worker = self._worker, None
        self._pending.clear()
        if worker is not None and not worker.done():
            worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await worker
        self._idle.set()

        async with self._driver_lock:
            drivers: List[Driver] = [*([self.consumer] if self.consumer else []), *self.producers]
            self.consumer = None
            self.producers = []
            results = await asyncio.gather(*(driver.disconnect() for driver in drivers), return_exceptions=True)
        for driver, result in zip(drivers, results):
            self._untrack(driver)
            if isinstance(result, Exception):
                logger.error(
                    "robot.driver.disconnect_failed",
                    extra={"robot_id": self.id, "driver_id": driver.id, "error": str(result)},
                )

        if self._transport is not None:
            await self._transport.stop_calibration_polling()
            await self._transport.release(CALIBRATION_HOLDER)
            if self._transport.is_connected:
                await self._transport.disconnect()
        self._update_states()
        logger.info("robot.destroyed", extra={"robot_id": self.id})


__all__ = ["CALIBRATION_HOLDER", "JointChange", "Robot"]
