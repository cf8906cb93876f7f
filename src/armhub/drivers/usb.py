"""Hardware drivers on top of a shared :class:`ServoTransport`.

A consumer keeps the servos unlocked so the arm can be moved by hand while its
positions are polled. A producer locks them for as long as it is connected.
Both release the transport on disconnect after an unconditional unlock.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Callable, Dict, Mapping, Optional

from ..adapters.transport import ROLE_CONSUMER, ROLE_PRODUCER, ServoTransport
from ..contracts.models import CalibrationSnapshot, JointCalibration, PresetJoint, RobotCommand
from ..domain.calibration import CalibrationProgress, CalibrationState
from ..domain.codec import denormalize, kind_for, normalize
from ..errors import ArmHubError, CalibrationRequired, DriverNotConnected, HardwareError
from ..runtime.events import Subscription
from .base import Consumer, Producer

logger = logging.getLogger(__name__)


class USBServoDriver:
    """Link and calibration handling common to both hardware roles."""

    id: str
    role: str
    transport: ServoTransport

    def _init_usb(self, transport: ServoTransport) -> None:
        self.transport = transport
        self.is_open = False

    async def open(self) -> None:
        """Attach to the shared link without changing torque state."""
        if self.is_open:
            return
        await self.transport.acquire(self.id, self.role)
        self.is_open = True

    async def _close(self) -> None:
        if not self.is_open:
            return
        self.is_open = False
        await self.transport.release(self.id)

    @property
    def calibration(self) -> CalibrationState:
        return self.transport.calibration

    def needs_calibration(self) -> bool:
        return self.transport.needs_calibration

    def calibration_for(self, joint: str) -> JointCalibration:
        return self.transport.calibration.calibration_for(joint)

    def _require_calibration(self) -> None:
        if self.transport.needs_calibration:
            raise CalibrationRequired(type(self).__name__, self.transport.calibration.uncalibrated_joints())

    async def start_calibration(self) -> None:
        await self.open()
        await self.transport.start_calibration()

    async def complete_calibration(self) -> Dict[str, int]:
        return await self.transport.complete_calibration()

    async def cancel_calibration(self) -> None:
        await self.transport.cancel_calibration()

    async def skip_calibration(self) -> Dict[str, int]:
        return await self.transport.skip_calibration()

    async def load_preset(self, preset: Mapping[str, PresetJoint]) -> Dict[str, int]:
        return await self.transport.load_preset(preset)

    async def load_snapshot(self, snapshot: CalibrationSnapshot) -> Dict[str, int]:
        return await self.transport.load_snapshot(snapshot)

    def on_calibration_change(self, callback: Callable[[CalibrationProgress], None]) -> Subscription:
        return self.transport.calibration.on_change(callback)

    def on_calibration_complete(self, callback: Callable[[Dict[str, int]], None]) -> Subscription:
        return self.transport.calibration.on_complete(callback)


class USBConsumer(USBServoDriver, Consumer):
    kind = "usb"

    def __init__(self, driver_id: str, transport: ServoTransport, name: Optional[str] = None) -> None:
        Consumer.__init__(self, driver_id, name)
        self._init_usb(transport)
        self._poll_task: Optional[asyncio.Task[None]] = None
        self._last_raw: Dict[str, int] = {}

    async def connect(self) -> None:
        try:
            await self.open()
            await self.transport.unlock_all()
        except ArmHubError as exc:
            self._set_status(False, str(exc))
            await self._close()
            raise
        self._set_status(True)
        logger.info("usb.consumer.connected", extra={"driver_id": self.id})

    async def start_listening(self) -> None:
        if not self.is_connected:
            raise DriverNotConnected(f"{self.id} is not connected")
        self._require_calibration()
        if self._poll_task is not None and not self._poll_task.done():
            return
        self._last_raw = {}
        self.is_listening = True
        self._poll_task = asyncio.create_task(self._poll_loop(), name=f"usb-consumer-{self.id}")
        logger.info("usb.consumer.listening", extra={"driver_id": self.id})

    async def stop_listening(self) -> None:
        self.is_listening = False
        task, self._poll_task = self._poll_task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def poll_once(self) -> Optional[RobotCommand]:
        """Read every joint and emit a sparse command for those that moved."""
        positions = await self.transport.read_positions()
        threshold = self.transport.polling.raw_change_threshold
        changed: Dict[str, float] = {}
        for joint, raw in positions.items():
            previous = self._last_raw.get(joint)
            if previous is not None and abs(raw - previous) <= threshold:
                continue
            self._last_raw[joint] = raw
            changed[joint] = normalize(raw, kind_for(joint), self.calibration_for(joint))
        if not changed:
            return None
        command = RobotCommand.from_values(changed)
        self._emit(command)
        return command

    async def _poll_loop(self) -> None:
        polling = self.transport.polling
        errors = 0
        while self.is_listening:
            delay = polling.consumer_polling_rate
            try:
                await self.poll_once()
                errors = 0
            except DriverNotConnected:
                logger.warning("usb.consumer.link_lost", extra={"driver_id": self.id})
                self.is_listening = False
                self._set_status(False, "servo link closed")
                return
            except HardwareError as exc:
                errors += 1
                delay = polling.error_backoff_rate
                if errors >= polling.max_polling_errors:
                    delay *= 3
                logger.warning(
                    "usb.consumer.poll.error",
                    extra={"driver_id": self.id, "error": str(exc), "consecutive": errors},
                )
            await asyncio.sleep(delay)

    async def disconnect(self) -> None:
        await self.stop_listening()
        try:
            if self.transport.is_connected:
                await self.transport.unlock_all()
        finally:
            await self._close()
            self._set_status(False)
            logger.info("usb.consumer.disconnected", extra={"driver_id": self.id})


class USBProducer(USBServoDriver, Producer):
    kind = "usb"

    def __init__(self, driver_id: str, transport: ServoTransport, name: Optional[str] = None) -> None:
        Producer.__init__(self, driver_id, name)
        self._init_usb(transport)
        self._send_lock = asyncio.Lock()

    async def connect(self) -> None:
        """Open the link and take torque control.

        Raises :class:`CalibrationRequired` while the link is uncalibrated; the
        link stays open so calibration can run on it before retrying.
        """
        try:
            await self.open()
        except ArmHubError as exc:
            self._set_status(False, str(exc))
            raise
        try:
            self._require_calibration()
        except CalibrationRequired as exc:
            self._set_status(False, str(exc))
            raise
        try:
            await self.transport.lock_all()
        except ArmHubError as exc:
            await self.disconnect()
            self._set_status(False, str(exc))
            raise
        self._set_status(True)
        logger.info("usb.producer.connected", extra={"driver_id": self.id})

    async def send_command(self, command: RobotCommand) -> None:
        if not self.is_connected:
            raise DriverNotConnected(f"{self.id} is not connected")
        self._require_calibration()
        positions: Dict[str, int] = {}
        for joint in command.joints:
            if joint.name not in self.transport.servo_ids:
                logger.debug("usb.producer.unmapped_joint", extra={"driver_id": self.id, "joint": joint.name})
                continue
            positions[joint.name] = denormalize(joint.value, kind_for(joint.name), self.calibration_for(joint.name))
        if not positions:
            return
        async with self._send_lock:
            await self.transport.write_positions(positions)

    async def disconnect(self) -> None:
        try:
            if self.transport.is_connected:
                await self.transport.unlock_all()
        finally:
            await self._close()
            self._set_status(False)
            logger.info("usb.producer.disconnected", extra={"driver_id": self.id})


__all__ = ["USBConsumer", "USBProducer", "USBServoDriver"]
