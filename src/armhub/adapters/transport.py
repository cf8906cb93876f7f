"""Shared, reference-counted handle on one physical servo connection.

Every read and write on the bus goes through a single queue drained by one
worker task, so calibration sampling, a hardware consumer and a hardware
producer attached to the same arm never interleave bytes on the wire.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, Mapping, Optional, Tuple, Type

from ..config import CalibrationSettings, PollingSettings, USBSettings
from ..contracts.models import CalibrationSnapshot, ConnectionStatus, PresetJoint
from ..domain.calibration import CalibrationState
from ..domain.ports import ServoBus
from ..errors import ConnectionFailed, DriverNotConnected, HardwareError, HardwareReadFailed, HardwareWriteFailed
from ..runtime.events import Observers, Subscription

logger = logging.getLogger(__name__)

Job = Tuple[Callable[[], Awaitable[Any]], "asyncio.Future[Any]"]

ROLE_CONSUMER = "consumer"
ROLE_PRODUCER = "producer"


class ServoTransport:
    def __init__(
        self,
        bus: ServoBus,
        joints: Mapping[str, int],
        *,
        usb: USBSettings | None = None,
        polling: PollingSettings | None = None,
        calibration: CalibrationSettings | None = None,
    ) -> None:
        self.bus = bus
        self.servo_ids: Dict[str, int] = dict(joints)
        self.usb = usb or USBSettings()
        self.polling = polling or PollingSettings()
        cal_settings = calibration or CalibrationSettings()
        self.calibration = CalibrationState(self.servo_ids, min_range=cal_settings.min_range_threshold)
        self._final_position_timeout = cal_settings.final_position_timeout

        self.status = ConnectionStatus()
        self._status_observers: Observers[ConnectionStatus] = Observers("transport.status")
        self._holders: Dict[str, str] = {}
        self._connect_lock = asyncio.Lock()

        self._jobs: "asyncio.Queue[Job]" = asyncio.Queue()
        self._worker: Optional[asyncio.Task[None]] = None
        self._calibration_task: Optional[asyncio.Task[None]] = None
        self.torque_enabled: Optional[bool] = None

    # -- lifecycle -----------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self.status.is_connected

    @property
    def ref_count(self) -> int:
        return len(self._holders)

    def roles(self) -> Dict[str, str]:
        return dict(self._holders)

    def on_status_change(self, callback: Callable[[ConnectionStatus], None]) -> Subscription:
        return self._status_observers.subscribe(callback)

    def _set_status(self, *, connected: bool, error: Optional[str] = None) -> None:
        last = time.time() if connected else self.status.last_connected
        self.status = ConnectionStatus(is_connected=connected, error=error, last_connected=last)
        self._status_observers.emit(self.status)

    async def connect(self) -> None:
        async with self._connect_lock:
            if self.is_connected:
                return
            try:
                await asyncio.wait_for(
                    self.bus.connect(self.usb.baud_rate, self.usb.port),
                    timeout=self.usb.connection_timeout,
                )
            except asyncio.TimeoutError as exc:
                self._set_status(connected=False, error="connection timed out")
                raise ConnectionFailed(f"Timed out opening servo bus after {self.usb.connection_timeout}s") from exc
            except ConnectionFailed as exc:
                self._set_status(connected=False, error=str(exc))
                raise
            except Exception as exc:
                self._set_status(connected=False, error=str(exc))
                raise ConnectionFailed(f"Failed to open servo bus: {exc}") from exc
            self._ensure_worker()
            self._set_status(connected=True)
            logger.info("transport.connected", extra={"servo_ids": list(self.servo_ids.values())})

    async def disconnect(self) -> None:
        await self.stop_calibration_polling()
        await self._stop_worker()
        if self.bus.is_connected:
            await self.bus.disconnect()
        self.torque_enabled = None
        if self.status.is_connected:
            self._set_status(connected=False)
        logger.info("transport.disconnected")

    async def acquire(self, holder: str, role: str) -> None:
        """Register ``holder`` and connect the bus on first use."""
        if holder not in self._holders:
            await self.connect()
            self._holders[holder] = role
        self._check_roles()

    async def release(self, holder: str) -> None:
        """Drop ``holder``; the last holder to leave closes the bus."""
        if self._holders.pop(holder, None) is None:
            return
        if not self._holders:
            await self.disconnect()

    def _check_roles(self) -> None:
        roles = set(self._holders.values())
        if ROLE_CONSUMER in roles and ROLE_PRODUCER in roles:
            logger.warning(
                "transport.role_conflict",
                extra={"holders": dict(self._holders), "torque_enabled": self.torque_enabled},
            )

    # -- single-flight queue -------------------------------------------------------

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._drain(), name="servo-transport")

    async def _stop_worker(self) -> None:
        worker, self._worker = self._worker, None
        if worker is not None:
            worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await worker
        while not self._jobs.empty():
            _, future = self._jobs.get_nowait()
            if not future.done():
                future.set_exception(DriverNotConnected("Servo transport closed"))

    async def _drain(self) -> None:
        while True:
            operation, future = await self._jobs.get()
            if future.done():
                continue
            try:
                result = await operation()
            except Exception as exc:
                if not future.done():
                    future.set_exception(exc)
            else:
                if not future.done():
                    future.set_result(result)

    async def _submit(self, operation: Callable[[], Awaitable[Any]]) -> Any:
        if not self.is_connected:
            raise DriverNotConnected("Servo transport is not connected")
        self._ensure_worker()
        future: "asyncio.Future[Any]" = asyncio.get_running_loop().create_future()
        self._jobs.put_nowait((operation, future))
        return await future

    async def _with_retries(
        self,
        event: str,
        servo_ids: Iterable[int],
        operation: Callable[[], Awaitable[Any]],
        error_cls: Type[HardwareError],
    ) -> Any:
        ids = tuple(servo_ids)
        attempts = self.usb.max_retries
        last_error: Optional[BaseException] = None
        for attempt in range(1, attempts + 1):
            try:
                return await operation()
            except HardwareError as exc:
                last_error = exc.cause or exc
            except (OSError, ValueError) as exc:
                last_error = exc
            logger.warning(
                f"{event}.retry",
                extra={"servo_ids": list(ids), "attempt": attempt, "max_retries": attempts, "error": str(last_error)},
            )
            if attempt < attempts:
                await asyncio.sleep(self.usb.retry_delay)
        raise error_cls(ids, last_error, attempts)

    # -- position I/O ----------------------------------------------------------------

    def _id(self, joint: str) -> int:
        try:
            return self.servo_ids[joint]
        except KeyError:
            raise KeyError(f"No servo mapped for joint {joint!r}") from None

    async def read_position(self, joint: str) -> int:
        servo_id = self._id(joint)
        raw = await self._submit(
            lambda: self._with_retries(
                "transport.read", (servo_id,), lambda: self.bus.read_position(servo_id), HardwareReadFailed
            )
        )
        self.calibration.observe(joint, raw)
        return raw

    async def read_positions(self, joints: Optional[Iterable[str]] = None) -> Dict[str, int]:
        names = list(joints) if joints is not None else list(self.servo_ids)
        if not names:
            return {}
        if len(names) == 1:
            return {names[0]: await self.read_position(names[0])}
        by_id = {self._id(name): name for name in names}
        raw_by_id: Dict[int, int] = await self._submit(
            lambda: self._with_retries(
                "transport.read",
                by_id,
                lambda: self.bus.sync_read_positions(list(by_id)),
                HardwareReadFailed,
            )
        )
        positions = {by_id[sid]: raw for sid, raw in raw_by_id.items() if sid in by_id}
        self.calibration.observe_many(positions)
        return positions

    async def write_position(self, joint: str, raw: int) -> None:
        servo_id = self._id(joint)
        await self._submit(
            lambda: self._with_retries(
                "transport.write", (servo_id,), lambda: self.bus.write_position(servo_id, raw), HardwareWriteFailed
            )
        )

    async def write_positions(self, positions: Mapping[str, int]) -> None:
        if not positions:
            return
        if len(positions) == 1:
            (joint, raw), = positions.items()
            await self.write_position(joint, raw)
            return
        by_id = {self._id(name): raw for name, raw in positions.items()}
        await self._submit(
            lambda: self._with_retries(
                "transport.write", by_id, lambda: self.bus.sync_write_positions(by_id), HardwareWriteFailed
            )
        )

    # -- torque ------------------------------------------------------------------------

    async def _set_torque(self, enabled: bool) -> int:
        failures = 0
        for joint, servo_id in self.servo_ids.items():
            try:
                await self._submit(lambda sid=servo_id: self.bus.write_torque_enable(sid, enabled))
            except DriverNotConnected:
                raise
            except Exception as exc:
                failures += 1
                logger.warning(
                    "transport.torque.error",
                    extra={"joint": joint, "servo_id": servo_id, "enabled": enabled, "error": str(exc)},
                )
            await asyncio.sleep(self.usb.servo_write_delay)
        self.torque_enabled = enabled
        return failures

    async def lock_all(self) -> int:
        """Enable torque on every servo; returns the number of failed writes."""
        failures = await self._set_torque(True)
        logger.info("transport.locked", extra={"failures": failures})
        return failures

    async def unlock_all(self) -> int:
        """Disable torque on every servo; returns the number of failed writes."""
        failures = await self._set_torque(False)
        logger.info("transport.unlocked", extra={"failures": failures})
        return failures

    # -- calibration -------------------------------------------------------------------

    @property
    def needs_calibration(self) -> bool:
        return self.calibration.needs_calibration

    async def start_calibration(self) -> None:
        if not self.is_connected:
            raise DriverNotConnected("Connect the servo bus before calibrating")
        await self.stop_calibration_polling()
        try:
            await self.read_positions()
        except HardwareError as exc:
            logger.warning("calibration.seed.failed", extra={"error": str(exc)})
        self.calibration.start()
        self._calibration_task = asyncio.create_task(self._calibration_loop(), name="calibration-poll")

    async def _calibration_loop(self) -> None:
        errors = 0
        while self.calibration.is_calibrating:
            try:
                await self.read_positions()
                errors = 0
                delay = self.polling.calibration_polling_rate
            except HardwareError as exc:
                errors += 1
                delay = self.polling.error_backoff_rate
                logger.warning("calibration.poll.error", extra={"error": str(exc), "consecutive": errors})
            except DriverNotConnected:
                return
            await asyncio.sleep(delay)

    async def stop_calibration_polling(self) -> None:
        task, self._calibration_task = self._calibration_task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def complete_calibration(self) -> Dict[str, int]:
        await self.stop_calibration_polling()
        if self.is_connected and self.calibration.is_calibrating:
            try:
                await asyncio.wait_for(self.read_positions(), timeout=self._final_position_timeout)
            except (HardwareError, asyncio.TimeoutError) as exc:
                logger.warning("calibration.final_read.failed", extra={"error": str(exc)})
        return self.calibration.complete()

    async def cancel_calibration(self) -> None:
        await self.stop_calibration_polling()
        self.calibration.cancel()

    async def skip_calibration(self) -> Dict[str, int]:
        await self.stop_calibration_polling()
        return self.calibration.skip()

    async def load_preset(self, preset: Mapping[str, PresetJoint]) -> Dict[str, int]:
        await self.stop_calibration_polling()
        return self.calibration.load_preset(preset)

    async def load_snapshot(self, snapshot: CalibrationSnapshot) -> Dict[str, int]:
        return await self.load_preset(snapshot.joints)


__all__ = ["ROLE_CONSUMER", "ROLE_PRODUCER", "ServoTransport"]
