"""Feetech STS/SCS serial bus over pyserial.

Packets are ``FF FF id len instr params... chk`` where ``len`` counts the
parameters plus instruction and checksum, and ``chk`` is the inverted low byte
of the sum from ``id`` onward. Blocking serial calls run in a worker thread;
callers are expected to serialize access (see :class:`ServoTransport`).
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional

import serial
import serial.tools.list_ports

from ..errors import ConnectionFailed, DriverNotConnected, HardwareReadFailed

logger = logging.getLogger(__name__)

HEADER = b"\xff\xff"
BROADCAST_ID = 0xFE

INST_PING = 0x01
INST_READ = 0x02
INST_WRITE = 0x03
INST_SYNC_READ = 0x82
INST_SYNC_WRITE = 0x83

ADDR_TORQUE_ENABLE = 40
ADDR_GOAL_POSITION = 42
ADDR_PRESENT_POSITION = 56

POSITION_BYTES = 2


class ProtocolError(IOError):
    """A status packet was missing, truncated, or failed validation."""


def checksum(body: bytes | bytearray) -> int:
    return (~sum(body)) & 0xFF


def build_packet(servo_id: int, instruction: int, params: Iterable[int] = ()) -> bytes:
    params = bytes(params)
    body = bytes([servo_id & 0xFF, len(params) + 2, instruction]) + params
    return HEADER + body + bytes([checksum(body)])


@dataclass(slots=True)
class StatusPacket:
    servo_id: int
    error: int
    params: bytes


def parse_status(frame: bytes) -> StatusPacket:
    if len(frame) < 6 or frame[:2] != HEADER:
        raise ProtocolError(f"malformed status frame: {frame.hex()}")
    length = frame[3]
    if len(frame) != length + 4:
        raise ProtocolError(f"status frame length mismatch: {frame.hex()}")
    if checksum(frame[2:-1]) != frame[-1]:
        raise ProtocolError(f"status checksum mismatch: {frame.hex()}")
    return StatusPacket(servo_id=frame[2], error=frame[4], params=bytes(frame[5:-1]))


def split_frames(raw: bytes) -> List[bytes]:
    """Cut a byte stream into status frames, resynchronising on the header."""
    frames: List[bytes] = []
    i = 0
    while i + 4 <= len(raw):
        if raw[i : i + 2] != HEADER:
            i += 1
            continue
        end = i + 4 + raw[i + 3]
        if end > len(raw):
            break
        frames.append(raw[i:end])
        i = end
    return frames


def detect_port() -> Optional[str]:
    """Return the first USB serial adapter found, if any."""
    for info in sorted(serial.tools.list_ports.comports(), key=lambda p: p.device):
        if info.vid is not None or "usb" in info.device.lower() or "acm" in info.device.lower():
            return info.device
    return None


class FeetechBus:
    def __init__(self, *, read_timeout: float = 0.2, serial_factory=serial.Serial) -> None:
        self._read_timeout = read_timeout
        self._serial_factory = serial_factory
        self._ser: Optional[serial.Serial] = None
        self.port: Optional[str] = None

    @property
    def is_connected(self) -> bool:
        return self._ser is not None and self._ser.is_open

    async def connect(self, baud_rate: int, port: Optional[str] = None) -> None:
        target = port or detect_port()
        if target is None:
            raise ConnectionFailed("No USB serial port found for the servo bus")
        try:
            self._ser = await asyncio.to_thread(
                self._serial_factory, target, baud_rate, timeout=self._read_timeout
            )
        except (serial.SerialException, OSError) as exc:
            raise ConnectionFailed(f"Failed to open {target} at {baud_rate} baud: {exc}") from exc
        self.port = target
        logger.info("feetech.connected", extra={"port": target, "baud_rate": baud_rate})

    async def disconnect(self) -> None:
        ser, self._ser = self._ser, None
        if ser is None:
            return
        await asyncio.to_thread(ser.close)
        logger.info("feetech.disconnected", extra={"port": self.port})

    def _require(self) -> serial.Serial:
        if self._ser is None:
            raise DriverNotConnected("Servo bus is not connected")
        return self._ser

    def _exchange(self, packet: bytes, reply_bytes: int) -> bytes:
        ser = self._require()
        ser.reset_input_buffer()
        ser.write(packet)
        ser.flush()
        if reply_bytes <= 0:
            return b""
        raw = ser.read(reply_bytes + len(packet))
        # Half-duplex adapters can echo the request back.
        if raw.startswith(packet):
            raw = raw[len(packet) :]
        return raw

    def _request(self, servo_id: int, instruction: int, params: Iterable[int], reply_params: int) -> StatusPacket:
        packet = build_packet(servo_id, instruction, params)
        raw = self._exchange(packet, reply_params + 6)
        frames = split_frames(raw)
        if not frames:
            raise ProtocolError(f"no reply from servo {servo_id}")
        status = parse_status(frames[0])
        if status.servo_id != servo_id:
            raise ProtocolError(f"reply from servo {status.servo_id}, expected {servo_id}")
        if status.error:
            raise ProtocolError(f"servo {servo_id} reported error 0x{status.error:02x}")
        return status

    async def ping(self, servo_id: int) -> bool:
        try:
            await asyncio.to_thread(self._request, servo_id, INST_PING, (), 0)
        except ProtocolError:
            return False
        return True

    async def read_position(self, servo_id: int) -> int:
        status = await asyncio.to_thread(
            self._request, servo_id, INST_READ, (ADDR_PRESENT_POSITION, POSITION_BYTES), POSITION_BYTES
        )
        if len(status.params) < POSITION_BYTES:
            raise ProtocolError(f"short position reply from servo {servo_id}")
        return status.params[0] | (status.params[1] << 8)

    def _sync_read(self, servo_ids: List[int]) -> Dict[int, int]:
        packet = build_packet(BROADCAST_ID, INST_SYNC_READ, [ADDR_PRESENT_POSITION, POSITION_BYTES, *servo_ids])
        raw = self._exchange(packet, (POSITION_BYTES + 6) * len(servo_ids))
        positions: Dict[int, int] = {}
        for frame in split_frames(raw):
            try:
                status = parse_status(frame)
            except ProtocolError:
                logger.debug("feetech.sync_read.bad_frame", extra={"frame": frame.hex()})
                continue
            if status.error or status.servo_id not in servo_ids or len(status.params) < POSITION_BYTES:
                continue
            positions[status.servo_id] = status.params[0] | (status.params[1] << 8)
        missing = [sid for sid in servo_ids if sid not in positions]
        if missing:
            raise HardwareReadFailed(missing, ProtocolError("no valid sync-read reply"))
        return positions

    async def sync_read_positions(self, servo_ids: Iterable[int]) -> Dict[int, int]:
        ids = list(servo_ids)
        if not ids:
            return {}
        return await asyncio.to_thread(self._sync_read, ids)

    async def write_position(self, servo_id: int, raw: int) -> None:
        value = max(0, min(4095, int(raw)))
        await asyncio.to_thread(
            self._exchange,
            build_packet(servo_id, INST_WRITE, (ADDR_GOAL_POSITION, value & 0xFF, (value >> 8) & 0xFF)),
            0,
        )

    async def sync_write_positions(self, positions: Mapping[int, int]) -> None:
        if not positions:
            return
        params: List[int] = [ADDR_GOAL_POSITION, POSITION_BYTES]
        for servo_id, raw in positions.items():
            value = max(0, min(4095, int(raw)))
            params.extend((servo_id, value & 0xFF, (value >> 8) & 0xFF))
        await asyncio.to_thread(self._exchange, build_packet(BROADCAST_ID, INST_SYNC_WRITE, params), 0)

    async def write_torque_enable(self, servo_id: int, enabled: bool) -> None:
        await asyncio.to_thread(
            self._exchange,
            build_packet(servo_id, INST_WRITE, (ADDR_TORQUE_ENABLE, 1 if enabled else 0)),
            0,
        )


__all__ = [
    "ADDR_GOAL_POSITION",
    "ADDR_PRESENT_POSITION",
    "ADDR_TORQUE_ENABLE",
    "BROADCAST_ID",
    "FeetechBus",
    "ProtocolError",
    "build_packet",
    "checksum",
    "detect_port",
    "parse_status",
    "split_frames",
]
