from __future__ import annotations

from typing import Callable, Dict, Iterable, List, Mapping, Optional, Protocol

from ..contracts.models import JointValue, RoomInfo


class ServoBus(Protocol):
    """Raw access to a chain of addressed servos on one serial link."""

    @property
    def is_connected(self) -> bool: ...

    async def connect(self, baud_rate: int, port: Optional[str] = None) -> None: ...

    async def disconnect(self) -> None: ...

    async def read_position(self, servo_id: int) -> int: ...

    async def sync_read_positions(self, servo_ids: Iterable[int]) -> Dict[int, int]: ...

    async def write_position(self, servo_id: int, raw: int) -> None: ...

    async def sync_write_positions(self, positions: Mapping[int, int]) -> None: ...

    async def write_torque_enable(self, servo_id: int, enabled: bool) -> None: ...


JointUpdateCallback = Callable[[List[JointValue]], None]
StateSyncCallback = Callable[[Dict[str, float]], None]


class RelayConsumerClient(Protocol):
    async def connect(self, workspace_id: str, room_id: str, participant_id: str) -> bool: ...

    async def disconnect(self) -> None: ...

    def on_joint_update(self, callback: JointUpdateCallback) -> None: ...

    def on_state_sync(self, callback: StateSyncCallback) -> None: ...


class RelayProducerClient(Protocol):
    async def connect(self, workspace_id: str, room_id: str, participant_id: str) -> bool: ...

    async def disconnect(self) -> None: ...

    async def send_joint_update(self, joints: List[JointValue]) -> None: ...

    async def send_state_sync(self, state: Dict[str, float]) -> None: ...


class RoomDirectory(Protocol):
    async def create_room(self, workspace_id: str, room_id: Optional[str] = None) -> RoomInfo: ...

    async def list_rooms(self, workspace_id: str) -> List[RoomInfo]: ...
