"""Consumer and Producer roles shared by every driver."""

from __future__ import annotations

import abc
import logging
import time
from typing import Callable, Dict, Optional

from ..contracts.models import ConnectionStatus, RobotCommand
from ..runtime.events import Observers, Subscription

logger = logging.getLogger(__name__)

StateProvider = Callable[[], Dict[str, float]]


class Driver(abc.ABC):
    role: str = "driver"
    kind: str = "abstract"

    def __init__(self, driver_id: str, name: Optional[str] = None) -> None:
        self.id = driver_id
        self.name = name or driver_id
        self.status = ConnectionStatus()
        self._status_observers: Observers[ConnectionStatus] = Observers(f"{self.role}.status")

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.id!r}, connected={self.is_connected})"

    @property
    def is_connected(self) -> bool:
        return self.status.is_connected

    def on_status_change(self, callback: Callable[[ConnectionStatus], None]) -> Subscription:
        return self._status_observers.subscribe(callback)

    def _set_status(self, connected: bool, error: Optional[str] = None) -> None:
        last = time.time() if connected else self.status.last_connected
        self.status = ConnectionStatus(is_connected=connected, error=error, last_connected=last)
        logger.debug(
            "driver.status",
            extra={"driver_id": self.id, "role": self.role, "connected": connected, "error": error},
        )
        self._status_observers.emit(self.status)

    @abc.abstractmethod
    async def connect(self) -> None: ...

    @abc.abstractmethod
    async def disconnect(self) -> None: ...


class Consumer(Driver):
    """Observes hardware or a relay room and emits commands."""

    role = "consumer"

    def __init__(self, driver_id: str, name: Optional[str] = None) -> None:
        super().__init__(driver_id, name)
        self._commands: Observers[RobotCommand] = Observers("consumer.command")
        self.is_listening = False

    def on_command(self, callback: Callable[[RobotCommand], None]) -> Subscription:
        return self._commands.subscribe(callback)

    def _emit(self, command: RobotCommand) -> None:
        self._commands.emit(command)

    @abc.abstractmethod
    async def start_listening(self) -> None: ...

    @abc.abstractmethod
    async def stop_listening(self) -> None: ...


class Producer(Driver):
    """Accepts commands and actuates hardware or forwards them to a relay."""

    role = "producer"

    def __init__(self, driver_id: str, name: Optional[str] = None) -> None:
        super().__init__(driver_id, name)
        self.state_provider: Optional[StateProvider] = None

    @abc.abstractmethod
    async def send_command(self, command: RobotCommand) -> None: ...


__all__ = ["Consumer", "Driver", "Producer", "StateProvider"]
