"""Observer lists with explicit deregistration handles."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Generic, List, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(eq=False)
class Subscription:
    """Handle returned by :meth:`Observers.subscribe`.

    Calling :meth:`unsubscribe` more than once is harmless. The handle also
    works as a context manager for scoped subscriptions.
    """

    _cancel: Callable[[], None]
    active: bool = field(default=True, init=False)

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        self._cancel()

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.unsubscribe()


class Observers(Generic[T]):
    """Ordered callback list for one event kind.

    Callbacks run synchronously in registration order. A callback that raises
    is logged and does not prevent the remaining callbacks from running.
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._callbacks: List[Callable[[T], None]] = []

    def __len__(self) -> int:
        return len(self._callbacks)

    def subscribe(self, callback: Callable[[T], None]) -> Subscription:
        self._callbacks.append(callback)

        def _cancel() -> None:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

        return Subscription(_cancel)

    def emit(self, event: T) -> None:
        for callback in list(self._callbacks):
            try:
                callback(event)
            except Exception:
                logger.exception("observer.callback.error", extra={"event_kind": self._name})

    def clear(self) -> None:
        self._callbacks.clear()


__all__ = ["Observers", "Subscription"]
