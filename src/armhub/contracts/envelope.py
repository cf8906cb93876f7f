from __future__ import annotations

import time
import uuid
from typing import Any

import orjson
from pydantic import BaseModel, Field


class Envelope(BaseModel):
    """Wrapper adding metadata around relay payloads."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    type: str
    ts: float = Field(default_factory=time.time)
    source: str = "armhub"
    data: dict[str, Any]

    model_config = {"extra": "forbid"}

    @classmethod
    def new(
        cls,
        *,
        event_type: str,
        data: Any,
        correlate: str | None = None,
        source: str = "armhub",
    ) -> "Envelope":
        payload = data.model_dump() if hasattr(data, "model_dump") else data
        return cls(id=correlate or uuid.uuid4().hex, type=event_type, data=payload, source=source)

    def to_bytes(self) -> bytes:
        return orjson.dumps(self.model_dump())

    @classmethod
    def from_bytes(cls, raw: bytes | str) -> "Envelope":
        return cls.model_validate(orjson.loads(raw))
