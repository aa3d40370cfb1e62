"""Data-channel transcript envelope."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class TranscriptMessage(BaseModel):
    """``{type: "transcript", id, text, isFinal, timestamp}`` sent peer to peer."""

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["transcript"] = "transcript"
    id: str
    text: str
    is_final: bool = Field(default=False, alias="isFinal")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_wire(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_wire(cls, raw: str | bytes) -> "TranscriptMessage":
        return cls.model_validate_json(raw)
