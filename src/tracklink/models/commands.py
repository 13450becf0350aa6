"""Outbound device command models."""

from __future__ import annotations

import enum

from pydantic import BaseModel, ConfigDict, Field


class CommandType(enum.StrEnum):
    """Session lifecycle commands understood by device firmware."""

    START = "START"
    STOP = "STOP"


class DeviceCommand(BaseModel):
    """Wire payload published on ``<prefix>/<deviceId>/cmd``.

    Serializes as ``{"cmd": "START", "sessionId": 42}``.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    cmd: CommandType
    session_id: int = Field(..., serialization_alias="sessionId", validation_alias="sessionId")

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class CommandDispatch(BaseModel):
    """Outcome of a best-effort command publish."""

    model_config = ConfigDict(frozen=True)

    device_id: str
    topic: str
    command: DeviceCommand
    delivered: bool
