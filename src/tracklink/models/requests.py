"""Pydantic request models for facade entrypoints.

These models provide a consistent "validate → normalize → execute" flow.
They are used by :class:`tracklink.service.TrackerService`, so the HTTP layer
and programmatic callers get the same validation.
"""

from __future__ import annotations

from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from tracklink.ingestion.normalize import positive_or_none, safe_str


class DeviceRequest(BaseModel):
    """Request addressing one device."""

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        validate_default=True,
        str_strip_whitespace=True,
        populate_by_name=True,
    )

    device_id: str = Field(..., validation_alias=AliasChoices("deviceId", "device_id"))

    @field_validator("device_id", mode="before")
    @classmethod
    def _device_id_non_empty(cls, value: Any) -> str:
        device_id = safe_str(value)
        if device_id is None:
            raise ValueError("deviceId required")
        return device_id


class StartSessionRequest(DeviceRequest):
    title: str | None = None

    @field_validator("title", mode="before")
    @classmethod
    def _blank_title_is_none(cls, value: Any) -> str | None:
        return safe_str(value)


class HistoryRequest(BaseModel):
    """Session history query.

    ``limit`` is clamped by the service to its configured maximum rather than
    rejected, so a UI asking for "everything" still gets an answer.
    """

    model_config = ConfigDict(frozen=True, extra="ignore", validate_default=True, populate_by_name=True)

    session_id: int = Field(None, validation_alias=AliasChoices("sessionId", "session_id"))  # type: ignore[assignment]
    limit: int | None = Field(default=None, ge=1)

    @field_validator("session_id", mode="before")
    @classmethod
    def _session_id_positive(cls, value: Any) -> int:
        session_id = positive_or_none(value)
        if session_id is None:
            raise ValueError("sessionId required")
        return session_id
