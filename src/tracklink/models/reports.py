"""Canonical inbound report models.

Devices publish JSON under several historical field-naming schemes (the
compact ``{id, sid, la, lo, t}`` firmware format and the verbose
``{deviceId, sessionId, lat, lon, ts}`` format). Both validate into the same
models through ``AliasChoices``.
"""

from __future__ import annotations

import enum
from typing import Any, ClassVar

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from tracklink.ingestion.normalize import drop_nulls, positive_or_none, safe_float, safe_str

DEVICE_ID_ALIASES = AliasChoices("deviceId", "id", "device_id")


class ReportKind(enum.StrEnum):
    """Report type, derived from the topic suffix."""

    TELEMETRY = "telemetry"
    STATUS = "status"


class _ReportBase(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
    )

    device_id: str = Field(..., validation_alias=DEVICE_ID_ALIASES)

    @model_validator(mode="before")
    @classmethod
    def _drop_null_aliases(cls, values: Any) -> Any:
        if not isinstance(values, dict):
            return values
        return drop_nulls(values)

    @field_validator("device_id", mode="before")
    @classmethod
    def _coerce_device_id(cls, value: Any) -> str:
        device_id = safe_str(value)
        if device_id is None:
            raise ValueError("device id must be non-empty")
        return device_id


class TelemetryReport(_ReportBase):
    """A position update.

    Parameters
    ----------
    device_id : str
        Reporting device (``deviceId`` or ``id``).
    lat : float
        Latitude in degrees (``lat`` or ``la``). Must be finite.
    lon : float
        Longitude in degrees (``lon`` or ``lo``). Must be finite.
    session_id_hint : int or None
        Session the device believes it is recording into (``sessionId`` or
        ``sid``). Non-positive or non-numeric values mean "no hint".
    device_ts : int or None
        Device clock timestamp (``ts``, ``t`` or ``device_ts``). ``0`` and
        non-numeric values mean "no timestamp".
    """

    kind: ClassVar[ReportKind] = ReportKind.TELEMETRY
    lat: float = Field(..., validation_alias=AliasChoices("lat", "la", "latitude"))
    lon: float = Field(..., validation_alias=AliasChoices("lon", "lo", "lng", "longitude"))
    session_id_hint: int | None = Field(default=None, validation_alias=AliasChoices("sessionId", "sid"))
    device_ts: int | None = Field(default=None, validation_alias=AliasChoices("ts", "t", "device_ts"))

    @field_validator("lat", "lon", mode="before")
    @classmethod
    def _coerce_coordinate(cls, value: Any) -> float:
        parsed = safe_float(value)
        if parsed is None:
            raise ValueError("coordinate must be a finite number")
        return parsed

    @field_validator("session_id_hint", "device_ts", mode="before")
    @classmethod
    def _coerce_optional_positive(cls, value: Any) -> int | None:
        return positive_or_none(value)


class StatusReport(_ReportBase):
    """An opaque device health/state payload.

    ``payload`` carries the full payload as received; nothing beyond the
    device id is interpreted.
    """

    kind: ClassVar[ReportKind] = ReportKind.STATUS
    payload: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> StatusReport:
        """Validate a raw status object, keeping all of it as ``payload``."""
        return cls.model_validate({**payload, "payload": dict(payload)})


Report = TelemetryReport | StatusReport
