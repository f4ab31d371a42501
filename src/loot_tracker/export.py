"""Versioned JSON export/import envelope."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ImportFormatError
from .models import format_timestamp

EXPORT_VERSION = "1.0"


class ExportEnvelope(BaseModel):
    """``{version, config?, currentActivity?, history?, exportDate}``.

    The single-activity form ``{version, activity, config?}`` is accepted too.
    """

    version: str
    config: Optional[dict[str, Any]] = None
    current_activity: Optional[dict[str, Any]] = Field(default=None, alias="currentActivity")
    activity: Optional[dict[str, Any]] = None
    history: Optional[list[dict[str, Any]]] = None
    export_date: Optional[str] = Field(default=None, alias="exportDate")

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    @field_validator("version", mode="before")
    @classmethod
    def _version_as_text(cls, value: Any) -> Any:
        if value is None or value == "":
            raise ValueError("version is required")
        return str(value)


def build_envelope(
    *,
    config: Optional[dict[str, Any]],
    current_activity: Optional[dict[str, Any]],
    history: list[dict[str, Any]],
    exported_at: datetime,
) -> dict[str, Any]:
    return {
        "version": EXPORT_VERSION,
        "config": config,
        "currentActivity": current_activity,
        "history": history,
        "exportDate": format_timestamp(exported_at),
    }


def parse_envelope(data: Any) -> ExportEnvelope:
    if not isinstance(data, dict):
        raise ImportFormatError("Export file must contain a JSON object.")
    if not data.get("version"):
        raise ImportFormatError("Export file is missing its version.")
    try:
        return ExportEnvelope.model_validate(data)
    except ValidationError as exc:
        raise ImportFormatError(f"Invalid export file: {exc.error_count()} errors") from exc
