from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator

from src.control.commands import RecordingCommand
from src.delivery.record import LogicalRecord


class InvocationParams(BaseModel):
    text: str
    thumbnail_ref: str | None = None
    include_history: bool = True

    @field_validator("thumbnail_ref", mode="before")
    @classmethod
    def _normalize_thumbnail(cls, v: Any) -> str | None:
        if v is None:
            return None
        if not isinstance(v, str):
            msg = f"thumbnail_ref must be a string (got {type(v).__name__})"
            raise ValueError(msg)
        v = v.strip()
        return v or None


class InvocationAccepted(BaseModel):
    invocation_id: str
    originator_id: str
    responder_id: str


class CommandParams(BaseModel):
    command: RecordingCommand

    @field_validator("command", mode="before")
    @classmethod
    def _normalize_command(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v


class CommandIssued(BaseModel):
    command: RecordingCommand
    issued_at: float


class FragmentData(BaseModel):
    id: str
    kind: str
    data: dict[str, Any] = Field(default_factory=dict)


class RecordData(BaseModel):
    id: str
    role: str
    content: str
    structured_fragments: list[FragmentData]
    created_at: str
    terminal_state: str
    error_reason: str | None = None
    interrupted: bool

    @classmethod
    def from_record(cls, record: LogicalRecord) -> RecordData:
        return cls.model_validate(record.to_display())


class RecordList(BaseModel):
    records: list[RecordData]


class ErrorData(BaseModel):
    code: str
    message: str


class ErrorResponse(BaseModel):
    error: ErrorData
