"""LogicalRecord: the unit of streamed content being delivered and persisted."""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

EMPTY_REPLY_TEXT = "Sorry, no reply was received."
INTERRUPTED_PLACEHOLDER = "..."

# Content that only ever stood in for "still typing"
_PLACEHOLDERS = frozenset({"", "...", "…", "……"})
_EXCESS_BLANK_LINES = re.compile(r"\n{3,}")


class Role(StrEnum):
    originator = "originator"
    responder = "responder"


class TerminalState(StrEnum):
    pending = "pending"
    completed = "completed"
    interrupted = "interrupted"
    errored = "errored"


@dataclass(frozen=True)
class Fragment:
    """Typed sub-element (card, segment, tool result) attached to a record."""

    id: str
    kind: str
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "kind": self.kind, "data": self.data}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Fragment:
        return cls(id=str(raw["id"]), kind=str(raw.get("kind", "")), data=dict(raw.get("data") or {}))


@dataclass(frozen=True)
class RecordDelta:
    """One partial update from the streaming operation.

    text is appended unless replace is set, in which case it replaces content.
    fragments are upserted by id.
    """

    text: str = ""
    replace: bool = False
    fragments: tuple[Fragment, ...] = ()


@dataclass
class LogicalRecord:
    id: str
    role: Role
    content: str = ""
    structured_fragments: list[Fragment] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    terminal_state: TerminalState = TerminalState.pending
    error_reason: str | None = None

    @classmethod
    def new(cls, role: Role, content: str = "") -> LogicalRecord:
        return cls(id=str(uuid.uuid4()), role=role, content=content)

    @property
    def is_terminal(self) -> bool:
        return self.terminal_state != TerminalState.pending

    @property
    def interrupted(self) -> bool:
        return self.terminal_state == TerminalState.interrupted

    def apply(self, delta: RecordDelta) -> None:
        """Merge a delta into this record. Fragment order is first-seen order."""
        if delta.replace:
            self.content = delta.text
        elif delta.text:
            self.content += delta.text
        for fragment in delta.fragments:
            for i, existing in enumerate(self.structured_fragments):
                if existing.id == fragment.id:
                    self.structured_fragments[i] = fragment
                    break
            else:
                self.structured_fragments.append(fragment)

    def copy(self) -> LogicalRecord:
        return LogicalRecord(
            id=self.id,
            role=self.role,
            content=self.content,
            structured_fragments=list(self.structured_fragments),
            created_at=self.created_at,
            terminal_state=self.terminal_state,
            error_reason=self.error_reason,
        )

    def to_display(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "structured_fragments": [f.to_dict() for f in self.structured_fragments],
            "created_at": self.created_at.isoformat(),
            "terminal_state": self.terminal_state.value,
            "error_reason": self.error_reason,
            "interrupted": self.interrupted,
        }


def normalize_display_text(text: str) -> str:
    """Trim, drop placeholder-only content, collapse runs of blank lines."""
    stripped = text.strip()
    if stripped in _PLACEHOLDERS:
        return ""
    return _EXCESS_BLANK_LINES.sub("\n\n", stripped)
