"""Project-wide constants shared by models, migrations and signal wiring."""

DB_SCHEMA = "handoff"

# Shared-value keys (suite-scoped rows in shared_values)
PENDING_COMMAND_KEY = "recording.pending_command"
LAST_HANDLED_COMMAND_KEY = "recording.last_handled_at"
CHAT_LAST_UPDATE_KEY = "chat.last_update"
STATUS_KEY_PREFIX = "status."

# Signal name suffixes; full names are "<prefix>.<suffix>"
CHAT_UPDATED_SUFFIX = "chat.updated"


def recording_signal(prefix: str, command: str) -> str:
    """Full signal name for a control-plane command."""
    return f"{prefix}.recording.{command}"


def chat_updated_signal(prefix: str) -> str:
    """Full signal name for the data-plane record-changed wake-up."""
    return f"{prefix}.{CHAT_UPDATED_SUFFIX}"
