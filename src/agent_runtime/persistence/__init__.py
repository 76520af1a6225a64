from agent_runtime.persistence.models import SessionError, SessionSummary, ToolCallRecord
from agent_runtime.persistence.session import Session, generate_session_id, utc_now
from agent_runtime.persistence.store import SessionStore

__all__ = [
    "Session",
    "SessionError",
    "SessionStore",
    "SessionSummary",
    "ToolCallRecord",
    "generate_session_id",
    "utc_now",
]
