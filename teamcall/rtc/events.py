"""Coordinator-level events delivered to the UI collaborator."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional


# Call lifecycle
INCOMING_CALL = "incoming-call"
ANSWERED = "answered"
REJECTED = "rejected"
ENDED = "ended"
CALL_FAILED = "call-failed"

# Meeting lifecycle
PARTICIPANT_JOINED = "participant-joined"
PARTICIPANT_LEFT = "participant-left"
LEFT = "left"

# Either coordinator
CONNECTION_ERROR = "connection-error"
REMOTE_TRACK = "remote-track"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class CoordinatorEvent:
    name: str
    participant_id: Optional[str] = None
    severity: Severity = Severity.INFO
    detail: Dict[str, Any] = field(default_factory=dict)
    error: Optional[BaseException] = None


AsyncCallback = Callable[..., Awaitable[None]]


@dataclass
class CoordinatorCallbacks:
    on_event: Optional[AsyncCallback] = None  # (event: CoordinatorEvent)
    on_log: Optional[AsyncCallback] = None  # (msg: str)
