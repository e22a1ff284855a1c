"""Error taxonomy for the signaling core.

Only `DeviceError` and `SignalingTimeout` are raised to the caller of a
coordinator operation, plus `TransportError` from a meeting join that cannot
reach the relay. The others are reported through coordinator events.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class SignalingCoreError(Exception):
    pass


class DeviceErrorReason(str, Enum):
    PERMISSION_DENIED = "permission-denied"
    NOT_FOUND = "not-found"
    IN_USE = "in-use"
    CONSTRAINTS_UNSATISFIABLE = "constraints-unsatisfiable"


@dataclass(eq=False)
class DeviceError(SignalingCoreError):
    reason: DeviceErrorReason
    message: str = ""

    def __post_init__(self) -> None:
        super().__init__(self.reason.value, self.message)

    def __str__(self) -> str:
        if self.message:
            return f"{self.reason.value}: {self.message}"
        return self.reason.value


@dataclass(eq=False)
class SignalingTimeout(SignalingCoreError):
    participant_id: str
    timeout: float

    def __post_init__(self) -> None:
        super().__init__(self.participant_id, self.timeout)

    def __str__(self) -> str:
        return f"no offer from {self.participant_id} within {self.timeout:.1f}s"


@dataclass(eq=False)
class NegotiationInconsistency(SignalingCoreError):
    """Signaling message received in a state that cannot accept it."""

    participant_id: str
    message_type: str
    state: str

    def __post_init__(self) -> None:
        super().__init__(self.participant_id, self.message_type, self.state)

    def __str__(self) -> str:
        return f"{self.message_type} from {self.participant_id} ignored in state={self.state}"


@dataclass(eq=False)
class ConnectionFailure(SignalingCoreError):
    participant_id: str
    connection_state: str

    def __post_init__(self) -> None:
        super().__init__(self.participant_id, self.connection_state)

    def __str__(self) -> str:
        return f"peer connection to {self.participant_id} is {self.connection_state}"


@dataclass(eq=False)
class TransportError(SignalingCoreError):
    message: str
    event: Optional[str] = field(default=None)

    def __post_init__(self) -> None:
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message
