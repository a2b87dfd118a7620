"""
Session Status Definitions for Chatbot Conversations
"""
from enum import Enum


class SessionStatus(str, Enum):
    """Lifecycle states of a conversation session"""

    ACTIVE = "active"
    WAITING_INPUT = "waiting_input"  # suspended on an input/buttons/list node

    # Terminal states
    COMPLETED = "completed"
    EXPIRED = "expired"  # set by the maintenance sweep only
    FAILED = "failed"
    TRANSFERRED = "transferred"  # handed over to a human agent


# Statuses in which a session is reused for the next inbound message
OPEN_STATUSES = (SessionStatus.ACTIVE, SessionStatus.WAITING_INPUT)

TERMINAL_STATUSES = (
    SessionStatus.COMPLETED,
    SessionStatus.EXPIRED,
    SessionStatus.FAILED,
    SessionStatus.TRANSFERRED,
)


SESSION_TRANSITIONS = {
    SessionStatus.ACTIVE: [
        SessionStatus.WAITING_INPUT,
        SessionStatus.COMPLETED,
        SessionStatus.EXPIRED,
        SessionStatus.FAILED,
        SessionStatus.TRANSFERRED,
    ],
    SessionStatus.WAITING_INPUT: [
        SessionStatus.ACTIVE,
        SessionStatus.COMPLETED,
        SessionStatus.EXPIRED,
        SessionStatus.FAILED,
        SessionStatus.TRANSFERRED,
    ],
    SessionStatus.COMPLETED: [],
    SessionStatus.EXPIRED: [],
    SessionStatus.FAILED: [],
    SessionStatus.TRANSFERRED: [],
}


def can_transition(current: str, target: str) -> bool:
    """Staying in the same status is always allowed"""
    current_status = SessionStatus(current)
    target_status = SessionStatus(target)
    if current_status == target_status:
        return True
    return target_status in SESSION_TRANSITIONS[current_status]


def is_open(status: str) -> bool:
    return status in {s.value for s in OPEN_STATUSES}
