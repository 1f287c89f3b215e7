"""
State Definitions for Connection Sessions, Queue-Selection Dialogues and Tickets
"""
from enum import Enum
from typing import Optional

from app.db.models.pending_selection import PendingQueueSelection
from app.db.models.ticket import TicketStatus


class ConnectionLifecycleState(str, Enum):
    """In-memory lifecycle of one connection's transport session"""

    IDLE = "IDLE"
    INITIALIZING = "INITIALIZING"
    QR_PENDING = "QR_PENDING"
    CONNECTED = "CONNECTED"
    DISCONNECTED = "DISCONNECTED"


CONNECTION_LIFECYCLE_TRANSITIONS = {
    ConnectionLifecycleState.IDLE: [ConnectionLifecycleState.INITIALIZING],
    ConnectionLifecycleState.INITIALIZING: [
        ConnectionLifecycleState.QR_PENDING,
        ConnectionLifecycleState.CONNECTED,
        ConnectionLifecycleState.DISCONNECTED,  # auth_failure / timeout
        ConnectionLifecycleState.IDLE,  # abort
    ],
    # authenticated מחזיר ל-INITIALIZING עד ready; QR חדש מחליף את הקודם
    ConnectionLifecycleState.QR_PENDING: [
        ConnectionLifecycleState.INITIALIZING,
        ConnectionLifecycleState.QR_PENDING,
        ConnectionLifecycleState.CONNECTED,
        ConnectionLifecycleState.DISCONNECTED,
        ConnectionLifecycleState.IDLE,
    ],
    ConnectionLifecycleState.CONNECTED: [
        ConnectionLifecycleState.DISCONNECTED,
        ConnectionLifecycleState.IDLE,
    ],
    ConnectionLifecycleState.DISCONNECTED: [ConnectionLifecycleState.IDLE],
}


def is_valid_lifecycle_transition(
    current: ConnectionLifecycleState,
    target: ConnectionLifecycleState,
) -> bool:
    return target in CONNECTION_LIFECYCLE_TRANSITIONS.get(current, [])


class PendingSelectionState(str, Enum):
    """Queue-selection dialogue of one contact number"""

    NO_RECORD = "NO_RECORD"
    PENDING_INITIAL = "PENDING.INITIAL"  # initial_sent = 0
    PENDING_AWAITING_CHOICE = "PENDING.AWAITING_CHOICE"  # initial_sent = 1
    TICKET_CREATED = "TICKET_CREATED"
    CLOSED_INVALID = "CLOSED.INVALID"
    CLOSED_TIMEOUT = "CLOSED.TIMEOUT"
    CLOSED_TEARDOWN = "CLOSED.TEARDOWN"


PENDING_SELECTION_TRANSITIONS = {
    PendingSelectionState.NO_RECORD: [PendingSelectionState.PENDING_INITIAL],
    PendingSelectionState.PENDING_INITIAL: [
        PendingSelectionState.PENDING_AWAITING_CHOICE,
        PendingSelectionState.CLOSED_TIMEOUT,
        PendingSelectionState.CLOSED_TEARDOWN,
    ],
    PendingSelectionState.PENDING_AWAITING_CHOICE: [
        PendingSelectionState.TICKET_CREATED,
        PendingSelectionState.CLOSED_INVALID,
        PendingSelectionState.CLOSED_TIMEOUT,
        PendingSelectionState.CLOSED_TEARDOWN,
    ],
    # מצבים סופיים - הרשומה נמחקה
    PendingSelectionState.TICKET_CREATED: [],
    PendingSelectionState.CLOSED_INVALID: [],
    PendingSelectionState.CLOSED_TIMEOUT: [],
    PendingSelectionState.CLOSED_TEARDOWN: [],
}

TERMINAL_PENDING_STATES = frozenset(
    state for state, targets in PENDING_SELECTION_TRANSITIONS.items() if not targets
)


def pending_state_of(record: Optional[PendingQueueSelection]) -> PendingSelectionState:
    """Derive the live dialogue state from the stored record"""
    if record is None:
        return PendingSelectionState.NO_RECORD
    if not record.initial_sent:
        return PendingSelectionState.PENDING_INITIAL
    return PendingSelectionState.PENDING_AWAITING_CHOICE


# מעברי סטטוס טיקט שנציג רשאי לבצע
TICKET_TRANSITIONS = {
    TicketStatus.PENDING: [TicketStatus.ATTENDING, TicketStatus.RESOLVED, TicketStatus.PENDING],
    TicketStatus.ATTENDING: [TicketStatus.PENDING, TicketStatus.RESOLVED],
    TicketStatus.RESOLVED: [TicketStatus.PENDING],  # פתיחה מחדש
}


def is_valid_ticket_transition(current: TicketStatus, target: TicketStatus) -> bool:
    return target in TICKET_TRANSITIONS.get(current, [])
