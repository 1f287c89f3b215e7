"""
State Machine Module for Connection Sessions and Queue-Selection Dialogues
"""
from app.state_machine.states import (
    ConnectionLifecycleState,
    PendingSelectionState,
)
from app.state_machine.manager import PendingSelectionManager

__all__ = ["ConnectionLifecycleState", "PendingSelectionState", "PendingSelectionManager"]
