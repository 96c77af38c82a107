"""
State definitions for the auto-fix LangGraph workflow.
"""

from typing import List, Literal, Optional, TypedDict

from sitebox.schemas import ErrorRecord
from sitebox.sandbox.autofix import Classification, FixOutcome


Phase = Literal["UNCLASSIFIED", "CLASSIFIED", "FIX_ATTEMPTED", "FIXED", "FIX_FAILED"]


class AutoFixState(TypedDict, total=False):
    """
    Typed state dictionary for the auto-fix workflow.

    This state is passed between nodes and updated as the graph executes.
    """
    # Input
    sandbox_id: str
    error: ErrorRecord

    # Classification
    classification: Optional[Classification]

    # Repair
    phase: Phase
    outcome: Optional[FixOutcome]
    escalated: bool
    escalation_reason: Optional[str]

    # Notes from every strategy tried, in order
    notes: List[str]


def create_initial_state(sandbox_id: str, error: ErrorRecord) -> AutoFixState:
    """
    Create an initial state for the graph.

    Args:
        sandbox_id: Sandbox whose build failed
        error: The failure to classify and repair

    Returns:
        Initialized AutoFixState
    """
    return AutoFixState(
        sandbox_id=sandbox_id,
        error=error,
        classification=None,
        phase="UNCLASSIFIED",
        outcome=None,
        escalated=False,
        escalation_reason=None,
        notes=[],
    )
