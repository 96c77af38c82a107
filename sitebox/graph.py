"""
LangGraph implementation of the auto-fix state machine.

Nodes:
- classify: Turns the error record into a Classification
- fix_local_import / fix_dependency / fix_syntax / fix_asset: Deterministic repairs
- generative_fix: Fallback for UNKNOWN errors and unfixable ones
- finalize: Settles the phase to FIXED or FIX_FAILED

The graph only repairs; the caller rebuilds once afterwards.
"""

import logging
from typing import Literal

from langgraph.graph import StateGraph, END

from sitebox.errors import ClassificationUnknownError
from sitebox.schemas import ErrorRecord
from sitebox.state import AutoFixState, create_initial_state
from sitebox.sandbox.autofix import AutoFixer, ErrorKind, classify


logger = logging.getLogger(__name__)


KIND_NODES = {
    ErrorKind.MISSING_LOCAL_IMPORT: "fix_local_import",
    ErrorKind.MISSING_DEPENDENCY: "fix_dependency",
    ErrorKind.SYNTAX_ERROR: "fix_syntax",
    ErrorKind.MISSING_ASSET: "fix_asset",
}


# =============================================================================
# GRAPH NODES
# =============================================================================

def classify_node(state: AutoFixState) -> AutoFixState:
    """Classify the error record."""
    classification = classify(state["error"])
    state["classification"] = classification
    state["phase"] = "CLASSIFIED"
    logger.info(
        "Classified error for %s as %s (rule: %s)",
        state["sandbox_id"], classification.kind.value, classification.rule,
    )
    return state


def _make_fix_node(fixer: AutoFixer, kind: ErrorKind):
    def fix_node(state: AutoFixState) -> AutoFixState:
        state["phase"] = "FIX_ATTEMPTED"
        try:
            strategy = fixer.strategy_for(kind)
            outcome = strategy(state["sandbox_id"], state["classification"])
        except ClassificationUnknownError as e:
            logger.info("Escalating %s for %s: %s", kind.value, state["sandbox_id"], e)
            state["escalated"] = True
            state["escalation_reason"] = str(e)
            state["notes"] = state.get("notes", []) + [f"{kind.value}: {e}"]
            return state

        state["outcome"] = outcome
        state["notes"] = state.get("notes", []) + [outcome.message]
        return state

    fix_node.__name__ = KIND_NODES[kind]
    return fix_node


def _make_generative_node(fixer: AutoFixer):
    def generative_fix(state: AutoFixState) -> AutoFixState:
        state["phase"] = "FIX_ATTEMPTED"
        state["escalated"] = True
        if state["classification"].kind is ErrorKind.UNKNOWN:
            state["escalation_reason"] = "Unknown error type"

        outcome = fixer.generative_fix(state["sandbox_id"], state["classification"], state["error"])
        state["outcome"] = outcome
        state["notes"] = state.get("notes", []) + [outcome.message]
        return state

    return generative_fix


def finalize_node(state: AutoFixState) -> AutoFixState:
    """Settle the terminal phase."""
    outcome = state.get("outcome")
    state["phase"] = "FIXED" if outcome is not None and outcome.fixed else "FIX_FAILED"
    logger.info("Auto-fix for %s finished: %s", state["sandbox_id"], state["phase"])
    return state


# =============================================================================
# ROUTING LOGIC
# =============================================================================

def route_by_kind(state: AutoFixState) -> Literal[
    "fix_local_import", "fix_dependency", "fix_syntax", "fix_asset", "generative_fix"
]:
    """Route to the strategy for the classified kind."""
    return KIND_NODES.get(state["classification"].kind, "generative_fix")


def after_fix_route(state: AutoFixState) -> Literal["finalize", "generative_fix"]:
    """After a deterministic strategy, finish or escalate."""
    outcome = state.get("outcome")
    if outcome is not None and outcome.fixed:
        return "finalize"
    return "generative_fix"


# =============================================================================
# BUILD THE GRAPH
# =============================================================================

def build_autofix_graph(fixer: AutoFixer) -> StateGraph:
    """Build the auto-fix state graph around a fixer."""

    graph = StateGraph(AutoFixState)

    graph.add_node("classify", classify_node)
    for kind, name in KIND_NODES.items():
        graph.add_node(name, _make_fix_node(fixer, kind))
    graph.add_node("generative_fix", _make_generative_node(fixer))
    graph.add_node("finalize", finalize_node)

    graph.set_entry_point("classify")

    graph.add_conditional_edges(
        "classify",
        route_by_kind,
        {
            "fix_local_import": "fix_local_import",
            "fix_dependency": "fix_dependency",
            "fix_syntax": "fix_syntax",
            "fix_asset": "fix_asset",
            "generative_fix": "generative_fix",
        }
    )

    for name in KIND_NODES.values():
        graph.add_conditional_edges(
            name,
            after_fix_route,
            {
                "finalize": "finalize",
                "generative_fix": "generative_fix",
            }
        )

    graph.add_edge("generative_fix", "finalize")
    graph.add_edge("finalize", END)

    return graph


def get_compiled_graph(fixer: AutoFixer):
    """Get the compiled graph ready for execution."""
    return build_autofix_graph(fixer).compile()


def run_autofix(compiled_graph, sandbox_id: str, error: ErrorRecord) -> AutoFixState:
    """
    Run one classify-and-repair pass.

    Returns:
        The final AutoFixState; phase is FIXED or FIX_FAILED
    """
    return compiled_graph.invoke(create_initial_state(sandbox_id, error))
