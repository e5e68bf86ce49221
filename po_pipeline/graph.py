"""
LangGraph workflow for the per-PO processing stages.
Defines the graph structure and node routing logic.
"""

from typing import Literal, TYPE_CHECKING
from langgraph.graph import StateGraph, END

from po_pipeline.state import ProcessingState

if TYPE_CHECKING:
    from po_pipeline.orchestrator import ProcessingOrchestrator


def route_after_validation(state: ProcessingState) -> Literal["erp_formatting", "end"]:
    """Only a validated vendor may reach the ERP."""
    if state.halted or not state.validation_result or not state.validation_result.is_valid:
        return "end"
    return "erp_formatting"


def route_after_formatting(state: ProcessingState) -> Literal["erp_integration", "end"]:
    if state.halted:
        return "end"
    return "erp_integration"


def build_processing_graph(orchestrator: "ProcessingOrchestrator"):
    """
    Build the processing workflow.

    Flow:
    1. data_validation - vendor check against master data
    2. erp_formatting - attach ERP-required fields
    3. erp_integration - push to the tenant's active ERP system

    A failed validation ends the run; the node has already flagged the PO.
    """
    graph = StateGraph(ProcessingState)

    graph.add_node("data_validation", orchestrator.data_validation_node)
    graph.add_node("erp_formatting", orchestrator.erp_formatting_node)
    graph.add_node("erp_integration", orchestrator.erp_integration_node)

    graph.set_entry_point("data_validation")

    graph.add_conditional_edges(
        "data_validation",
        route_after_validation,
        {
            "erp_formatting": "erp_formatting",
            "end": END,
        }
    )

    graph.add_conditional_edges(
        "erp_formatting",
        route_after_formatting,
        {
            "erp_integration": "erp_integration",
            "end": END,
        }
    )

    graph.add_edge("erp_integration", END)

    return graph.compile()
