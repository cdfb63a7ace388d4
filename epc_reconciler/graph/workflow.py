"""LangGraph workflow for property reconciliation."""

from langgraph.graph import END, StateGraph

from epc_reconciler.graph.nodes import (
    check_register,
    embed_epc_image,
    image_ocr,
    lookup_address,
    merge_listing_data,
    pdf_ocr,
    reevaluate_suggestions,
    route_after_register,
    should_lookup_address,
)
from epc_reconciler.graph.state import ReconciliationState


def create_reconciliation_graph():
    """Create the reconciliation workflow graph."""

    # Build the graph
    workflow = StateGraph(ReconciliationState)

    # Add nodes
    workflow.add_node("merge_listing_data", merge_listing_data)
    workflow.add_node("lookup_address", lookup_address)
    workflow.add_node("check_register", check_register)
    workflow.add_node("embed_epc_image", embed_epc_image)
    workflow.add_node("image_ocr", image_ocr)
    workflow.add_node("pdf_ocr", pdf_ocr)
    workflow.add_node("reevaluate_suggestions", reevaluate_suggestions)

    # Set entry point
    workflow.set_entry_point("merge_listing_data")

    # Sale-history lookup only when the address still needs it
    workflow.add_conditional_edges(
        "merge_listing_data",
        should_lookup_address,
        {
            "lookup": "lookup_address",
            "skip": "check_register",
        },
    )
    workflow.add_edge("lookup_address", "check_register")

    # A register-confirmed EPC needs no OCR
    workflow.add_conditional_edges(
        "check_register",
        route_after_register,
        {
            "resolved": END,
            "unresolved": "embed_epc_image",
        },
    )
    workflow.add_edge("embed_epc_image", "image_ocr")
    workflow.add_edge("image_ocr", "pdf_ocr")
    workflow.add_edge("pdf_ocr", "reevaluate_suggestions")
    workflow.add_edge("reevaluate_suggestions", END)

    return workflow.compile()


# Compiled graph instance
reconciliation_graph = create_reconciliation_graph()
