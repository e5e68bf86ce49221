"""
State flowing through the processing graph for one purchase order.
Each node reads what it needs, persists its changes and returns updates.
"""

from typing import Optional, Dict, Any
from pydantic import BaseModel

from po_pipeline.schemas.purchase_order import PurchaseOrder
from po_pipeline.schemas.results import VendorValidationResult, ErpPushResult


class ProcessingState(BaseModel):
    """
    Working state for validation -> formatting -> integration.

    ``purchase_order`` always mirrors the latest persisted record.
    ``failure_reason`` is set by the node that moved the PO to failed.
    """

    purchase_order: PurchaseOrder

    # Validation phase
    validation_result: Optional[VendorValidationResult] = None

    # Formatting phase
    formatted_data: Optional[Dict[str, Any]] = None

    # Integration phase
    erp_result: Optional[ErpPushResult] = None

    failure_reason: Optional[str] = None

    @property
    def halted(self) -> bool:
        return self.failure_reason is not None

    def get_summary(self) -> Dict[str, Any]:
        """Get a summary of the current state."""
        return {
            "purchase_order_id": self.purchase_order.id,
            "status": self.purchase_order.status.value,
            "vendor_valid": self.validation_result.is_valid if self.validation_result else None,
            "formatted": self.formatted_data is not None,
            "erp_success": self.erp_result.success if self.erp_result else None,
            "failure_reason": self.failure_reason,
        }
