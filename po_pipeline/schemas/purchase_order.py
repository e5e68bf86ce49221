"""
Purchase order schema and data models.
Represents the structured data extracted from a PO document and the
persisted purchase-order record that the orchestrator advances.
"""

from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field
from datetime import datetime

from po_pipeline.schemas.records import new_id
from po_pipeline.schemas.results import VendorValidationResult, ErpPushResult, TextQualityReport


class POStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class AttachmentStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


class LineItem(BaseModel):
    """A single line item on a purchase order."""
    description: str = ""
    quantity: Optional[float] = None
    unit_price: Optional[float] = None
    total_price: Optional[float] = None


class ExtractedPOData(BaseModel):
    """
    Fixed-shape record produced by the LLM extraction step.
    Any field may be None when the document does not contain it.
    """
    po_number: Optional[str] = None
    supplier: Optional[str] = None
    buyer: Optional[str] = None
    date: Optional[str] = None  # YYYY-MM-DD as returned by the model
    amount: Optional[float] = None
    currency: Optional[str] = None
    line_items: List[LineItem] = Field(default_factory=list)
    # Fields the model returned outside the fixed schema, and reviewer corrections
    extra: Dict[str, Any] = Field(default_factory=dict)

    @property
    def vendor_name(self) -> Optional[str]:
        return self.supplier


class EmailReference(BaseModel):
    """Where a purchase order came from."""
    account_id: str
    message_id: str
    subject: str = ""
    sender: str = ""
    received_at: Optional[datetime] = None
    attachment_name: Optional[str] = None


def to_decimal(value: Optional[float]) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError):
        return None


class PurchaseOrder(BaseModel):
    """
    A purchase order record.

    Invariants maintained by the orchestrator:
    - status == completed implies a successful erp_push_result
    - status == failed implies a non-empty failure_reason
    - human_review_required only while status == failed
    """
    id: str = Field(default_factory=new_id)
    tenant_id: str
    po_number: Optional[str] = None
    vendor_name: Optional[str] = None
    vendor_address: Optional[str] = None
    total_amount: Optional[Decimal] = None
    currency: str = "USD"
    status: POStatus = POStatus.PENDING
    human_review_required: bool = False
    failure_reason: Optional[str] = None
    extracted_data: ExtractedPOData = Field(default_factory=ExtractedPOData)
    validation_result: Optional[VendorValidationResult] = None
    erp_push_result: Optional[ErpPushResult] = None
    source_email: Optional[EmailReference] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    processed_at: Optional[datetime] = None

    @property
    def display_number(self) -> str:
        return self.po_number or f"(unnumbered {self.id[:8]})"

    @classmethod
    def from_extracted(
        cls,
        tenant_id: str,
        data: ExtractedPOData,
        source_email: Optional[EmailReference] = None,
        default_currency: str = "USD",
    ) -> "PurchaseOrder":
        po = cls(tenant_id=tenant_id, extracted_data=data, source_email=source_email)
        po.sync_from_extracted(default_currency)
        return po

    def sync_from_extracted(self, default_currency: str = "USD") -> None:
        """Copy header fields from the extracted data onto the record."""
        data = self.extracted_data
        self.po_number = data.po_number
        self.vendor_name = data.supplier
        self.vendor_address = data.extra.get("vendor_address", self.vendor_address)
        self.total_amount = to_decimal(data.amount)
        self.currency = data.currency or default_currency


class AttachmentRecord(BaseModel):
    """Outcome of processing one email attachment, kept for diagnostics."""
    id: str = Field(default_factory=new_id)
    tenant_id: str
    email: EmailReference
    attachment_name: str
    content_type: str = ""
    extracted_text: str = ""
    text_quality: Optional[TextQualityReport] = None
    llm_response: Optional[Dict[str, Any]] = None
    processing_status: AttachmentStatus
    error_message: Optional[str] = None
    purchase_order_id: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
