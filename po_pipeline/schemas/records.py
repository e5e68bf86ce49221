"""
Tenant-owned records the pipeline reads and writes.
Mirrors the persisted rows: accounts, vendors, AI/ERP configuration,
processing logs and notifications.
"""

import uuid
from enum import Enum
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field
from datetime import datetime


def new_id() -> str:
    return uuid.uuid4().hex


class MailProvider(str, Enum):
    GMAIL = "gmail"
    OUTLOOK = "outlook"
    IMAP = "imap"


class ErpType(str, Enum):
    NETSUITE = "netsuite"
    SAP = "sap"
    ORACLE = "oracle"


class AiProvider(str, Enum):
    OPENAI = "openai"
    CUSTOM = "custom"  # OpenAI-compatible endpoint
    GEMINI = "gemini"


class ProcessingStage(str, Enum):
    EMAIL_DETECTION = "email_detection"
    OCR_PROCESSING = "ocr_processing"
    DATA_EXTRACTION = "data_extraction"
    DATA_VALIDATION = "data_validation"
    ERP_FORMATTING = "erp_formatting"
    ERP_INTEGRATION = "erp_integration"


class StageStatus(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"


class NotificationType(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    WARNING = "warning"


class EmailAccount(BaseModel):
    """A connected mailbox."""
    id: str = Field(default_factory=new_id)
    tenant_id: str
    provider: MailProvider
    email: str
    # gmail/outlook: access_token, refresh_token
    # imap: host, port, user, password, tls
    credentials: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    # Set when the provider refuses the stored credentials; cleared once they are replaced
    needs_reconnect: bool = False
    last_checked: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Vendor(BaseModel):
    """Vendor master data (read-only for the pipeline)."""
    id: str = Field(default_factory=new_id)
    tenant_id: str
    name: str
    alternate_names: List[str] = Field(default_factory=list)
    address: Optional[str] = None
    tax_id: Optional[str] = None
    is_active: bool = True


class AiConfiguration(BaseModel):
    """A tenant's LLM provider settings. At most one is active per tenant."""
    id: str = Field(default_factory=new_id)
    tenant_id: str
    provider: AiProvider
    model_name: str
    api_key: Optional[str] = None
    endpoint: Optional[str] = None  # custom providers only
    configuration: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool = False


class ErpSystem(BaseModel):
    """A tenant's ERP endpoint. The first active one is used."""
    id: str = Field(default_factory=new_id)
    tenant_id: str
    name: str
    type: ErpType
    endpoint: str
    credentials: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    last_sync: Optional[datetime] = None


class ProcessingLog(BaseModel):
    """
    One record per (purchase order, stage, attempt).

    Created with status ``started`` at stage entry and updated in place
    at stage exit.
    """
    id: str = Field(default_factory=new_id)
    tenant_id: str
    purchase_order_id: Optional[str] = None  # email-level failures precede PO creation
    stage: ProcessingStage
    status: StageStatus = StageStatus.STARTED
    start_time: datetime = Field(default_factory=datetime.utcnow)
    end_time: Optional[datetime] = None
    duration_ms: Optional[int] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status != StageStatus.STARTED


class Notification(BaseModel):
    id: str = Field(default_factory=new_id)
    tenant_id: str
    type: NotificationType
    title: str
    message: str
    related_entity: Optional[str] = None
    is_read: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)
