"""
Persistence for the pipeline.

The pipeline talks to an abstract, tenant-scoped ``Storage``. ``InMemoryStorage``
backs tests and single-process deployments; a relational implementation only
needs to honour the same methods with atomic per-row updates.
"""

import json
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple

from po_pipeline.exceptions import PurchaseOrderNotFoundError, PipelineError
from po_pipeline.schemas.purchase_order import PurchaseOrder, POStatus, AttachmentRecord
from po_pipeline.schemas.records import (
    EmailAccount,
    Vendor,
    AiConfiguration,
    ErpSystem,
    ProcessingLog,
    Notification,
)
from po_pipeline.utils.logging import setup_logging


logger = setup_logging(__name__)


class Storage(ABC):
    """Tenant-scoped CRUD over every record the pipeline touches."""

    # Purchase orders
    @abstractmethod
    async def create_purchase_order(self, po: PurchaseOrder) -> PurchaseOrder: ...

    @abstractmethod
    async def get_purchase_order(self, purchase_order_id: str) -> Optional[PurchaseOrder]: ...

    @abstractmethod
    async def update_purchase_order(self, purchase_order_id: str, **changes) -> PurchaseOrder: ...

    @abstractmethod
    async def list_purchase_orders(self, tenant_id: str, status: Optional[POStatus] = None) -> List[PurchaseOrder]: ...

    async def list_review_queue(self, tenant_id: str) -> List[PurchaseOrder]:
        """The human-review queue is exactly the POs flagged for review."""
        return [po for po in await self.list_purchase_orders(tenant_id) if po.human_review_required]

    # Processing logs
    @abstractmethod
    async def create_processing_log(self, entry: ProcessingLog) -> ProcessingLog: ...

    @abstractmethod
    async def update_processing_log(self, log_id: str, **changes) -> ProcessingLog: ...

    @abstractmethod
    async def list_processing_logs(
        self,
        tenant_id: Optional[str] = None,
        purchase_order_id: Optional[str] = None,
    ) -> List[ProcessingLog]: ...

    # Email accounts
    @abstractmethod
    async def create_email_account(self, account: EmailAccount) -> EmailAccount: ...

    @abstractmethod
    async def get_email_account(self, account_id: str) -> Optional[EmailAccount]: ...

    @abstractmethod
    async def get_email_accounts(self, tenant_id: str) -> List[EmailAccount]: ...

    @abstractmethod
    async def list_active_email_accounts(self) -> List[EmailAccount]: ...

    @abstractmethod
    async def update_email_account(self, account_id: str, **changes) -> EmailAccount: ...

    @abstractmethod
    async def record_processed_message(self, account_id: str, message_id: str) -> None:
        """Remember that a message went through intake, whether or not the provider marked it read."""

    @abstractmethod
    async def is_message_processed(self, account_id: str, message_id: str) -> bool: ...

    # Master data and configuration
    @abstractmethod
    async def create_vendor(self, vendor: Vendor) -> Vendor: ...

    @abstractmethod
    async def get_vendors(self, tenant_id: str) -> List[Vendor]: ...

    @abstractmethod
    async def save_ai_configuration(self, ai_config: AiConfiguration) -> AiConfiguration: ...

    @abstractmethod
    async def get_active_ai_configuration(self, tenant_id: str) -> Optional[AiConfiguration]: ...

    @abstractmethod
    async def create_erp_system(self, erp_system: ErpSystem) -> ErpSystem: ...

    @abstractmethod
    async def get_erp_system(self, erp_system_id: str) -> Optional[ErpSystem]: ...

    @abstractmethod
    async def get_erp_systems(self, tenant_id: str) -> List[ErpSystem]: ...

    # Notifications and attachment records
    @abstractmethod
    async def create_notification(self, notification: Notification) -> Notification: ...

    @abstractmethod
    async def get_notifications(self, tenant_id: str) -> List[Notification]: ...

    @abstractmethod
    async def mark_notification_read(self, notification_id: str) -> Optional[Notification]: ...

    @abstractmethod
    async def create_attachment_record(self, record: AttachmentRecord) -> AttachmentRecord: ...

    @abstractmethod
    async def get_attachment_records(self, tenant_id: str) -> List[AttachmentRecord]: ...


class InMemoryStorage(Storage):
    """
    Dict-backed storage.

    Records are copied on the way in and out so callers never share mutable
    state with the store. No method awaits while holding partial state, so
    each update is atomic on the event loop.
    """

    def __init__(self):
        self._purchase_orders: Dict[str, PurchaseOrder] = {}
        self._logs: Dict[str, ProcessingLog] = {}
        self._accounts: Dict[str, EmailAccount] = {}
        self._vendors: Dict[str, Vendor] = {}
        self._ai_configs: Dict[str, AiConfiguration] = {}
        self._erp_systems: Dict[str, ErpSystem] = {}
        self._notifications: Dict[str, Notification] = {}
        self._attachments: Dict[str, AttachmentRecord] = {}
        self._processed_messages: Set[Tuple[str, str]] = set()

    @staticmethod
    def _copy(record):
        return record.model_copy(deep=True)

    async def create_purchase_order(self, po: PurchaseOrder) -> PurchaseOrder:
        self._purchase_orders[po.id] = self._copy(po)
        return self._copy(po)

    async def get_purchase_order(self, purchase_order_id: str) -> Optional[PurchaseOrder]:
        po = self._purchase_orders.get(purchase_order_id)
        return self._copy(po) if po else None

    async def update_purchase_order(self, purchase_order_id: str, **changes) -> PurchaseOrder:
        current = self._purchase_orders.get(purchase_order_id)
        if current is None:
            raise PurchaseOrderNotFoundError(purchase_order_id)
        changes.setdefault("updated_at", datetime.utcnow())
        updated = current.model_copy(update=changes, deep=True)
        self._purchase_orders[purchase_order_id] = updated
        return self._copy(updated)

    async def list_purchase_orders(self, tenant_id: str, status: Optional[POStatus] = None) -> List[PurchaseOrder]:
        return [
            self._copy(po) for po in self._purchase_orders.values()
            if po.tenant_id == tenant_id and (status is None or po.status == status)
        ]

    async def create_processing_log(self, entry: ProcessingLog) -> ProcessingLog:
        self._logs[entry.id] = self._copy(entry)
        return self._copy(entry)

    async def update_processing_log(self, log_id: str, **changes) -> ProcessingLog:
        current = self._logs.get(log_id)
        if current is None:
            raise PipelineError(f"Processing log not found: {log_id}")
        updated = current.model_copy(update=changes, deep=True)
        self._logs[log_id] = updated
        return self._copy(updated)

    async def list_processing_logs(
        self,
        tenant_id: Optional[str] = None,
        purchase_order_id: Optional[str] = None,
    ) -> List[ProcessingLog]:
        entries = [
            entry for entry in self._logs.values()
            if (tenant_id is None or entry.tenant_id == tenant_id)
            and (purchase_order_id is None or entry.purchase_order_id == purchase_order_id)
        ]
        return [self._copy(entry) for entry in entries]

    async def create_email_account(self, account: EmailAccount) -> EmailAccount:
        self._accounts[account.id] = self._copy(account)
        return self._copy(account)

    async def get_email_account(self, account_id: str) -> Optional[EmailAccount]:
        account = self._accounts.get(account_id)
        return self._copy(account) if account else None

    async def get_email_accounts(self, tenant_id: str) -> List[EmailAccount]:
        return [self._copy(a) for a in self._accounts.values() if a.tenant_id == tenant_id]

    async def list_active_email_accounts(self) -> List[EmailAccount]:
        return [self._copy(a) for a in self._accounts.values() if a.is_active and not a.needs_reconnect]

    async def update_email_account(self, account_id: str, **changes) -> EmailAccount:
        current = self._accounts.get(account_id)
        if current is None:
            raise PipelineError(f"Email account not found: {account_id}")
        updated = current.model_copy(update=changes, deep=True)
        self._accounts[account_id] = updated
        return self._copy(updated)

    async def record_processed_message(self, account_id: str, message_id: str) -> None:
        self._processed_messages.add((account_id, message_id))

    async def is_message_processed(self, account_id: str, message_id: str) -> bool:
        return (account_id, message_id) in self._processed_messages

    async def create_vendor(self, vendor: Vendor) -> Vendor:
        self._vendors[vendor.id] = self._copy(vendor)
        return self._copy(vendor)

    async def get_vendors(self, tenant_id: str) -> List[Vendor]:
        return [self._copy(v) for v in self._vendors.values() if v.tenant_id == tenant_id]

    async def save_ai_configuration(self, ai_config: AiConfiguration) -> AiConfiguration:
        # Activating one configuration deactivates its siblings
        if ai_config.is_active:
            for other_id, other in self._ai_configs.items():
                if other.tenant_id == ai_config.tenant_id and other_id != ai_config.id and other.is_active:
                    self._ai_configs[other_id] = other.model_copy(update={"is_active": False})
        self._ai_configs[ai_config.id] = self._copy(ai_config)
        return self._copy(ai_config)

    async def get_active_ai_configuration(self, tenant_id: str) -> Optional[AiConfiguration]:
        for ai_config in self._ai_configs.values():
            if ai_config.tenant_id == tenant_id and ai_config.is_active:
                return self._copy(ai_config)
        return None

    async def create_erp_system(self, erp_system: ErpSystem) -> ErpSystem:
        self._erp_systems[erp_system.id] = self._copy(erp_system)
        return self._copy(erp_system)

    async def get_erp_system(self, erp_system_id: str) -> Optional[ErpSystem]:
        erp_system = self._erp_systems.get(erp_system_id)
        return self._copy(erp_system) if erp_system else None

    async def get_erp_systems(self, tenant_id: str) -> List[ErpSystem]:
        return [self._copy(e) for e in self._erp_systems.values() if e.tenant_id == tenant_id]

    async def create_notification(self, notification: Notification) -> Notification:
        self._notifications[notification.id] = self._copy(notification)
        return self._copy(notification)

    async def get_notifications(self, tenant_id: str) -> List[Notification]:
        return [self._copy(n) for n in self._notifications.values() if n.tenant_id == tenant_id]

    async def mark_notification_read(self, notification_id: str) -> Optional[Notification]:
        current = self._notifications.get(notification_id)
        if current is None:
            return None
        self._notifications[notification_id] = current.model_copy(update={"is_read": True})
        return self._copy(self._notifications[notification_id])

    async def create_attachment_record(self, record: AttachmentRecord) -> AttachmentRecord:
        self._attachments[record.id] = self._copy(record)
        return self._copy(record)

    async def get_attachment_records(self, tenant_id: str) -> List[AttachmentRecord]:
        return [self._copy(r) for r in self._attachments.values() if r.tenant_id == tenant_id]


async def load_master_data_from_file(storage: Storage, path: str) -> Dict[str, int]:
    """
    Seed accounts, vendors, AI configurations and ERP systems from JSON.

    Expected shape::

        {"email_accounts": [...], "vendors": [...],
         "ai_configurations": [...], "erp_systems": [...]}
    """
    counts = {"email_accounts": 0, "vendors": 0, "ai_configurations": 0, "erp_systems": 0}
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except FileNotFoundError:
        logger.warning(f"Master data file not found: {path}. Nothing loaded.")
        return counts

    for item in data.get("email_accounts", []):
        await storage.create_email_account(EmailAccount(**item))
        counts["email_accounts"] += 1
    for item in data.get("vendors", []):
        await storage.create_vendor(Vendor(**item))
        counts["vendors"] += 1
    for item in data.get("ai_configurations", []):
        await storage.save_ai_configuration(AiConfiguration(**item))
        counts["ai_configurations"] += 1
    for item in data.get("erp_systems", []):
        await storage.create_erp_system(ErpSystem(**item))
        counts["erp_systems"] += 1

    logger.info(f"Loaded master data from {path}: {counts}")
    return counts
