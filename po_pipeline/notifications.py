"""
Notification sink.
Records user-facing notifications; delivery (UI push, email) happens elsewhere.
"""

from typing import Optional

from po_pipeline.schemas.purchase_order import PurchaseOrder
from po_pipeline.schemas.records import EmailAccount, Notification, NotificationType
from po_pipeline.storage import Storage
from po_pipeline.utils.logging import setup_logging


logger = setup_logging(__name__)


class NotificationService:
    def __init__(self, storage: Storage):
        self.storage = storage

    async def notify(
        self,
        tenant_id: str,
        type: NotificationType,
        title: str,
        message: str,
        related_entity: Optional[str] = None,
    ) -> Notification:
        notification = await self.storage.create_notification(Notification(
            tenant_id=tenant_id,
            type=type,
            title=title,
            message=message,
            related_entity=related_entity,
        ))
        logger.info(f"Notification [{type.value}] for tenant {tenant_id}: {title}")
        return notification

    async def notify_po_success(self, po: PurchaseOrder) -> Notification:
        return await self.notify(
            po.tenant_id,
            NotificationType.SUCCESS,
            "PO Processed Successfully",
            f"Purchase Order {po.display_number} has been successfully processed and pushed to ERP system.",
            related_entity=po.id,
        )

    async def notify_po_failure(self, po: PurchaseOrder, reason: str) -> Notification:
        return await self.notify(
            po.tenant_id,
            NotificationType.FAILURE,
            "PO Processing Failed",
            f"Purchase Order {po.display_number} failed to process: {reason}",
            related_entity=po.id,
        )

    async def notify_reconnect_required(self, account: EmailAccount, error: str) -> Notification:
        return await self.notify(
            account.tenant_id,
            NotificationType.WARNING,
            "Email Account Needs Reconnection",
            f"Could not access {account.email}: {error}. Please reconnect the account.",
            related_entity=account.id,
        )

    async def notify_email_check_failed(self, account: EmailAccount, error: str) -> Notification:
        return await self.notify(
            account.tenant_id,
            NotificationType.FAILURE,
            "Email Check Failed",
            f"Failed to check emails for {account.email}: {error}",
            related_entity=account.id,
        )
