"""
Attachment intake.

Turns one classified email into purchase orders: extract text from each
supported attachment, extract structured data with the LLM, create a
pending PO and hand it to the orchestrator. One bad attachment never
stops the others.
"""

from typing import List

from po_pipeline.agents.document_intelligence import StructuredDataExtractor
from po_pipeline.agents.email_classifier import EmailClassifier
from po_pipeline.config import get_config
from po_pipeline.integrations.mail import MailAttachment, MailMessage
from po_pipeline.orchestrator import ProcessingOrchestrator, StageLogger
from po_pipeline.schemas.purchase_order import (
    PurchaseOrder,
    AttachmentRecord,
    AttachmentStatus,
    EmailReference,
)
from po_pipeline.schemas.records import EmailAccount, ProcessingStage
from po_pipeline.storage import Storage
from po_pipeline.utils.confidence import confidence_level_name
from po_pipeline.utils.logging import setup_logging, log_agent_action
from po_pipeline.utils.ocr import TextExtractor, assess_text_quality, is_supported_attachment


logger = setup_logging(__name__)
config = get_config()


class EmailIntake:
    def __init__(
        self,
        storage: Storage,
        classifier: EmailClassifier,
        text_extractor: TextExtractor,
        structured_extractor: StructuredDataExtractor,
        orchestrator: ProcessingOrchestrator,
        stage_logger: StageLogger = None,
    ):
        self.storage = storage
        self.classifier = classifier
        self.text_extractor = text_extractor
        self.structured_extractor = structured_extractor
        self.orchestrator = orchestrator
        self.stage_logger = stage_logger or StageLogger(storage)

    async def process_email(
        self,
        account: EmailAccount,
        message: MailMessage,
        attachments: List[MailAttachment],
    ) -> List[PurchaseOrder]:
        """
        Classify the email and process its attachments.

        Returns:
            Purchase orders created from this email, in their post-processing state
        """
        names = [a.filename for a in attachments]
        is_po = await self.classifier.is_purchase_order_email(
            account.tenant_id, message.subject, message.sender, names
        )
        if not is_po:
            logger.info(f"Email not PO-related, skipping: {message.subject}")
            return []

        purchase_orders = []
        for attachment in attachments:
            if not is_supported_attachment(attachment.content_type, attachment.filename):
                logger.debug(f"Skipping unsupported attachment {attachment.filename} ({attachment.content_type})")
                continue
            try:
                po = await self._process_attachment(account, message, attachment)
            except Exception as e:
                logger.exception(f"Error processing attachment {attachment.filename}: {e}")
                await self._record_attachment(
                    account, message, attachment, AttachmentStatus.FAILED, error_message=str(e)
                )
                continue
            if po is not None:
                purchase_orders.append(po)

        return purchase_orders

    def _reference(self, account: EmailAccount, message: MailMessage, attachment: MailAttachment) -> EmailReference:
        return EmailReference(
            account_id=account.id,
            message_id=message.message_id,
            subject=message.subject,
            sender=message.sender,
            received_at=message.received_at,
            attachment_name=attachment.filename,
        )

    async def _record_attachment(
        self,
        account: EmailAccount,
        message: MailMessage,
        attachment: MailAttachment,
        status: AttachmentStatus,
        **fields,
    ) -> AttachmentRecord:
        return await self.storage.create_attachment_record(AttachmentRecord(
            tenant_id=account.tenant_id,
            email=self._reference(account, message, attachment),
            attachment_name=attachment.filename,
            content_type=attachment.content_type,
            processing_status=status,
            **fields,
        ))

    async def _process_attachment(
        self,
        account: EmailAccount,
        message: MailMessage,
        attachment: MailAttachment,
    ):
        logger.info(f"Processing attachment: {attachment.filename}")
        tenant_id = account.tenant_id

        text = await self.text_extractor.extract_text(attachment.data, attachment.content_type, attachment.filename)
        if not text.strip():
            await self.stage_logger.record_failure(
                tenant_id,
                ProcessingStage.OCR_PROCESSING,
                f"No text extracted from {attachment.filename}",
                details={"attachment": attachment.filename, "message_id": message.message_id},
            )
            await self._record_attachment(
                account, message, attachment, AttachmentStatus.FAILED, error_message="No text extracted"
            )
            return None

        quality = assess_text_quality(text)
        if not quality.is_valid:
            logger.warning(f"Low quality text from {attachment.filename}: {'; '.join(quality.issues)}")

        ai_config = await self.storage.get_active_ai_configuration(tenant_id)
        outcome = await self.structured_extractor.run(text, ai_config)
        if outcome.data is None:
            await self.stage_logger.record_failure(
                tenant_id,
                ProcessingStage.DATA_EXTRACTION,
                outcome.error or "Structured extraction failed",
                details={"attachment": attachment.filename, "message_id": message.message_id},
            )
            await self._record_attachment(
                account,
                message,
                attachment,
                AttachmentStatus.FAILED,
                extracted_text=text,
                text_quality=quality,
                error_message=outcome.error,
            )
            return None

        po = await self.storage.create_purchase_order(PurchaseOrder.from_extracted(
            tenant_id,
            outcome.data,
            source_email=self._reference(account, message, attachment),
            default_currency=config.DEFAULT_CURRENCY,
        ))
        await self._record_attachment(
            account,
            message,
            attachment,
            AttachmentStatus.COMPLETED,
            extracted_text=text,
            text_quality=quality,
            llm_response=outcome.data.model_dump(mode="json"),
            purchase_order_id=po.id,
        )
        log_agent_action(
            logger,
            "EmailIntake",
            "Purchase order created",
            {
                "purchase_order_id": po.id,
                "po_number": po.po_number,
                "attachment": attachment.filename,
                "text_quality": confidence_level_name(quality.confidence),
            },
            quality.confidence,
        )

        return await self.orchestrator.process_purchase_order(po.id)
