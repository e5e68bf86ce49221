"""
Processing Orchestrator

Drives one purchase order through the ordered stages, bracketing each with
a started/terminal ProcessingLog pair, and moves the PO through
pending -> processing -> completed | failed (human review).
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Optional

from po_pipeline.agents.document_intelligence import merge_extracted_data
from po_pipeline.agents.vendor_validation import validate_vendor, describe_validation_failure
from po_pipeline.config import get_config
from po_pipeline.exceptions import PurchaseOrderNotFoundError, InvalidTransitionError
from po_pipeline.graph import build_processing_graph
from po_pipeline.integrations.erp import ErpService
from po_pipeline.notifications import NotificationService
from po_pipeline.schemas.purchase_order import PurchaseOrder, POStatus
from po_pipeline.schemas.records import ProcessingLog, ProcessingStage, StageStatus
from po_pipeline.state import ProcessingState
from po_pipeline.storage import Storage
from po_pipeline.utils.logging import setup_logging, log_stage_event, log_agent_action


logger = setup_logging(__name__)
config = get_config()

INTERRUPTED_REASON = "Processing interrupted before completion"


class StageHandle:
    """An open stage; closed exactly once with complete() or fail()."""

    def __init__(self, stage_logger: "StageLogger", entry: ProcessingLog):
        self.stage_logger = stage_logger
        self.entry = entry
        self.finished = False

    async def complete(self, details: Optional[Dict[str, Any]] = None) -> ProcessingLog:
        self.entry = await self.stage_logger.finish(self.entry, StageStatus.COMPLETED, details=details)
        self.finished = True
        return self.entry

    async def fail(self, error: str, details: Optional[Dict[str, Any]] = None) -> ProcessingLog:
        self.entry = await self.stage_logger.finish(
            self.entry, StageStatus.FAILED, details=details, error_message=error
        )
        self.finished = True
        return self.entry


class StageLogger:
    """Writes the per-stage ProcessingLog records."""

    def __init__(self, storage: Storage):
        self.storage = storage

    async def start(
        self,
        tenant_id: str,
        stage: ProcessingStage,
        purchase_order_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> ProcessingLog:
        entry = await self.storage.create_processing_log(ProcessingLog(
            tenant_id=tenant_id,
            purchase_order_id=purchase_order_id,
            stage=stage,
            details=details or {},
        ))
        log_stage_event(logger, entry)
        return entry

    async def finish(
        self,
        entry: ProcessingLog,
        status: StageStatus,
        details: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> ProcessingLog:
        end_time = datetime.utcnow()
        updated = await self.storage.update_processing_log(
            entry.id,
            status=status,
            end_time=end_time,
            duration_ms=int((end_time - entry.start_time).total_seconds() * 1000),
            details={**entry.details, **(details or {})},
            error_message=error_message,
        )
        log_stage_event(logger, updated)
        return updated

    async def record_failure(
        self,
        tenant_id: str,
        stage: ProcessingStage,
        error: str,
        purchase_order_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> ProcessingLog:
        """A stage that failed on entry; still logged as a started/failed pair."""
        entry = await self.start(tenant_id, stage, purchase_order_id, details)
        return await self.finish(entry, StageStatus.FAILED, error_message=error)

    @asynccontextmanager
    async def track(
        self,
        tenant_id: str,
        stage: ProcessingStage,
        purchase_order_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        """
        Bracket a block with a stage log.

        Completes the stage on normal exit unless the block closed it already.
        An exception closes it as failed and propagates. Cancellation does the same.
        """
        handle = StageHandle(self, await self.start(tenant_id, stage, purchase_order_id, details))
        try:
            yield handle
        except asyncio.CancelledError:
            if not handle.finished:
                await handle.fail(INTERRUPTED_REASON)
            raise
        except Exception as e:
            if not handle.finished:
                await handle.fail(str(e) or e.__class__.__name__)
            raise
        if not handle.finished:
            await handle.complete()


def format_for_erp(po: PurchaseOrder, processed_at: Optional[datetime] = None) -> Dict[str, Any]:
    """Flatten a purchase order into the ERP-ready record. Pure transform."""
    data = po.extracted_data
    formatted = {**data.extra, **data.model_dump(mode="json", exclude={"extra"})}
    formatted.update({
        "po_number": po.po_number,
        "vendor_name": po.vendor_name,
        "total_amount": float(po.total_amount) if po.total_amount is not None else None,
        "currency": po.currency,
        "formatted_for_erp": True,
        "processed_at": (processed_at or datetime.utcnow()).isoformat(),
    })
    return formatted


class ProcessingOrchestrator:
    """State machine for one purchase order at a time."""

    def __init__(
        self,
        storage: Storage,
        erp_service: ErpService,
        notifications: NotificationService,
        stage_logger: Optional[StageLogger] = None,
    ):
        self.storage = storage
        self.erp_service = erp_service
        self.notifications = notifications
        self.stage_logger = stage_logger or StageLogger(storage)
        self.graph = build_processing_graph(self)

    async def _fail_purchase_order(self, po: PurchaseOrder, reason: str, **changes) -> PurchaseOrder:
        po = await self.storage.update_purchase_order(
            po.id,
            status=POStatus.FAILED,
            human_review_required=True,
            failure_reason=reason,
            **changes,
        )
        await self.notifications.notify_po_failure(po, reason)
        logger.warning(f"PO {po.display_number} flagged for human review: {reason}")
        return po

    # Graph nodes

    async def data_validation_node(self, state: ProcessingState) -> Dict[str, Any]:
        po = state.purchase_order
        async with self.stage_logger.track(
            po.tenant_id, ProcessingStage.DATA_VALIDATION, po.id, {"vendor_name": po.vendor_name}
        ) as stage:
            vendors = await self.storage.get_vendors(po.tenant_id)
            result = validate_vendor(po.vendor_name, vendors)
            details = {"confidence": result.confidence, "suggestions": result.suggestions}
            if result.is_valid:
                await stage.complete({**details, "matched_vendor": result.matched_vendor.get("name")})
            else:
                reason = result.reason or describe_validation_failure(po.vendor_name, result)
                await stage.fail(reason, details)

        if result.is_valid:
            po = await self.storage.update_purchase_order(po.id, validation_result=result)
            return {"purchase_order": po, "validation_result": result}

        po = await self._fail_purchase_order(po, reason, validation_result=result)
        return {"purchase_order": po, "validation_result": result, "failure_reason": reason}

    async def erp_formatting_node(self, state: ProcessingState) -> Dict[str, Any]:
        po = state.purchase_order
        async with self.stage_logger.track(po.tenant_id, ProcessingStage.ERP_FORMATTING, po.id) as stage:
            formatted = format_for_erp(po)
            extracted = po.extracted_data.model_copy(update={
                "extra": {
                    **po.extracted_data.extra,
                    "formatted_for_erp": True,
                    "processed_at": formatted["processed_at"],
                }
            })
            po = await self.storage.update_purchase_order(po.id, extracted_data=extracted)
            await stage.complete({"line_items": len(extracted.line_items)})

        return {"purchase_order": po, "formatted_data": formatted}

    async def erp_integration_node(self, state: ProcessingState) -> Dict[str, Any]:
        po = state.purchase_order
        async with self.stage_logger.track(po.tenant_id, ProcessingStage.ERP_INTEGRATION, po.id) as stage:
            result = await self.erp_service.push_to_erp(po)
            if result.success:
                await stage.complete({"erp_id": result.erp_id})
            else:
                await stage.fail(result.error or "Unknown ERP error", {"status_code": result.status_code})

        if result.success:
            po = await self.storage.update_purchase_order(
                po.id,
                status=POStatus.COMPLETED,
                erp_push_result=result,
                human_review_required=False,
                failure_reason=None,
                processed_at=datetime.utcnow(),
            )
            await self.notifications.notify_po_success(po)
            log_agent_action(
                logger,
                "ProcessingOrchestrator",
                "PO completed",
                {"purchase_order_id": po.id, "erp_id": result.erp_id},
            )
            return {"purchase_order": po, "erp_result": result}

        reason = f"ERP Integration failed: {result.error}"
        po = await self._fail_purchase_order(po, reason, erp_push_result=result)
        return {"purchase_order": po, "erp_result": result, "failure_reason": reason}

    # Entry points

    async def _run_stages(self, po: PurchaseOrder) -> PurchaseOrder:
        result = await self.graph.ainvoke(ProcessingState(purchase_order=po))
        final = result if isinstance(result, ProcessingState) else ProcessingState(**result)
        logger.debug(f"Processing summary: {final.get_summary()}")

        current = await self.storage.get_purchase_order(po.id)
        if current.status == POStatus.PROCESSING:
            # Every path through the graph must leave a terminal status
            raise InvalidTransitionError(f"Processing of PO {current.display_number} ended without a terminal state")
        return current

    async def _handle_unexpected_error(self, purchase_order_id: str, error: Exception) -> PurchaseOrder:
        logger.exception(f"Unexpected error processing PO {purchase_order_id}: {error}")
        po = await self.storage.get_purchase_order(purchase_order_id)
        if po.status == POStatus.FAILED:
            return po
        reason = f"Unexpected error: {str(error) or error.__class__.__name__}"
        return await self._fail_purchase_order(po, reason)

    async def _handle_interruption(self, purchase_order_id: str) -> None:
        """Cancelled mid-pipeline (usually shutdown). Leave the PO reviewable, then let the cancel through."""
        po = await self.storage.get_purchase_order(purchase_order_id)
        if po is not None and po.status == POStatus.PROCESSING:
            await self._fail_purchase_order(po, INTERRUPTED_REASON)

    async def process_purchase_order(self, purchase_order_id: str) -> PurchaseOrder:
        """
        Run a pending PO through every stage.
        Never leaves the PO in ``processing``.
        """
        po = await self.storage.get_purchase_order(purchase_order_id)
        if po is None:
            raise PurchaseOrderNotFoundError(purchase_order_id)
        if po.status != POStatus.PENDING:
            raise InvalidTransitionError(
                f"PO {po.display_number} is {po.status.value}; only pending purchase orders can be processed"
            )

        po = await self.storage.update_purchase_order(purchase_order_id, status=POStatus.PROCESSING)
        logger.info(f"Processing PO {po.display_number} ({po.id})")

        try:
            source = po.source_email
            # Both happened before the PO existed
            async with self.stage_logger.track(
                po.tenant_id,
                ProcessingStage.EMAIL_DETECTION,
                po.id,
                {"subject": source.subject if source else None, "retroactive": True},
            ):
                pass
            async with self.stage_logger.track(
                po.tenant_id,
                ProcessingStage.OCR_PROCESSING,
                po.id,
                {"attachment": source.attachment_name if source else None, "retroactive": True},
            ):
                pass

            return await self._run_stages(po)
        except asyncio.CancelledError:
            await self._handle_interruption(purchase_order_id)
            raise
        except Exception as e:
            return await self._handle_unexpected_error(purchase_order_id, e)

    async def reprocess_failed_po(self, purchase_order_id: str, updated_data: Optional[Dict[str, Any]] = None) -> PurchaseOrder:
        """
        Merge reviewer corrections and re-run from validation.

        Raises:
            PurchaseOrderNotFoundError: unknown id
            InvalidTransitionError: the PO is not failed
        """
        po = await self.storage.get_purchase_order(purchase_order_id)
        if po is None:
            raise PurchaseOrderNotFoundError(purchase_order_id)
        if po.status != POStatus.FAILED:
            raise InvalidTransitionError(
                f"PO {po.display_number} is {po.status.value}; only failed purchase orders can be reprocessed"
            )

        po.extracted_data = merge_extracted_data(po.extracted_data, updated_data or {})
        po.sync_from_extracted(config.DEFAULT_CURRENCY)

        po = await self.storage.update_purchase_order(
            purchase_order_id,
            extracted_data=po.extracted_data,
            po_number=po.po_number,
            vendor_name=po.vendor_name,
            vendor_address=po.vendor_address,
            total_amount=po.total_amount,
            currency=po.currency,
            status=POStatus.PROCESSING,
            human_review_required=False,
            failure_reason=None,
            validation_result=None,
            erp_push_result=None,
            processed_at=None,
        )
        logger.info(f"Reprocessing PO {po.display_number} with corrections: {sorted((updated_data or {}).keys())}")

        try:
            return await self._run_stages(po)
        except asyncio.CancelledError:
            await self._handle_interruption(purchase_order_id)
            raise
        except Exception as e:
            return await self._handle_unexpected_error(purchase_order_id, e)
