"""
Main entry point for the purchase-order intake pipeline.

Wires every component into a ``PipelineRuntime`` that owns the mailbox
poller's lifecycle. Run a single poll with ``python -m po_pipeline.main --once``.
"""

import argparse
import asyncio
from typing import Any, Dict, Optional

import httpx

from po_pipeline.agents.document_intelligence import StructuredDataExtractor
from po_pipeline.agents.email_classifier import EmailClassifier
from po_pipeline.config import get_config, Config
from po_pipeline.exceptions import PurchaseOrderNotFoundError
from po_pipeline.intake import EmailIntake
from po_pipeline.integrations.erp import ErpService
from po_pipeline.integrations.llm import check_ai_connection
from po_pipeline.integrations.oauth import OAuthTokenRefresher
from po_pipeline.notifications import NotificationService
from po_pipeline.orchestrator import ProcessingOrchestrator, StageLogger
from po_pipeline.poller import MailboxPoller
from po_pipeline.schemas.purchase_order import PurchaseOrder
from po_pipeline.schemas.results import ConnectionTestResult
from po_pipeline.storage import Storage, InMemoryStorage, load_master_data_from_file
from po_pipeline.utils import dict_to_json_string
from po_pipeline.utils.logging import setup_logging
from po_pipeline.utils.ocr import OcrWorker, TextExtractor


logger = setup_logging(__name__)
config = get_config()


class PipelineRuntime:
    """Top-level owner of the pipeline components and the poller task."""

    def __init__(
        self,
        storage: Storage,
        runtime_config: Optional[Config] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = runtime_config or config
        self.storage = storage

        self.stage_logger = StageLogger(storage)
        self.notifications = NotificationService(storage)
        self.erp_service = ErpService(storage, transport=transport)
        self.orchestrator = ProcessingOrchestrator(
            storage, self.erp_service, self.notifications, stage_logger=self.stage_logger
        )
        self.ocr_worker = OcrWorker()
        self.intake = EmailIntake(
            storage,
            classifier=EmailClassifier(storage),
            text_extractor=TextExtractor(self.ocr_worker),
            structured_extractor=StructuredDataExtractor(),
            orchestrator=self.orchestrator,
            stage_logger=self.stage_logger,
        )
        self.refresher = OAuthTokenRefresher(storage, transport=transport)
        self.poller = MailboxPoller(
            storage,
            self.intake,
            self.refresher,
            self.notifications,
            stage_logger=self.stage_logger,
            interval_seconds=self.config.POLL_INTERVAL_SECONDS,
            initial_delay_seconds=self.config.POLL_INITIAL_DELAY_SECONDS,
            transport=transport,
        )

    async def start(self) -> None:
        if self.config.START_POLLER:
            self.poller.start()
        else:
            logger.info("Mailbox poller disabled by configuration")

    async def stop(self) -> None:
        await self.poller.stop()

    async def process_purchase_order(self, purchase_order_id: str) -> PurchaseOrder:
        return await self.orchestrator.process_purchase_order(purchase_order_id)

    async def reprocess_purchase_order(self, purchase_order_id: str, updated_data: Dict[str, Any]) -> PurchaseOrder:
        return await self.orchestrator.reprocess_failed_po(purchase_order_id, updated_data)

    async def check_erp_connection(self, erp_system_id: str) -> ConnectionTestResult:
        erp_system = await self.storage.get_erp_system(erp_system_id)
        if erp_system is None:
            return ConnectionTestResult(success=False, error=f"ERP system not found: {erp_system_id}")
        return await self.erp_service.test_erp_connection(erp_system)

    async def check_ai_connection(self, tenant_id: str) -> ConnectionTestResult:
        ai_config = await self.storage.get_active_ai_configuration(tenant_id)
        if ai_config is None:
            return ConnectionTestResult(success=False, error="No active AI configuration")
        return await check_ai_connection(ai_config)

    async def get_purchase_order(self, purchase_order_id: str) -> PurchaseOrder:
        po = await self.storage.get_purchase_order(purchase_order_id)
        if po is None:
            raise PurchaseOrderNotFoundError(purchase_order_id)
        return po


async def create_runtime(
    runtime_config: Optional[Config] = None,
    storage: Optional[Storage] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> PipelineRuntime:
    """Build a runtime, seeding an in-memory store from MASTER_DATA_PATH when set."""
    runtime_config = runtime_config or config
    if storage is None:
        storage = InMemoryStorage()
        if runtime_config.MASTER_DATA_PATH:
            await load_master_data_from_file(storage, runtime_config.MASTER_DATA_PATH)
    return PipelineRuntime(storage, runtime_config=runtime_config, transport=transport)


async def run(once: bool = False) -> None:
    runtime = await create_runtime()

    if once:
        stats = await runtime.poller.poll_once()
        print(dict_to_json_string(stats))
        return

    runtime.poller.start()
    try:
        # Poller runs until the process is interrupted
        while runtime.poller.is_running:
            await asyncio.sleep(1)
    finally:
        await runtime.stop()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Purchase-order intake pipeline")
    parser.add_argument("--once", action="store_true", help="Poll every active mailbox once and exit")
    args = parser.parse_args()

    try:
        asyncio.run(run(once=args.once))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
