"""
FastAPI trigger surface for the purchase-order pipeline.
Can be run with: uvicorn po_pipeline.api:app --reload
"""

from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Body, Request
from fastapi.responses import JSONResponse

from po_pipeline import __version__
from po_pipeline.config import get_config
from po_pipeline.exceptions import PurchaseOrderNotFoundError, InvalidTransitionError
from po_pipeline.main import PipelineRuntime, create_runtime
from po_pipeline.utils.logging import setup_logging


logger = setup_logging(__name__)
config = get_config()


def create_app(runtime: Optional[PipelineRuntime] = None) -> FastAPI:
    """
    Build the API application.

    Args:
        runtime: Pre-built runtime to serve. One is created on startup when omitted.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.runtime = runtime or await create_runtime()
        await app.state.runtime.start()
        try:
            yield
        finally:
            await app.state.runtime.stop()

    app = FastAPI(
        title="Purchase Order Pipeline API",
        description="Email-to-ERP purchase order intake",
        version=__version__,
        lifespan=lifespan,
    )

    @app.exception_handler(PurchaseOrderNotFoundError)
    async def not_found_handler(request: Request, exc: PurchaseOrderNotFoundError):
        return JSONResponse(content={"error": str(exc)}, status_code=404)

    @app.exception_handler(InvalidTransitionError)
    async def invalid_transition_handler(request: Request, exc: InvalidTransitionError):
        return JSONResponse(content={"error": str(exc)}, status_code=409)

    @app.post("/purchase-orders/{purchase_order_id}/process")
    async def process_purchase_order(purchase_order_id: str, request: Request):
        """Run a pending purchase order through validation and ERP push."""
        po = await request.app.state.runtime.process_purchase_order(purchase_order_id)
        return po.model_dump(mode="json")

    @app.post("/purchase-orders/{purchase_order_id}/reprocess")
    async def reprocess_purchase_order(
        purchase_order_id: str,
        request: Request,
        updated_data: Optional[Dict[str, Any]] = Body(None),
    ):
        """Apply reviewer corrections to a failed purchase order and re-run it."""
        po = await request.app.state.runtime.reprocess_purchase_order(purchase_order_id, updated_data or {})
        return po.model_dump(mode="json")

    @app.get("/purchase-orders/{purchase_order_id}")
    async def get_purchase_order(purchase_order_id: str, request: Request):
        po = await request.app.state.runtime.get_purchase_order(purchase_order_id)
        return po.model_dump(mode="json")

    @app.get("/purchase-orders/{purchase_order_id}/logs")
    async def get_processing_logs(purchase_order_id: str, request: Request):
        runtime = request.app.state.runtime
        await runtime.get_purchase_order(purchase_order_id)
        logs = await runtime.storage.list_processing_logs(purchase_order_id=purchase_order_id)
        return [entry.model_dump(mode="json") for entry in logs]

    @app.get("/tenants/{tenant_id}/review-queue")
    async def get_review_queue(tenant_id: str, request: Request):
        queue = await request.app.state.runtime.storage.list_review_queue(tenant_id)
        return [po.model_dump(mode="json") for po in queue]

    @app.get("/tenants/{tenant_id}/notifications")
    async def get_notifications(tenant_id: str, request: Request):
        notifications = await request.app.state.runtime.storage.get_notifications(tenant_id)
        return [n.model_dump(mode="json") for n in notifications]

    @app.post("/notifications/{notification_id}/read")
    async def mark_notification_read(notification_id: str, request: Request):
        notification = await request.app.state.runtime.storage.mark_notification_read(notification_id)
        if notification is None:
            return JSONResponse(content={"error": f"Notification not found: {notification_id}"}, status_code=404)
        return notification.model_dump(mode="json")

    @app.post("/erp-systems/{erp_system_id}/test")
    async def test_erp_connection(erp_system_id: str, request: Request):
        result = await request.app.state.runtime.check_erp_connection(erp_system_id)
        return result.model_dump(mode="json")

    @app.post("/tenants/{tenant_id}/ai-configuration/test")
    async def test_ai_connection(tenant_id: str, request: Request):
        result = await request.app.state.runtime.check_ai_connection(tenant_id)
        return result.model_dump(mode="json")

    @app.get("/tenants/{tenant_id}/email-accounts")
    async def get_email_accounts(tenant_id: str, request: Request):
        """Connected mailboxes and when they were last polled. Credentials are never returned."""
        accounts = await request.app.state.runtime.storage.get_email_accounts(tenant_id)
        return [account.model_dump(mode="json", exclude={"credentials"}) for account in accounts]

    @app.post("/poller/run")
    async def run_poller(request: Request):
        """Poll every active mailbox once, outside the regular schedule."""
        return await request.app.state.runtime.poller.poll_once()

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint."""
        return {
            "status": "healthy",
            "version": __version__,
            "poller_running": request.app.state.runtime.poller.is_running,
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host=config.API_HOST,
        port=config.API_PORT,
        log_level=config.LOG_LEVEL.lower(),
    )
