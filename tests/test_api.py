"""
Tests for the FastAPI trigger surface.
"""

import asyncio

import httpx
import pytest
from fastapi.testclient import TestClient
from unittest.mock import patch, AsyncMock

from po_pipeline.api import create_app
from po_pipeline.main import PipelineRuntime
from po_pipeline.schemas.purchase_order import ExtractedPOData, PurchaseOrder
from po_pipeline.schemas.records import EmailAccount, MailProvider
from po_pipeline.storage import InMemoryStorage


TENANT_ID = "tenant-1"


def erp_handler(request: httpx.Request) -> httpx.Response:
    if request.method == "GET":
        return httpx.Response(200, json={"items": []})
    return httpx.Response(200, json={"id": "NS-55"})


@pytest.fixture
def seeded(vendors, netsuite_system):
    storage = InMemoryStorage()

    async def seed():
        for vendor in vendors:
            await storage.create_vendor(vendor)
        await storage.create_erp_system(netsuite_system)
        good = await storage.create_purchase_order(PurchaseOrder.from_extracted(
            TENANT_ID, ExtractedPOData(po_number="100", supplier="Acme Supplies Company", amount=5)
        ))
        bad = await storage.create_purchase_order(PurchaseOrder.from_extracted(
            TENANT_ID, ExtractedPOData(po_number="200", supplier="Acme Supplies Co", amount=5)
        ))
        return good, bad

    good, bad = asyncio.run(seed())
    runtime = PipelineRuntime(storage, transport=httpx.MockTransport(erp_handler))
    return runtime, good, bad


@pytest.fixture
def client(seeded):
    runtime, _, _ = seeded
    with TestClient(create_app(runtime)) as test_client:
        yield test_client


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["poller_running"] is False


def test_process_purchase_order(client, seeded):
    _, good, _ = seeded
    response = client.post(f"/purchase-orders/{good.id}/process")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "completed"
    assert body["erp_push_result"]["erp_id"] == "NS-55"

    logs = client.get(f"/purchase-orders/{good.id}/logs").json()
    assert [entry["stage"] for entry in logs] == [
        "email_detection", "ocr_processing", "data_validation", "erp_formatting", "erp_integration",
    ]

    # Completed purchase orders cannot be processed again
    assert client.post(f"/purchase-orders/{good.id}/process").status_code == 409


def test_review_queue_and_reprocess(client, seeded):
    _, _, bad = seeded
    failed = client.post(f"/purchase-orders/{bad.id}/process").json()
    assert failed["status"] == "failed"

    queue = client.get(f"/tenants/{TENANT_ID}/review-queue").json()
    assert [po["id"] for po in queue] == [bad.id]
    assert "Acme Supplies Company" in queue[0]["failure_reason"]

    response = client.post(f"/purchase-orders/{bad.id}/reprocess", json={"vendorName": "Acme Supplies Company"})
    assert response.status_code == 200
    assert response.json()["status"] == "completed"
    assert client.get(f"/tenants/{TENANT_ID}/review-queue").json() == []

    titles = [n["title"] for n in client.get(f"/tenants/{TENANT_ID}/notifications").json()]
    assert titles == ["PO Processing Failed", "PO Processed Successfully"]


def test_reprocess_requires_failed_status(client, seeded):
    _, good, _ = seeded
    response = client.post(f"/purchase-orders/{good.id}/reprocess", json={})
    assert response.status_code == 409


def test_unknown_purchase_order(client):
    assert client.post("/purchase-orders/missing/process").status_code == 404
    assert client.post("/purchase-orders/missing/reprocess", json={}).status_code == 404
    assert client.get("/purchase-orders/missing/logs").status_code == 404


def test_erp_connection_check(client, netsuite_system):
    response = client.post(f"/erp-systems/{netsuite_system.id}/test")
    assert response.json() == {"success": True, "error": None, "details": {"status": "Connected"}}

    missing = client.post("/erp-systems/missing/test").json()
    assert missing["success"] is False


def test_manual_poll_with_no_accounts(client):
    response = client.post("/poller/run")

    assert response.status_code == 200
    assert response.json()["accounts"] == 0


def test_ai_connection_check(client, seeded, ai_config):
    runtime, _, _ = seeded
    missing = client.post(f"/tenants/{TENANT_ID}/ai-configuration/test").json()
    assert missing == {"success": False, "error": "No active AI configuration", "details": None}

    asyncio.run(runtime.storage.save_ai_configuration(ai_config))
    with patch("po_pipeline.integrations.llm.complete", new=AsyncMock(return_value="Test successful")):
        result = client.post(f"/tenants/{TENANT_ID}/ai-configuration/test").json()

    assert result["success"] is True
    assert result["details"]["model"] == "gpt-4o-mini"


def test_email_accounts_hide_credentials(client, seeded):
    runtime, _, _ = seeded
    asyncio.run(runtime.storage.create_email_account(EmailAccount(
        tenant_id=TENANT_ID, provider=MailProvider.GMAIL, email="po@buyer.com", credentials={"access_token": "secret"}
    )))

    (account,) = client.get(f"/tenants/{TENANT_ID}/email-accounts").json()
    assert account["email"] == "po@buyer.com"
    assert "credentials" not in account


def test_mark_notification_read(client, seeded):
    _, _, bad = seeded
    client.post(f"/purchase-orders/{bad.id}/process")
    (notification,) = client.get(f"/tenants/{TENANT_ID}/notifications").json()
    assert notification["is_read"] is False

    response = client.post(f"/notifications/{notification['id']}/read")
    assert response.status_code == 200
    assert response.json()["is_read"] is True
    assert client.get(f"/tenants/{TENANT_ID}/notifications").json()[0]["is_read"] is True

    assert client.post("/notifications/missing/read").status_code == 404
