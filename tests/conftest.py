"""
Shared test configuration.
"""

import os

# Must be set before any po_pipeline module reads its config
os.environ.setdefault("ENV", "test")
os.environ.setdefault("LOG_FILE", "")

import pytest

from po_pipeline.schemas.records import AiConfiguration, AiProvider, ErpSystem, ErpType, Vendor
from po_pipeline.storage import InMemoryStorage


TENANT_ID = "tenant-1"


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def vendors():
    return [
        Vendor(tenant_id=TENANT_ID, name="Acme Supplies Company", alternate_names=["Acme Supplies Inc"]),
        Vendor(tenant_id=TENANT_ID, name="Other Corp"),
    ]


@pytest.fixture
def ai_config():
    return AiConfiguration(
        tenant_id=TENANT_ID,
        provider=AiProvider.OPENAI,
        model_name="gpt-4o-mini",
        api_key="sk-test",
        is_active=True,
    )


@pytest.fixture
def netsuite_system():
    return ErpSystem(
        tenant_id=TENANT_ID,
        name="NetSuite Production",
        type=ErpType.NETSUITE,
        endpoint="https://erp.example.com",
        credentials={"token": "erp-token", "account_id": "1234"},
    )
