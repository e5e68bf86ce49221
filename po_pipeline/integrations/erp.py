"""
ERP adapters.

One adapter per ERP type, all with the same contract: map a validated
purchase order into the target payload and submit it with a single
authenticated HTTP call. Failures come back as results, never exceptions.
"""

import base64
from abc import ABC, abstractmethod
from datetime import date
from typing import Any, Dict, List, Optional, Tuple, Type

import httpx

from po_pipeline.config import get_config
from po_pipeline.exceptions import UnsupportedProviderError
from po_pipeline.schemas.purchase_order import PurchaseOrder
from po_pipeline.schemas.records import ErpSystem, ErpType
from po_pipeline.schemas.results import ErpPushResult, ConnectionTestResult
from po_pipeline.storage import Storage
from po_pipeline.utils import truncate
from po_pipeline.utils.logging import setup_logging, log_agent_action


logger = setup_logging(__name__)
config = get_config()


def _credential(erp_system: ErpSystem, *names: str) -> Optional[str]:
    """First non-empty credential under any of the given keys."""
    for name in names:
        value = erp_system.credentials.get(name)
        if value:
            return str(value)
    return None


def _vendor_for_erp(po: PurchaseOrder) -> Optional[str]:
    """Canonical master-data name when validation matched, else the extracted name."""
    if po.validation_result and po.validation_result.matched_vendor:
        return po.validation_result.matched_vendor.get("name") or po.vendor_name
    return po.vendor_name


class ErpAdapter(ABC):
    """Contract shared by every ERP integration."""

    label = "ERP"

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None, timeout: Optional[float] = None):
        self.transport = transport
        self.timeout = timeout or config.ERP_TIMEOUT_SECONDS

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self.transport, timeout=self.timeout)

    @abstractmethod
    def build_payload(self, po: PurchaseOrder) -> Dict[str, Any]:
        """Target-system payload for a purchase order."""

    @abstractmethod
    def push_request(self, erp_system: ErpSystem) -> Tuple[str, Dict[str, str]]:
        """URL and headers for the create call."""

    @abstractmethod
    def connection_request(self, erp_system: ErpSystem) -> Tuple[str, Dict[str, str]]:
        """URL and headers for a cheap authenticated read."""

    @abstractmethod
    def parse_erp_id(self, body: Dict[str, Any]) -> Optional[str]:
        """Record id from a successful create response."""

    async def push_to_erp(self, po: PurchaseOrder, erp_system: ErpSystem) -> ErpPushResult:
        try:
            payload = self.build_payload(po)
            url, headers = self.push_request(erp_system)
            async with self._client() as client:
                response = await client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"[{self.label}] Request failed for PO {po.display_number}: {e}")
            return ErpPushResult(success=False, error=f"{self.label} request failed: {e}")
        except Exception as e:
            logger.exception(f"[{self.label}] Could not submit PO {po.display_number}: {e}")
            return ErpPushResult(success=False, error=f"{self.label} error: {e}")

        if not response.is_success:
            logger.warning(
                f"[{self.label}] Rejected PO {po.display_number} "
                f"(HTTP {response.status_code}): {truncate(response.text, 200)}"
            )
            return ErpPushResult(
                success=False,
                error=f"{self.label} error: {response.text}",
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError:
            body = {}

        erp_id = self.parse_erp_id(body) if isinstance(body, dict) else None
        log_agent_action(
            logger,
            f"{self.label}Adapter",
            "Purchase order pushed",
            {"po_number": po.po_number, "erp_id": erp_id},
        )
        return ErpPushResult(
            success=True,
            erp_id=erp_id,
            status_code=response.status_code,
            extra={"response": body},
        )

    async def test_connection(self, erp_system: ErpSystem) -> ConnectionTestResult:
        try:
            url, headers = self.connection_request(erp_system)
            async with self._client() as client:
                response = await client.get(url, headers=headers)
        except httpx.HTTPError as e:
            return ConnectionTestResult(success=False, error=f"Connection failed: {e}")

        if response.is_success:
            return ConnectionTestResult(success=True, details={"status": "Connected"})
        return ConnectionTestResult(success=False, error=f"Connection failed: {response.text}")


class NetSuiteAdapter(ErpAdapter):
    """NetSuite SuiteTalk REST."""

    label = "NetSuite"

    @staticmethod
    def map_vendor(vendor_name: Optional[str]) -> Dict[str, str]:
        # Slug stands in for a NetSuite internal-id lookup
        return {"internalId": "-".join((vendor_name or "").lower().split())}

    def build_payload(self, po: PurchaseOrder) -> Dict[str, Any]:
        data = po.extracted_data
        return {
            "entity": self.map_vendor(_vendor_for_erp(po)),
            "trandate": data.date or date.today().isoformat(),
            "memo": f"PO {po.po_number} - Auto-generated from email",
            "currency": po.currency,
            "item": {
                "list": [
                    {
                        "item": item.description,
                        "quantity": item.quantity,
                        "rate": item.unit_price,
                        "amount": item.total_price,
                    }
                    for item in data.line_items
                ]
            },
        }

    def _headers(self, erp_system: ErpSystem) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {_credential(erp_system, 'token', 'access_token')}",
            "NetSuite-Account": _credential(erp_system, "account_id", "accountId") or "",
        }

    def push_request(self, erp_system: ErpSystem) -> Tuple[str, Dict[str, str]]:
        return f"{erp_system.endpoint.rstrip('/')}/services/rest/record/v1/purchaseorder", self._headers(erp_system)

    def connection_request(self, erp_system: ErpSystem) -> Tuple[str, Dict[str, str]]:
        return f"{erp_system.endpoint.rstrip('/')}/services/rest/record/v1/employee", self._headers(erp_system)

    def parse_erp_id(self, body: Dict[str, Any]) -> Optional[str]:
        erp_id = body.get("id")
        return str(erp_id) if erp_id is not None else None


class SapAdapter(ErpAdapter):
    """SAP S/4HANA purchase order OData service."""

    label = "SAP"
    SERVICE_PATH = "/sap/opu/odata/sap/API_PURCHASEORDER_PROCESS_SRV"

    @staticmethod
    def _number(value: Optional[float]) -> str:
        if value is None:
            return "0"
        return f"{value:g}"

    def build_payload(self, po: PurchaseOrder) -> Dict[str, Any]:
        data = po.extracted_data
        return {
            "PurchaseOrder": po.po_number,
            "Supplier": _vendor_for_erp(po),
            "DocumentDate": data.date or date.today().isoformat(),
            "DocumentCurrency": po.currency,
            "PurchaseOrderItem": [
                {
                    "PurchaseOrderItem": str((index + 1) * 10),
                    "Material": item.description,
                    "PurchaseOrderQuantity": self._number(item.quantity),
                    "NetPriceAmount": self._number(item.unit_price),
                    "NetPriceQuantityUnit": "EA",
                }
                for index, item in enumerate(data.line_items)
            ],
        }

    def _headers(self, erp_system: ErpSystem) -> Dict[str, str]:
        basic = _credential(erp_system, "basic_auth", "basicAuth")
        if not basic:
            user = _credential(erp_system, "username", "user") or ""
            password = _credential(erp_system, "password") or ""
            basic = base64.b64encode(f"{user}:{password}".encode()).decode()
        return {"Authorization": f"Basic {basic}"}

    def push_request(self, erp_system: ErpSystem) -> Tuple[str, Dict[str, str]]:
        return f"{erp_system.endpoint.rstrip('/')}{self.SERVICE_PATH}/A_PurchaseOrder", self._headers(erp_system)

    def connection_request(self, erp_system: ErpSystem) -> Tuple[str, Dict[str, str]]:
        return f"{erp_system.endpoint.rstrip('/')}{self.SERVICE_PATH}/$metadata", self._headers(erp_system)

    def parse_erp_id(self, body: Dict[str, Any]) -> Optional[str]:
        erp_id = (body.get("d") or {}).get("PurchaseOrder")
        return str(erp_id) if erp_id is not None else None


class OracleAdapter(ErpAdapter):
    """Oracle Fusion Cloud procurement REST."""

    label = "Oracle"
    RESOURCE_PATH = "/fscmRestApi/resources/11.13.18.05/purchaseOrders"

    def build_payload(self, po: PurchaseOrder) -> Dict[str, Any]:
        return {
            "DocumentNumber": po.po_number,
            "Supplier": _vendor_for_erp(po),
            "CurrencyCode": po.currency or config.DEFAULT_CURRENCY,
            "lines": [
                {
                    "LineNumber": index + 1,
                    "ItemDescription": item.description,
                    "Quantity": item.quantity,
                    "UnitPrice": item.unit_price,
                }
                for index, item in enumerate(po.extracted_data.line_items)
            ],
        }

    def push_request(self, erp_system: ErpSystem) -> Tuple[str, Dict[str, str]]:
        headers = {
            "Authorization": f"Bearer {_credential(erp_system, 'token', 'access_token')}",
            "Content-Type": "application/vnd.oracle.adf.resourceitem+json",
        }
        return f"{erp_system.endpoint.rstrip('/')}{self.RESOURCE_PATH}", headers

    def connection_request(self, erp_system: ErpSystem) -> Tuple[str, Dict[str, str]]:
        headers = {"Authorization": f"Bearer {_credential(erp_system, 'token', 'access_token')}"}
        return f"{erp_system.endpoint.rstrip('/')}{self.RESOURCE_PATH}?limit=1", headers

    def parse_erp_id(self, body: Dict[str, Any]) -> Optional[str]:
        erp_id = body.get("PurchaseOrderId")
        return str(erp_id) if erp_id is not None else None


ERP_ADAPTERS: Dict[ErpType, Type[ErpAdapter]] = {
    ErpType.NETSUITE: NetSuiteAdapter,
    ErpType.SAP: SapAdapter,
    ErpType.ORACLE: OracleAdapter,
}


def get_erp_adapter(erp_type: ErpType, transport: Optional[httpx.AsyncBaseTransport] = None) -> ErpAdapter:
    try:
        adapter_cls = ERP_ADAPTERS[ErpType(erp_type)]
    except (KeyError, ValueError):
        raise UnsupportedProviderError(f"Unsupported ERP type: {erp_type}")
    return adapter_cls(transport=transport)


class ErpService:
    """Selects the tenant's active ERP system and delegates to its adapter."""

    def __init__(self, storage: Storage, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.storage = storage
        self.transport = transport

    async def select_active_erp_system(self, tenant_id: str) -> Optional[ErpSystem]:
        erp_systems: List[ErpSystem] = await self.storage.get_erp_systems(tenant_id)
        return next((erp for erp in erp_systems if erp.is_active), None)

    async def push_to_erp(self, po: PurchaseOrder) -> ErpPushResult:
        erp_system = await self.select_active_erp_system(po.tenant_id)
        if erp_system is None:
            logger.warning(f"No active ERP system configured for tenant {po.tenant_id}")
            return ErpPushResult(success=False, error="No active ERP system configured")

        try:
            adapter = get_erp_adapter(erp_system.type, transport=self.transport)
        except UnsupportedProviderError as e:
            return ErpPushResult(success=False, error=str(e))

        result = await adapter.push_to_erp(po, erp_system)
        result.extra.setdefault("erp_system_id", erp_system.id)
        result.extra.setdefault("erp_type", erp_system.type.value)
        return result

    async def test_erp_connection(self, erp_system: ErpSystem) -> ConnectionTestResult:
        try:
            adapter = get_erp_adapter(erp_system.type, transport=self.transport)
        except UnsupportedProviderError as e:
            return ConnectionTestResult(success=False, error=str(e))
        return await adapter.test_connection(erp_system)
