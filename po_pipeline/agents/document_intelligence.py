"""
Structured-Data Extractor
Turns extracted document text into a fixed-shape purchase-order record
using the tenant's LLM, tolerating non-JSON-wrapped model output.
"""

import json
import re
from typing import Optional, Dict, Any, List

from langchain_core.prompts import PromptTemplate
from pydantic import BaseModel

from po_pipeline.integrations.llm import complete
from po_pipeline.schemas.purchase_order import ExtractedPOData, LineItem
from po_pipeline.schemas.records import AiConfiguration
from po_pipeline.utils import truncate, to_snake_case
from po_pipeline.utils.logging import setup_logging, log_agent_action
from po_pipeline.config import get_config


logger = setup_logging(__name__)
config = get_config()


EXTRACTION_PROMPT_TEMPLATE = """Extract purchase order information from the following text and return it as a JSON object.

Text to analyze:
\"\"\"
{document_text}
\"\"\"

Extract the following fields (use null for any field that cannot be found):

{{
  "poNumber": "Purchase Order number/ID",
  "supplier": "Supplier/Vendor name",
  "buyer": "Buyer/Customer name or company",
  "date": "Order date in YYYY-MM-DD format",
  "amount": "Total amount as a number (no currency symbols)",
  "currency": "Currency code (e.g., USD, EUR, GBP)",
  "lineItems": [
    {{
      "description": "Item description",
      "quantity": "Quantity as number",
      "unitPrice": "Unit price as number",
      "totalPrice": "Line total as number"
    }}
  ]
}}

Return only the JSON object, no other text:"""

EXTRACTION_PROMPT = PromptTemplate(
    input_variables=["document_text"],
    template=EXTRACTION_PROMPT_TEMPLATE,
)

# Field names models commonly use instead of the requested ones
FIELD_ALIASES = {
    "vendor_name": "supplier",
    "vendor": "supplier",
    "supplier_name": "supplier",
    "total_amount": "amount",
    "total": "amount",
    "order_date": "date",
    "customer": "buyer",
    "purchase_order_number": "po_number",
    "po_no": "po_number",
}

LINE_ITEM_ALIASES = {
    "price": "unit_price",
    "qty": "quantity",
    "total": "total_price",
    "amount": "total_price",
}

KNOWN_FIELDS = {"po_number", "supplier", "buyer", "date", "amount", "currency", "line_items"}

_decoder = json.JSONDecoder()


def _as_object(candidate: str) -> Optional[dict]:
    try:
        result = json.loads(candidate)
    except (json.JSONDecodeError, TypeError):
        return None
    if isinstance(result, dict) and result:
        return result
    return None


def _first_object(text: str) -> Optional[dict]:
    """First decodable top-level ``{...}`` anywhere in the text."""
    start = text.find("{")
    while start >= 0:
        try:
            result, _ = _decoder.raw_decode(text, start)
            if isinstance(result, dict) and result:
                return result
        except json.JSONDecodeError:
            pass
        start = text.find("{", start + 1)
    return None


def parse_llm_json(response: Optional[str]) -> Optional[dict]:
    """
    Parse a JSON object out of an LLM reply.

    Strategies, in order, until one succeeds:
    1. direct parse of the trimmed response
    2. contents of a fenced code block
    3. first top-level object anywhere in the text
    4. content following a literal "JSON:" marker
    5. cleanup (strip fences and newlines) then slice first '{' to last '}'

    Returns None when every strategy fails.
    """
    if not response or not response.strip():
        return None

    text = response.strip()

    result = _as_object(text)
    if result is not None:
        return result

    match = re.search(r"```(?:json)?\s*(.*?)\s*```", text, re.DOTALL | re.IGNORECASE)
    if match:
        result = _as_object(match.group(1))
        if result is not None:
            return result

    result = _first_object(text)
    if result is not None:
        return result

    match = re.search(r"JSON:\s*(.*)", text, re.DOTALL | re.IGNORECASE)
    if match:
        after_marker = match.group(1).strip()
        result = _as_object(after_marker) or _first_object(after_marker)
        if result is not None:
            return result

    # Last resort
    cleaned = re.sub(r"```(?:json)?", "", text, flags=re.IGNORECASE).replace("\r", " ").replace("\n", " ")
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start >= 0 and end > start:
        result = _as_object(cleaned[start:end + 1])
        if result is not None:
            return result

    return None


def coerce_amount(value: Any) -> Optional[float]:
    """Parse a monetary value; anything unparseable is treated as absent."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        cleaned = re.sub(r"[^\d.\-]", "", value.replace(",", ""))
        if not cleaned or cleaned in {".", "-", "-."}:
            return None
        try:
            return float(cleaned)
        except ValueError:
            return None
    return None


def _canonical_key(key: str, aliases: Dict[str, str]) -> str:
    snake = to_snake_case(key)
    return aliases.get(snake, snake)


def _optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _build_line_items(items: Any) -> List[LineItem]:
    if not isinstance(items, list):
        return []

    line_items = []
    for item in items:
        if not isinstance(item, dict):
            logger.warning(f"Skipping malformed line item: {truncate(str(item), 80)}")
            continue
        fields = {_canonical_key(k, LINE_ITEM_ALIASES): v for k, v in item.items()}
        line_items.append(LineItem(
            description=_optional_text(fields.get("description")) or "",
            quantity=coerce_amount(fields.get("quantity")),
            unit_price=coerce_amount(fields.get("unit_price")),
            total_price=coerce_amount(fields.get("total_price")),
        ))
    return line_items


def build_extracted_po_data(data: Dict[str, Any]) -> ExtractedPOData:
    """
    Build ExtractedPOData from a parsed LLM object.
    Accepts camelCase or snake_case keys; unknown keys are kept in ``extra``.
    """
    fields: Dict[str, Any] = {}
    extra: Dict[str, Any] = dict(data.get("extra") or {}) if isinstance(data.get("extra"), dict) else {}

    for key, value in data.items():
        if key == "extra":
            continue
        canonical = _canonical_key(key, FIELD_ALIASES)
        if canonical in KNOWN_FIELDS:
            # The requested name wins over an alias
            if canonical not in fields or to_snake_case(key) == canonical:
                fields[canonical] = value
        else:
            extra[canonical] = value

    currency = _optional_text(fields.get("currency"))

    return ExtractedPOData(
        po_number=_optional_text(fields.get("po_number")),
        supplier=_optional_text(fields.get("supplier")),
        buyer=_optional_text(fields.get("buyer")),
        date=_optional_text(fields.get("date")),
        amount=coerce_amount(fields.get("amount")),
        currency=currency.upper() if currency else None,
        line_items=_build_line_items(fields.get("line_items")),
        extra=extra,
    )


def merge_extracted_data(current: ExtractedPOData, overrides: Dict[str, Any]) -> ExtractedPOData:
    """Apply reviewer corrections (camelCase or snake_case keys) to extracted data."""
    merged = current.model_dump(exclude={"extra"})
    merged.update(current.extra)
    for key, value in overrides.items():
        merged[_canonical_key(key, FIELD_ALIASES)] = value
    return build_extracted_po_data(merged)


class ExtractionOutcome(BaseModel):
    """Result of one extraction attempt, kept for attachment diagnostics."""
    data: Optional[ExtractedPOData] = None
    raw_response: Optional[str] = None
    error: Optional[str] = None


class StructuredDataExtractor:
    """Prompts the tenant's LLM for the fixed purchase-order schema."""

    async def extract(self, text: str, ai_config: Optional[AiConfiguration]) -> Optional[ExtractedPOData]:
        return (await self.run(text, ai_config)).data

    async def run(self, text: str, ai_config: Optional[AiConfiguration]) -> ExtractionOutcome:
        if ai_config is None:
            logger.warning("[StructuredDataExtractor] No active AI configuration; skipping extraction")
            return ExtractionOutcome(error="No active AI configuration")

        prompt = EXTRACTION_PROMPT.format(document_text=text)

        try:
            response = await complete(prompt, ai_config)
        except Exception as e:
            logger.error(f"[StructuredDataExtractor] LLM call failed: {e}")
            return ExtractionOutcome(error=f"LLM extraction failed: {e}")

        parsed = parse_llm_json(response)
        if parsed is None:
            logger.error(
                "[StructuredDataExtractor] Could not parse JSON from LLM response: "
                f"{truncate(response, config.LLM_RESPONSE_PREVIEW_CHARS)}"
            )
            return ExtractionOutcome(raw_response=response, error="Could not parse JSON from LLM response")

        extracted = build_extracted_po_data(parsed)

        log_agent_action(
            logger,
            "StructuredDataExtractor",
            "PO data extracted",
            {
                "po_number": extracted.po_number,
                "supplier": extracted.supplier,
                "amount": extracted.amount,
                "line_items_count": len(extracted.line_items),
            },
        )
        return ExtractionOutcome(data=extracted, raw_response=response)
