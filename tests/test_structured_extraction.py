"""
Tests for LLM-backed structured data extraction.
"""

import pytest
from unittest.mock import patch, AsyncMock

from po_pipeline.agents.document_intelligence import (
    EXTRACTION_PROMPT,
    StructuredDataExtractor,
    build_extracted_po_data,
    coerce_amount,
    merge_extracted_data,
    parse_llm_json,
)


BARE_JSON = '{"poNumber": "4521", "supplier": "Acme Co", "amount": 1200.50, "currency": "USD"}'
EXPECTED = {"poNumber": "4521", "supplier": "Acme Co", "amount": 1200.50, "currency": "USD"}


class TestParseLlmJson:
    """Recovering a JSON object from model output."""

    def test_bare_json(self):
        assert parse_llm_json(BARE_JSON) == EXPECTED

    def test_fenced_block(self):
        assert parse_llm_json(f"```json\n{BARE_JSON}\n```") == EXPECTED

    def test_fence_without_language(self):
        assert parse_llm_json(f"```\n{BARE_JSON}\n```") == EXPECTED

    def test_json_marker_prefix(self):
        assert parse_llm_json(f"JSON: {BARE_JSON}") == EXPECTED

    def test_leading_and_trailing_prose(self):
        response = f"Sure! Here is the extracted data:\n{BARE_JSON}\nLet me know if you need anything else."
        assert parse_llm_json(response) == EXPECTED

    def test_nested_line_items_survive(self):
        response = 'Result: {"poNumber": "1", "lineItems": [{"description": "Bolt", "quantity": 2}]} done'
        result = parse_llm_json(response)
        assert result["lineItems"][0]["description"] == "Bolt"

    def test_garbage_returns_none(self):
        assert parse_llm_json("I could not find any purchase order in this document.") is None

    def test_broken_json_returns_none(self):
        assert parse_llm_json('{"poNumber": "4521", "supplier": ') is None

    def test_empty_response_returns_none(self):
        assert parse_llm_json("") is None
        assert parse_llm_json(None) is None

    def test_non_object_json_returns_none(self):
        assert parse_llm_json("[1, 2, 3]") is None
        assert parse_llm_json("{}") is None


def test_coerce_amount():
    assert coerce_amount(1200.5) == 1200.5
    assert coerce_amount("1,200.50") == 1200.5
    assert coerce_amount("$99.99") == 99.99
    assert coerce_amount("n/a") is None
    assert coerce_amount(None) is None
    assert coerce_amount(True) is None


def test_build_extracted_po_data_normalizes_keys():
    data = build_extracted_po_data({
        "poNumber": 4521,
        "vendorName": "Acme Co",
        "totalAmount": "1,200.50",
        "currency": "usd",
        "lineItems": [{"description": "Widget", "qty": "3", "unitPrice": 10, "totalPrice": 30}],
        "paymentTerms": "Net 30",
    })

    assert data.po_number == "4521"
    assert data.supplier == "Acme Co"
    assert data.amount == 1200.5
    assert data.currency == "USD"
    assert data.line_items[0].quantity == 3.0
    assert data.line_items[0].unit_price == 10.0
    assert data.extra == {"payment_terms": "Net 30"}


def test_build_extracted_po_data_prefers_requested_field_over_alias():
    data = build_extracted_po_data({"supplier": "Acme Co", "vendor": "Someone Else"})
    assert data.supplier == "Acme Co"

    data = build_extracted_po_data({"vendor": "Someone Else", "supplier": "Acme Co"})
    assert data.supplier == "Acme Co"


def test_build_extracted_po_data_skips_malformed_line_items():
    data = build_extracted_po_data({"lineItems": ["not an item", {"description": "Bolt"}]})
    assert len(data.line_items) == 1
    assert data.line_items[0].description == "Bolt"


def test_merge_extracted_data_applies_corrections():
    current = build_extracted_po_data({"poNumber": "4521", "supplier": "Acme Supplies Co", "amount": 10})
    merged = merge_extracted_data(current, {"vendorName": "Acme Supplies Company", "notes": "fixed"})

    assert merged.supplier == "Acme Supplies Company"
    assert merged.po_number == "4521"
    assert merged.amount == 10.0
    assert merged.extra["notes"] == "fixed"


def test_extraction_prompt_embeds_document_text():
    prompt = EXTRACTION_PROMPT.format(document_text="PO Number: 4521")
    assert "PO Number: 4521" in prompt
    assert '"poNumber"' in prompt


class TestStructuredDataExtractor:

    @pytest.mark.asyncio
    async def test_extracts_fixed_schema(self, ai_config):
        text = "PO Number: 4521, Supplier: Acme Co, Amount: 1200.50 USD"
        reply = (
            '```json\n{"poNumber": "4521", "supplier": "Acme Co", "buyer": null, "date": null, '
            '"amount": 1200.50, "currency": "USD", "lineItems": []}\n```'
        )

        with patch("po_pipeline.agents.document_intelligence.complete", new=AsyncMock(return_value=reply)) as mock_complete:
            data = await StructuredDataExtractor().extract(text, ai_config)

        assert data.po_number == "4521"
        assert data.supplier == "Acme Co"
        assert data.amount == 1200.50
        assert data.currency == "USD"
        assert text in mock_complete.call_args.args[0]

    @pytest.mark.asyncio
    async def test_unparseable_reply_returns_no_data(self, ai_config):
        with patch("po_pipeline.agents.document_intelligence.complete", new=AsyncMock(return_value="no idea")):
            outcome = await StructuredDataExtractor().run("some text", ai_config)

        assert outcome.data is None
        assert outcome.raw_response == "no idea"
        assert outcome.error == "Could not parse JSON from LLM response"

    @pytest.mark.asyncio
    async def test_llm_failure_returns_no_data(self, ai_config):
        failing = AsyncMock(side_effect=RuntimeError("rate limited"))
        with patch("po_pipeline.agents.document_intelligence.complete", new=failing):
            outcome = await StructuredDataExtractor().run("some text", ai_config)

        assert outcome.data is None
        assert "rate limited" in outcome.error

    @pytest.mark.asyncio
    async def test_missing_ai_configuration(self):
        with patch("po_pipeline.agents.document_intelligence.complete", new=AsyncMock()) as mock_complete:
            outcome = await StructuredDataExtractor().run("some text", None)

        assert outcome.data is None
        assert outcome.error == "No active AI configuration"
        mock_complete.assert_not_called()
