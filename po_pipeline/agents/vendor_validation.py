"""
Vendor Validator
Matches an extracted vendor name against tenant master data.
Exact match first, then substring suggestions. A suggestion never counts as a match.
"""

from typing import List, Optional

from rapidfuzz import fuzz

from po_pipeline.config import get_config
from po_pipeline.schemas.records import Vendor
from po_pipeline.schemas.results import VendorValidationResult
from po_pipeline.utils.logging import setup_logging, log_agent_action


logger = setup_logging(__name__)
config = get_config()


def _normalize(name: Optional[str]) -> str:
    return " ".join((name or "").split()).lower()


def _vendor_names(vendor: Vendor) -> List[str]:
    return [_normalize(n) for n in [vendor.name, *vendor.alternate_names] if _normalize(n)]


def validate_vendor(vendor_name: Optional[str], vendors: List[Vendor]) -> VendorValidationResult:
    """
    Validate an extracted vendor name.

    Returns:
        exact canonical/alternate match -> is_valid, confidence 1.0
        substring match either way      -> not valid, up to 3 suggestions, confidence 0.7
        nothing                         -> not valid, confidence 0.0
    """
    extracted = _normalize(vendor_name)
    if not extracted:
        return VendorValidationResult(
            is_valid=False,
            confidence=0.0,
            reason="Missing vendor information in extracted data",
        )

    active = [v for v in vendors if v.is_active]

    for vendor in active:
        if extracted in _vendor_names(vendor):
            log_agent_action(
                logger,
                "VendorValidator",
                "Exact vendor match",
                {"vendor": vendor.name},
                config.VENDOR_EXACT_CONFIDENCE,
            )
            return VendorValidationResult(
                is_valid=True,
                matched_vendor=vendor.model_dump(mode="json"),
                confidence=config.VENDOR_EXACT_CONFIDENCE,
            )

    # Substring in either direction, ranked by similarity
    candidates = []
    for vendor in active:
        names = _vendor_names(vendor)
        if any(extracted in name or name in extracted for name in names):
            # Plain ratio breaks token-set ties between nested names
            score = max((fuzz.token_set_ratio(extracted, name), fuzz.ratio(extracted, name)) for name in names)
            candidates.append((score, vendor.name))

    candidates.sort(key=lambda c: c[0], reverse=True)
    suggestions = []
    for _, name in candidates:
        if name not in suggestions:
            suggestions.append(name)
    suggestions = suggestions[:config.VENDOR_SUGGESTION_LIMIT]

    confidence = config.VENDOR_PARTIAL_CONFIDENCE if suggestions else 0.0
    result = VendorValidationResult(
        is_valid=False,
        suggestions=suggestions,
        confidence=confidence,
    )
    result.reason = describe_validation_failure(vendor_name, result)

    log_agent_action(
        logger,
        "VendorValidator",
        "Vendor not matched",
        {"vendor": vendor_name, "suggestions": suggestions},
        confidence,
    )
    return result


def describe_validation_failure(vendor_name: Optional[str], result: VendorValidationResult) -> str:
    """Human-readable failure reason, suitable for the review queue."""
    if not _normalize(vendor_name):
        return "Missing vendor information in extracted data"

    message = f'Vendor "{vendor_name}" not found in master data.'
    if result.suggestions:
        return f"{message} Suggestions: {', '.join(result.suggestions)}"
    return f"{message} No similar vendors found."
