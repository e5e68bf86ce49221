"""
Typed results returned across component boundaries.
Each carries an ``extra`` map for provider-specific fields.
"""

from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field


class TextQualityReport(BaseModel):
    """Heuristic quality of extracted text. Informs, never blocks."""
    is_valid: bool
    confidence: float = Field(ge=0.0, le=1.0)
    issues: List[str] = Field(default_factory=list)


class VendorValidationResult(BaseModel):
    """Outcome of matching an extracted vendor name against master data."""
    is_valid: bool
    matched_vendor: Optional[Dict[str, Any]] = None
    suggestions: List[str] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    reason: Optional[str] = None


class ErpPushResult(BaseModel):
    success: bool
    erp_id: Optional[str] = None
    error: Optional[str] = None
    status_code: Optional[int] = None
    extra: Dict[str, Any] = Field(default_factory=dict)


class ConnectionTestResult(BaseModel):
    success: bool
    error: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
