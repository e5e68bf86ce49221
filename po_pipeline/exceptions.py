"""
Exceptions raised across component boundaries.

Expected business outcomes (vendor not found, ERP rejection, unparseable LLM
output) are returned as result objects instead.
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for pipeline errors."""


class PurchaseOrderNotFoundError(PipelineError):
    def __init__(self, purchase_order_id: str):
        super().__init__(f"Purchase order not found: {purchase_order_id}")
        self.purchase_order_id = purchase_order_id


class InvalidTransitionError(PipelineError):
    """A purchase order cannot move to the requested state."""


class UnsupportedProviderError(PipelineError):
    """Unknown mail provider, ERP type or AI provider."""


class MailProviderError(PipelineError):
    """A mailbox provider call failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class MailboxAuthError(MailProviderError):
    """Access token rejected (HTTP 401). Refresh once and retry."""


class ReconnectRequiredError(MailProviderError):
    """The account must be reconnected by a user (HTTP 403 or refresh failure)."""
