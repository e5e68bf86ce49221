"""
Email Classifier
Decides whether an incoming email is purchase-order related.
Keyword heuristics first; the LLM only sees ambiguous messages.
"""

from typing import List, Optional

from po_pipeline.config import get_config
from po_pipeline.integrations.llm import complete
from po_pipeline.storage import Storage
from po_pipeline.utils.logging import setup_logging, log_agent_action


logger = setup_logging(__name__)
config = get_config()


PO_KEYWORDS = (
    "po",
    "purchase order",
    "invoice",
    "order confirmation",
    "order",
    "procurement",
    "quotation",
)

CLASSIFIER_PROMPT_TEMPLATE = """Analyze this email to determine if it contains a Purchase Order or is related to purchase order processing.

Email Subject: "{subject}"
Email From: "{sender}"
Attachment Count: {attachment_count}
Attachment Names: {attachment_names}

Return only "true" if this email likely contains a purchase order or is related to purchase order processing, otherwise return "false".

Consider these indicators:
- Subject contains words like: PO, Purchase Order, Order, Invoice, Quote, Procurement
- Sender is likely a vendor, supplier, or procurement department
- Attachments are PDFs, images, or documents that might contain purchase orders

Response (true/false only):"""


def matches_po_keywords(subject: Optional[str], sender: Optional[str]) -> bool:
    """Case-insensitive substring match of the keyword set against subject and sender."""
    haystack = f"{subject or ''} {sender or ''}".lower()
    return any(keyword in haystack for keyword in PO_KEYWORDS)


class EmailClassifier:
    """Accepts or rejects an email as purchase-order related."""

    def __init__(self, storage: Storage):
        self.storage = storage

    async def is_purchase_order_email(
        self,
        tenant_id: str,
        subject: str,
        sender: str,
        attachment_names: List[str],
    ) -> bool:
        # Fast path: no LLM cost
        if attachment_names:
            log_agent_action(logger, "EmailClassifier", "Accepted (has attachments)", {"subject": subject})
            return True
        if matches_po_keywords(subject, sender):
            log_agent_action(logger, "EmailClassifier", "Accepted (keyword match)", {"subject": subject})
            return True

        ai_config = await self.storage.get_active_ai_configuration(tenant_id)
        if ai_config is None:
            logger.info(f"[EmailClassifier] No AI configuration for tenant {tenant_id}; rejecting '{subject}'")
            return False

        prompt = CLASSIFIER_PROMPT_TEMPLATE.format(
            subject=subject or "",
            sender=sender or "",
            attachment_count=len(attachment_names),
            attachment_names=", ".join(attachment_names),
        )

        try:
            response = await complete(
                prompt,
                ai_config,
                max_tokens=config.LLM_CLASSIFIER_MAX_TOKENS,
                system_prompt=None,
            )
        except Exception as e:
            logger.warning(f"[EmailClassifier] LLM classification failed, rejecting '{subject}': {e}")
            return False

        decision = response.strip().strip('".').lower() == "true"
        log_agent_action(
            logger,
            "EmailClassifier",
            "Accepted (LLM)" if decision else "Rejected (LLM)",
            {"subject": subject, "response": response[:20]},
        )
        return decision
