"""
Logging for the purchase-order pipeline.

Console output uses the plain LOG_FORMAT; when LOG_FILE is set, the same
records are also written there as one JSON object per line so stage
transitions can be searched by purchase order or tenant.
"""

import json
import logging
from datetime import datetime
from typing import Any, Optional

from po_pipeline.config import get_config


config = get_config()

# Key under which structured context travels on a LogRecord
CONTEXT_ATTR = "extra"


class StructuredFormatter(logging.Formatter):
    """Renders a record and its attached context as a JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.utcnow().isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(getattr(record, CONTEXT_ATTR, None) or {})
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def _handler(handler: logging.Handler, formatter: logging.Formatter, level: int) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging(name: str = __name__) -> logging.Logger:
    """Return the named logger, attaching handlers on first use."""
    logger = logging.getLogger(name)
    level = logging.getLevelName(config.LOG_LEVEL.upper())
    logger.setLevel(level)

    if not logger.handlers:
        logger.addHandler(_handler(logging.StreamHandler(), logging.Formatter(config.LOG_FORMAT), level))
        if config.LOG_FILE:
            logger.addHandler(_handler(logging.FileHandler(config.LOG_FILE), StructuredFormatter(), level))

    return logger


def log_agent_action(
    logger: logging.Logger,
    agent_name: str,
    action: str,
    details: Optional[dict] = None,
    confidence: Optional[float] = None,
) -> None:
    """Record what a pipeline component did, with optional details and confidence."""
    context = dict(details or {}, agent=agent_name, action=action)
    if confidence is not None:
        context["confidence"] = confidence
    logger.info(f"[{agent_name}] {action}", extra={CONTEXT_ATTR: context})


def log_stage_event(logger: logging.Logger, entry: Any) -> None:
    """Mirror a ProcessingLog entry into the application log. Failures log at WARNING."""
    stage, status = entry.stage.value, entry.status.value
    context = {
        "type": "processing_stage",
        "tenant_id": entry.tenant_id,
        "purchase_order_id": entry.purchase_order_id,
        "stage": stage,
        "status": status,
        "duration_ms": entry.duration_ms,
    }

    message = f"Stage {stage} {status}"
    if entry.purchase_order_id:
        message = f"{message} for PO {entry.purchase_order_id}"

    if status != "failed":
        logger.info(message, extra={CONTEXT_ATTR: context})
        return
    if entry.error_message:
        message = f"{message}: {entry.error_message}"
    logger.warning(message, extra={CONTEXT_ATTR: context})
