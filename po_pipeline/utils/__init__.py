"""
Shared utilities and helpers.
"""

import json
import re
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict


def serialize_for_json(obj: Any) -> Any:
    """Serialize objects that aren't JSON-serializable by default."""
    if isinstance(obj, datetime):
        return obj.isoformat()
    elif isinstance(obj, Decimal):
        return float(obj)
    elif isinstance(obj, Enum):
        return obj.value
    elif hasattr(obj, "model_dump"):  # Pydantic model
        return obj.model_dump(mode="json")
    elif hasattr(obj, "__dict__"):
        return obj.__dict__
    return str(obj)


def dict_to_json_string(data: Dict) -> str:
    """Convert dict to JSON string, handling non-serializable types."""
    return json.dumps(data, default=serialize_for_json, indent=2)


def truncate(text: str, limit: int) -> str:
    """Shorten text for log output."""
    if text is None:
        return ""
    if len(text) <= limit:
        return text
    return f"{text[:limit]}... [{len(text) - limit} more chars]"


_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def to_snake_case(key: str) -> str:
    """poNumber -> po_number; snake_case keys pass through."""
    return _CAMEL_BOUNDARY.sub("_", key).lower()
