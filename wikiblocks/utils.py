"""
WikiBlocks Backend — Shared Helpers
=====================================

What:  Small pure functions shared by the services: id validation, slug
       generation, tolerant JSON decoding, block serialization and text
       preview extraction.
Why:   Keeps the services focused on orchestration; these helpers have no
       database access and are trivially unit-testable.
"""

import json
import re
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from wikiblocks.exceptions import ValidationError

_SLUG_STRIP = re.compile(r"[^\w\s-]")
_SLUG_COLLAPSE = re.compile(r"[\s_-]+")

# Services take a clock so tests can pin or step time
Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def require_id(value: Any, field: str) -> int:
    """
    Validate a required positive integer identifier.

    Raises ValidationError for None, booleans, non-integers and values < 1.
    Called before any storage access so a missing owner id never reaches
    the database.
    """
    if value is None or isinstance(value, bool):
        raise ValidationError(message=f"{field} is required", field=field)
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(message=f"{field} must be an integer", field=field)
    if number < 1:
        raise ValidationError(message=f"{field} must be a positive integer", field=field)
    return number


def slugify(title: Optional[str]) -> str:
    """
    Turn a page title into a URL-safe slug.

    "Sprint Notes!" → "sprint-notes". Titles with no usable characters
    produce "untitled".
    """
    text = (title or "").strip().lower()
    text = _SLUG_STRIP.sub("", text)
    text = _SLUG_COLLAPSE.sub("-", text).strip("-")
    return text or "untitled"


def safe_parse_json(data: Any) -> Dict[str, Any]:
    """
    Decode a stored JSON payload, degrading to {} instead of raising.

    Accepts None, already-decoded dicts, and JSON text. Anything that is
    not a JSON object (invalid text, lists, scalars) becomes {}.
    """
    if not data:
        return {}
    if isinstance(data, dict):
        return data
    if isinstance(data, (str, bytes)):
        try:
            decoded = json.loads(data)
        except (ValueError, TypeError):
            return {}
        return decoded if isinstance(decoded, dict) else {}
    return {}


def dump_json(payload: Optional[Dict[str, Any]]) -> Optional[str]:
    """Encode a payload for a JSON text column; None stays NULL."""
    if payload is None:
        return None
    return json.dumps(payload, ensure_ascii=False, default=_json_default)


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def block_to_dict(block: Any) -> Dict[str, Any]:
    """
    Serialize a Block ORM object into the JSON-safe dict stored in history.

    The same shape is used for create/delete payloads, both sides of an
    update pair, and every element of a snapshot's block array.
    """
    return {
        "id": block.id,
        "page_id": block.page_id,
        "owner_id": block.owner_id,
        "parent_id": block.parent_id,
        "type": block.type,
        "properties": block.properties or {},
        "format": block.format or {},
        "order_index": block.order_index,
        "created_at": isoformat(block.created_at),
        "updated_at": isoformat(block.updated_at),
    }


def extract_block_text(block: Any, max_length: int) -> str:
    """
    Return the first text of a block's properties, or "".

    Rich-text titles are nested lists (`{"title": [["Hello", []]]}`); plain
    strings under `title` or `text` are accepted too.
    """
    if not isinstance(block, dict):
        return ""
    props = block.get("properties")
    if not isinstance(props, dict):
        return ""

    text: Any = props.get("title")
    while isinstance(text, list) and text:
        text = text[0]
    if not isinstance(text, str) or not text:
        text = props.get("text")
    if not isinstance(text, str):
        return ""
    return text[:max_length]


def block_types(blocks: Any, limit: int = 3) -> List[str]:
    """First `limit` block type tags of a block array, skipping untyped entries."""
    if not isinstance(blocks, list):
        return []
    types = [b.get("type") for b in blocks if isinstance(b, dict) and b.get("type")]
    return types[:limit]
