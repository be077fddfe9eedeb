import json
import logging
import os
import time
from typing import Any, Dict, List, Optional

logger = logging.getLogger("Whispo.mcp.utils")

_TRUNCATION_SUFFIX = "\n\n[Response truncated due to size limits]"


def truncate_tool_text(text: str, name: str, max_chars: Optional[int] = None) -> str:
    """Apply the response length limit to tool output text."""
    if max_chars is None:
        max_chars = int(os.environ.get("WHISPO_MCP_TOOL_RESPONSE_MAX_CHARS", "32768"))
    if len(text) > max_chars:
        logger.info("Truncating response for tool '%s' (%d -> %d chars)", name, len(text), max_chars)
        cutoff = max(0, max_chars - len(_TRUNCATION_SUFFIX))
        return text[:cutoff] + _TRUNCATION_SUFFIX
    return text


def format_tool_result_text(data: Any, name: str, max_chars: Optional[int] = None) -> str:
    """Convert a handler's return value to the text shown in tool output."""
    if data is None:
        return "Success"
    if isinstance(data, (dict, list)):
        formatted = json.dumps(data, indent=2, ensure_ascii=False, default=str)
    else:
        formatted = str(data)
    return truncate_tool_text(formatted, name, max_chars)


def tool_result_text_items(result: Any) -> List[str]:
    """Collect the text items from an MCP tools/call result payload."""
    if not isinstance(result, dict):
        return []
    texts = []
    for item in result.get("content") or []:
        if isinstance(item, dict) and item.get("type") == "text" and isinstance(item.get("text"), str):
            texts.append(item["text"])
    return texts


def parse_json_object(text: str) -> Optional[Dict[str, Any]]:
    try:
        value = json.loads(text)
    except (TypeError, ValueError):
        return None
    return value if isinstance(value, dict) else None


def elapsed_ms(start: float) -> float:
    """Milliseconds elapsed since a ``time.monotonic()`` reading."""
    return round((time.monotonic() - start) * 1000.0, 2)


def now_ms() -> int:
    return int(time.time() * 1000)
