"""
JSON extraction utilities for remote model replies.

Model output may wrap the JSON payload in markdown fences or prose; these
helpers find and parse the payload, repairing the most common syntax slips.
"""

import json
import re
from typing import Any, Dict, List, Optional

from loguru import logger


def _strip_code_fence(text: str, opener: str) -> str:
    """Return the body of the first fenced block, or the text unchanged."""
    if '```json' in text:
        start = text.find('```json') + 7
        end = text.find('```', start)
        return text[start:end].strip() if end > start else text

    if '```' in text:
        start = text.find('```') + 3
        # Skip language identifier if present (e.g., ```text)
        while start < len(text) and text[start] not in '\n\r' + opener:
            start += 1
        end = text.find('```', start)
        return text[start:end].strip() if end > start else text

    return text


def _repair(json_str: str) -> str:
    # Remove trailing commas before } or ]
    repaired = re.sub(r',\s*([}\]])', r'\1', json_str)
    # Replace smart quotes with regular quotes
    repaired = repaired.replace('“', '"').replace('”', '"')
    repaired = repaired.replace('‘', "'").replace('’', "'")
    # Remove control characters except newline and tab
    return re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f]', '', repaired)


def _extract(raw_response: str, opener: str, closer: str) -> Optional[Any]:
    if not raw_response:
        return None

    body = _strip_code_fence(raw_response.strip(), opener)
    start = body.find(opener)
    end = body.rfind(closer)
    if start < 0 or end <= start:
        return None

    candidate = body[start:end + 1]
    try:
        return json.loads(candidate)
    except json.JSONDecodeError as e:
        logger.debug(f"JSON parse error: {e}")

    try:
        return json.loads(_repair(candidate))
    except json.JSONDecodeError:
        return None


def extract_json_from_response(raw_response: str) -> Optional[Dict[str, Any]]:
    """
    Extract a JSON object from a model reply.

    Args:
        raw_response: The raw text response

    Returns:
        Parsed JSON dictionary, or None if extraction/parsing fails
    """
    parsed = _extract(raw_response, '{', '}')
    return parsed if isinstance(parsed, dict) else None


def extract_json_list_from_response(raw_response: str) -> Optional[List[Any]]:
    """Extract a JSON array from a model reply, or None."""
    parsed = _extract(raw_response, '[', ']')
    return parsed if isinstance(parsed, list) else None
