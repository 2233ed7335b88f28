"""
JSON helpers for model responses.
"""

import json
from typing import Any

from .exceptions import InvalidResponse


def clean_json_response(response: str) -> str:
    """Strip code fences an LLM wraps around JSON.

    Args:
        response: Raw LLM response

    Returns:
        Cleaned JSON string
    """
    response = response.strip()

    if response.startswith('```json'):
        response = response[7:]
    elif response.startswith('```'):
        response = response[3:]

    if response.endswith('```'):
        response = response[:-3]

    return response.strip()


def parse_json_response(response: str) -> Any:
    """Parse a fenced or bare JSON response; failures are InvalidResponse."""
    try:
        return json.loads(clean_json_response(response))
    except json.JSONDecodeError as e:
        raise InvalidResponse(f'Model returned invalid JSON: {e}')
