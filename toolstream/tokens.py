"""Cheap token estimation used for context-budget decisions.

The estimate is ``ceil(len(json) / 4)``: one token is assumed to cover four
characters of the compact JSON rendering of the data. It is deliberately not a
real tokenizer.
"""

import json
import math
from typing import Any

CHARS_PER_TOKEN = 4
COMPRESSION_THRESHOLD = 0.8


def to_json(data: Any) -> str:
    """Serialize data the way it is measured and sent upstream."""
    return json.dumps(data, ensure_ascii=False, separators=(",", ":"), default=str)


def estimate_tokens(data: Any) -> int:
    """Estimate token count for any JSON-serializable value."""
    return math.ceil(len(to_json(data)) / CHARS_PER_TOKEN)


def estimate_tokens_from_string(text: str) -> int:
    """Estimate token count for a plain string."""
    return math.ceil(len(text or "") / CHARS_PER_TOKEN)


def compression_limit(max_tokens: int) -> float:
    """Token count above which compression kicks in."""
    return max_tokens * COMPRESSION_THRESHOLD


def should_compress(tokens: int, max_tokens: int) -> bool:
    """Return True when ``tokens`` exceeds 80% of ``max_tokens``."""
    return tokens > compression_limit(max_tokens)
