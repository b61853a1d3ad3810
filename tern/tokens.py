"""Context-window limits and the character-based token estimator.

The estimator is only used for telemetry and for backends that expose no
counting endpoint. Hard decisions (compression) prefer a real count.
"""

from __future__ import annotations

import math
from typing import Mapping

DEFAULT_TOKEN_LIMIT = 1_048_576

_TOKEN_LIMITS: dict[str, int] = {
    "gemini-1.5-pro": 2_097_152,
    "gemini-1.5-flash": 1_048_576,
    "gemini-2.5-pro-preview-05-06": 1_048_576,
    "gemini-2.5-pro-preview-06-05": 1_048_576,
    "gemini-2.5-pro": 1_048_576,
    "gemini-2.5-flash-preview-05-20": 1_048_576,
    "gemini-2.5-flash": 1_048_576,
    "gemini-2.0-flash": 1_048_576,
    "qwen3-coder-plus": 1_048_576,
    "gemini-2.0-flash-preview-image-generation": 32_000,
    "deepseek-v3": 32_000,
    "deepseek-ai/DeepSeek-V3": 32_000,
}

# CJK Unified Ideographs
_CJK_START = 0x4E00
_CJK_END = 0x9FFF


def token_limit(
    model: str,
    overrides: Mapping[str, int] | None = None,
    default: int = DEFAULT_TOKEN_LIMIT,
) -> int:
    """Context-window size for ``model``. Configured overrides win."""
    if overrides and model in overrides:
        return overrides[model]
    return _TOKEN_LIMITS.get(model, default)


def rough_count(text: str) -> int:
    """Estimate tokens: 0.75 per CJK code point, 0.25 per other character."""
    total = 0.0
    for char in text:
        if _CJK_START <= ord(char) <= _CJK_END:
            total += 0.75
        else:
            total += 0.25
    return math.ceil(total)


def split_total(total: int) -> tuple[int, int]:
    """Split a combined usage figure into an estimated (prompt, completion) pair."""
    return round(total * 0.7), round(total * 0.3)
