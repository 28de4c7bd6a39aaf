from __future__ import annotations

import math

CHARS_PER_TOKEN = 4


def estimate_tokens(*texts: str | None) -> int:
    """Estimate LLM tokens consumed by the given texts.

    Uses the fixed ``1 token ~= 4 characters`` heuristic over the combined
    length, rounded up. This is an approximation for quota accounting, not a
    tokenizer-exact count.
    """

    total_chars = sum(len(text) for text in texts if text)
    if total_chars <= 0:
        return 0
    return math.ceil(total_chars / CHARS_PER_TOKEN)
