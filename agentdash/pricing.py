"""Token cost calculation at fixed Sonnet-class rates."""

from collections.abc import Mapping
from typing import Any

# Pricing per MTok: (input, cache_write, cache_read, output)
PRICING = (3.00, 3.75, 0.30, 15.00)
PRICING_TABLE = {
    "input": PRICING[0],
    "cache_creation": PRICING[1],
    "cache_read": PRICING[2],
    "output": PRICING[3],
}

# Accepted spellings for each token class, in PRICING order
_FIELD_NAMES = (
    ("input_tokens", "input"),
    ("cache_creation_input_tokens", "cache_creation"),
    ("cache_read_input_tokens", "cache_read"),
    ("output_tokens", "output"),
)


def token_counts(usage: Any) -> tuple[int, int, int, int]:
    """Return (input, cache_write, cache_read, output) from a model or mapping."""
    counts = []
    for names in _FIELD_NAMES:
        value = 0
        for name in names:
            if isinstance(usage, Mapping):
                if name in usage:
                    value = usage[name]
                    break
            elif hasattr(usage, name):
                value = getattr(usage, name)
                break
        counts.append(int(value or 0))
    return tuple(counts)


def compute_cost(inp: int, cw: int, cr: int, out: int) -> float:
    p = PRICING
    return (inp * p[0] + cw * p[1] + cr * p[2] + out * p[3]) / 1_000_000


def calculate_cost(usage: Any) -> float:
    """Cost in USD of a TokenUsage, UsageRecord or token-count mapping."""
    return compute_cost(*token_counts(usage))
