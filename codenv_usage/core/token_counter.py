"""
Token counting and usage tracking.

Normalized token breakdown shared by the parsers, the delta engine
and the pricing resolver.
"""

from dataclasses import dataclass, fields
from typing import Dict, Optional


@dataclass(frozen=True)
class TokenUsage:
    """Token counts for one session, one delta or one ledger record.

    ``total_tokens`` is carried explicitly because upstream logs report it
    independently of the breakdown (legacy records have no cache fields).
    """
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0
    total_tokens: int = 0

    @property
    def breakdown_total(self) -> int:
        """Sum of the four token categories."""
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_read_tokens
            + self.cache_write_tokens
        )

    @property
    def is_empty(self) -> bool:
        return self.total_tokens == 0 and self.breakdown_total == 0

    def to_wire(self) -> Dict[str, int]:
        """Counters under the camelCase keys used on disk."""
        return {
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "cacheReadTokens": self.cache_read_tokens,
            "cacheWriteTokens": self.cache_write_tokens,
            "totalTokens": self.total_tokens,
        }

    @classmethod
    def from_counts(
        cls,
        input_tokens: Optional[int] = None,
        output_tokens: Optional[int] = None,
        cache_read_tokens: Optional[int] = None,
        cache_write_tokens: Optional[int] = None,
        total_tokens: Optional[int] = None,
    ) -> "TokenUsage":
        """Build usage from partial counts; a missing total is the breakdown sum."""
        usage = cls(
            input_tokens=max(0, int(input_tokens or 0)),
            output_tokens=max(0, int(output_tokens or 0)),
            cache_read_tokens=max(0, int(cache_read_tokens or 0)),
            cache_write_tokens=max(0, int(cache_write_tokens or 0)),
        )
        if total_tokens is None:
            total = usage.breakdown_total
        else:
            total = max(0, int(total_tokens))
        return cls(
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            cache_read_tokens=usage.cache_read_tokens,
            cache_write_tokens=usage.cache_write_tokens,
            total_tokens=total,
        )


COUNTER_FIELDS = tuple(f.name for f in fields(TokenUsage))
BREAKDOWN_FIELDS = ("input_tokens", "output_tokens", "cache_read_tokens", "cache_write_tokens")


def coerce_count(value) -> Optional[int]:
    """Convert a JSON value to a non-negative token count.

    Accepts ints, floats and numeric strings. Returns None for anything
    that is missing, non-numeric or not finite; negative values clamp to 0.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip().replace(",", "")
        if not value:
            return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number != number or number in (float("inf"), float("-inf")):
        return None
    return max(0, int(number))


def first_count(record: Dict, *keys: str) -> Optional[int]:
    """Return the first key in ``record`` that holds a usable count."""
    for key in keys:
        count = coerce_count(record.get(key))
        if count is not None:
            return count
    return None
