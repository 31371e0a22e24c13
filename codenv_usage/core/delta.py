"""
Delta computation over cumulative counters.

Turns freshly observed session totals plus the previously stored
maxima into the portion not yet recorded in the ledger.
"""

from dataclasses import dataclass
from typing import Optional, Sequence

from .token_counter import BREAKDOWN_FIELDS, COUNTER_FIELDS, TokenUsage


@dataclass(frozen=True)
class DeltaResult:
    """Usage to append, and whether the counters were reset."""
    usage: TokenUsage
    reset: bool = False

    @property
    def should_emit(self) -> bool:
        """Only strictly positive totals are written to the ledger."""
        return self.usage.total_tokens > 0


def merge_maxima(*states: Optional[TokenUsage]) -> Optional[TokenUsage]:
    """Per-field maximum over previously observed counters.

    Used when a session has both a file entry and a session entry: the
    larger observation of each field wins. Independently tracked maxima
    are never summed.
    """
    present = [state for state in states if state is not None]
    if not present:
        return None
    return TokenUsage(
        **{name: max(getattr(state, name) for state in present) for name in COUNTER_FIELDS}
    )


def _restrict(usage: TokenUsage, fields: Sequence[str]) -> TokenUsage:
    """Zero the counters outside ``fields``.

    Without a tracked total the total is the sum of the tracked categories.
    """
    values = {name: getattr(usage, name) if name in fields else 0 for name in COUNTER_FIELDS}
    if "total_tokens" not in fields:
        values["total_tokens"] = sum(values[name] for name in BREAKDOWN_FIELDS)
    return TokenUsage(**values)


def compute_delta(
    fresh: TokenUsage,
    previous: Optional[TokenUsage],
    fields: Sequence[str] = COUNTER_FIELDS,
) -> DeltaResult:
    """Compute the emit-safe delta between ``fresh`` and ``previous``.

    A negative delta in any field means the counters restarted (for
    example a new sub-session reusing the same file or session id). The
    whole fresh value is then emitted for every field instead of a mix of
    partial deltas, so nothing is under- or over-counted.

    Args:
        fresh: Totals just observed
        previous: Stored maxima, or None if the session is new
        fields: Counters ``fresh`` actually reports as running totals;
            the others are neither compared nor emitted

    Returns:
        DeltaResult; callers store the counters from ``advance_counters``
    """
    if previous is None:
        return DeltaResult(usage=_restrict(fresh, fields))

    deltas = {name: getattr(fresh, name) - getattr(previous, name) for name in fields}
    if any(value < 0 for value in deltas.values()):
        return DeltaResult(usage=_restrict(fresh, fields), reset=True)
    usage = TokenUsage(**{name: deltas.get(name, 0) for name in COUNTER_FIELDS})
    return DeltaResult(usage=_restrict(usage, fields))


def advance_counters(
    previous: Optional[TokenUsage],
    fresh: TokenUsage,
    delta: DeltaResult,
    fields: Sequence[str] = COUNTER_FIELDS,
) -> TokenUsage:
    """Counters to store once ``delta`` has been recorded.

    Tracked fields take the fresh value. Untracked fields keep the stored
    maxima, and an untracked total grows by the emitted delta. After a
    reset nothing of the old counters survives.
    """
    if previous is None or delta.reset:
        return delta.usage
    values = {name: getattr(previous, name) for name in COUNTER_FIELDS}
    for name in fields:
        values[name] = getattr(fresh, name)
    if "total_tokens" not in fields:
        values["total_tokens"] = previous.total_tokens + delta.usage.total_tokens
    return TokenUsage(**values)
