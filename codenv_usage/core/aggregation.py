"""
Usage aggregation.

Rolls ledger records up into today/all-time token totals and costs,
indexed both by profile key and by profile name.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterable, Optional, Tuple

from codenv_usage.config.loader import UsageConfig
from codenv_usage.storage.models import UsageRecord

from .pricing import calculate_cost, resolve_pricing
from .profiles import usage_tool_label


@dataclass
class UsageTotals:
    """Token totals for one profile bucket."""
    today: int = 0
    total: int = 0
    today_input: int = 0
    total_input: int = 0
    today_output: int = 0
    total_output: int = 0
    today_cache_read: int = 0
    total_cache_read: int = 0
    today_cache_write: int = 0
    total_cache_write: int = 0

    def add(self, record: UsageRecord, is_today: bool) -> None:
        usage = record.usage
        self.total += usage.total_tokens
        self.total_input += usage.input_tokens
        self.total_output += usage.output_tokens
        self.total_cache_read += usage.cache_read_tokens
        self.total_cache_write += usage.cache_write_tokens
        if is_today:
            self.today += usage.total_tokens
            self.today_input += usage.input_tokens
            self.today_output += usage.output_tokens
            self.today_cache_read += usage.cache_read_tokens
            self.today_cache_write += usage.cache_write_tokens


@dataclass
class CostTotals:
    """Cost in USD for one profile bucket; None once any part is unknown."""
    today: Optional[float] = 0.0
    total: Optional[float] = 0.0

    def add(self, cost: Optional[float], is_today: bool) -> None:
        if cost is None:
            self.total = None
            if is_today:
                self.today = None
            return
        if self.total is not None:
            self.total += cost
        if is_today and self.today is not None:
            self.today += cost


@dataclass
class TotalsIndex:
    by_key: Dict[str, UsageTotals] = field(default_factory=dict)
    by_name: Dict[str, UsageTotals] = field(default_factory=dict)


@dataclass
class CostIndex:
    by_key: Dict[str, CostTotals] = field(default_factory=dict)
    by_name: Dict[str, CostTotals] = field(default_factory=dict)


def lookup_key(tool: Optional[str], identifier: Optional[str]) -> Optional[str]:
    """Index key ``"{tool}||{identifier}"``, or None if either part is missing."""
    if not identifier:
        return None
    label = usage_tool_label(tool)
    if not label:
        return None
    return f"{label}||{identifier}"


def today_window(now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """Local calendar day containing ``now`` as naive local datetimes."""
    current = now or datetime.now()
    if current.tzinfo is not None:
        current = current.astimezone().replace(tzinfo=None)
    start = current.replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)


def _local_time(timestamp: str) -> Optional[datetime]:
    if not timestamp:
        return None
    try:
        parsed = datetime.fromisoformat(timestamp.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        return parsed.astimezone().replace(tzinfo=None)
    return parsed


def _is_in_window(timestamp: str, window: Tuple[datetime, datetime]) -> bool:
    local = _local_time(timestamp)
    if local is None:
        return False
    start, end = window
    return start <= local < end


def build_totals_index(
    records: Iterable[UsageRecord], now: Optional[datetime] = None
) -> TotalsIndex:
    """Aggregate ledger records into per-profile token totals.

    Records contribute to the key bucket and/or the name bucket they
    carry. ``today`` counts records inside the current local day;
    ``total`` counts everything, so ``today <= total`` always holds.
    """
    window = today_window(now)
    index = TotalsIndex()
    for record in records:
        is_today = _is_in_window(record.timestamp, window)
        for buckets, identifier in (
            (index.by_key, record.profile_key),
            (index.by_name, record.profile_name),
        ):
            key = lookup_key(record.tool, identifier)
            if key is None:
                continue
            buckets.setdefault(key, UsageTotals()).add(record, is_today)
    return index


def lookup_totals(
    index: Optional[TotalsIndex],
    tool: Optional[str],
    profile_key: Optional[str],
    profile_name: Optional[str],
) -> Optional[UsageTotals]:
    """Totals for a profile; the key lookup wins over the name lookup."""
    if index is None:
        return None
    return _lookup(index.by_key, index.by_name, tool, profile_key, profile_name)


def build_cost_index(
    records: Iterable[UsageRecord],
    config: Optional[UsageConfig],
    now: Optional[datetime] = None,
) -> CostIndex:
    """Aggregate ledger records into per-profile costs.

    Each record is priced for its own profile and model. A bucket becomes
    unknown as soon as one record with tokens cannot be priced; a
    partially known sum is never reported.
    """
    window = today_window(now)
    index = CostIndex()
    for record in records:
        if record.total_tokens <= 0:
            continue
        is_today = _is_in_window(record.timestamp, window)
        profile = config.get_profile(record.profile_key) if config else None
        pricing = resolve_pricing(config, profile, record.model)
        cost = calculate_cost(record.usage, pricing)
        for buckets, identifier in (
            (index.by_key, record.profile_key),
            (index.by_name, record.profile_name),
        ):
            key = lookup_key(record.tool, identifier)
            if key is None:
                continue
            buckets.setdefault(key, CostTotals()).add(cost, is_today)
    return index


def lookup_cost(
    index: Optional[CostIndex],
    tool: Optional[str],
    profile_key: Optional[str],
    profile_name: Optional[str],
) -> Optional[CostTotals]:
    """Costs for a profile; the key lookup wins over the name lookup."""
    if index is None:
        return None
    return _lookup(index.by_key, index.by_name, tool, profile_key, profile_name)


def _lookup(by_key, by_name, tool, profile_key, profile_name):
    key = lookup_key(tool, profile_key)
    if key is not None and key in by_key:
        return by_key[key]
    name = lookup_key(tool, profile_name)
    if name is not None and name in by_name:
        return by_name[name]
    return None
