"""
codenv usage accounting.

Provides programmatic access to the usage ledger for the statusline
renderer and other commands.
"""

from .core.aggregation import build_cost_index, build_totals_index, lookup_cost, lookup_totals
from .core.sync import (
    clear_usage_history,
    read_ledger,
    read_totals_index,
    record_incremental_usage,
    sync_from_session_logs,
)

__all__ = [
    "build_cost_index",
    "build_totals_index",
    "clear_usage_history",
    "lookup_cost",
    "lookup_totals",
    "read_ledger",
    "read_totals_index",
    "record_incremental_usage",
    "sync_from_session_logs",
]
