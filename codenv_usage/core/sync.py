"""
Usage sync engine.

Turns session transcripts and statusline observations into ledger
records. Both writers run under the state lock, compare fresh
cumulative totals with the stored maxima and append only the delta.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from codenv_usage.config.loader import UsageConfig, UsageContext
from codenv_usage.storage.bindings import BindingLog
from codenv_usage.storage.ledger import LedgerStore, append_usage_record, read_usage_records
from codenv_usage.storage.models import (
    CounterState,
    UsageRecord,
    UsageState,
    session_key,
)
from codenv_usage.storage.state import StateStore

from .aggregation import TotalsIndex, build_totals_index
from .binder import ProfileBinder
from .delta import advance_counters, compute_delta, merge_maxima
from .lock import state_lock
from .profiles import KNOWN_TOOLS, normalize_tool, profile_display_name
from .session_parser import SessionStats, collect_session_files, parse_session_file
from .token_counter import COUNTER_FIELDS, TokenUsage

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    """What a sync pass did."""
    locked_out: bool = False
    scanned: int = 0
    parsed: int = 0
    appended: List[UsageRecord] = field(default_factory=list)
    unbound: List[str] = field(default_factory=list)
    ambiguous: List[str] = field(default_factory=list)


@dataclass
class ResetResult:
    """Files touched by a usage history reset."""
    removed: List[Path] = field(default_factory=list)
    missing: List[Path] = field(default_factory=list)
    failed: List[Tuple[Path, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


def _now_iso(now: Optional[datetime] = None) -> str:
    current = now or datetime.now(timezone.utc)
    if current.tzinfo is None:
        current = current.replace(tzinfo=timezone.utc)
    return current.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _file_signature(path: Path) -> Optional[Tuple[float, int]]:
    try:
        stat = path.stat()
    except OSError:
        return None
    return stat.st_mtime_ns / 1_000_000, stat.st_size


def sync_from_session_logs(
    config: UsageConfig, now: Optional[datetime] = None
) -> SyncResult:
    """Scan codex and claude transcripts and append new usage to the ledger.

    Files whose modification time and size are unchanged are skipped.
    Transcripts without an unambiguous profile binding are skipped and
    their state is left untouched, so a later binding still picks up
    everything they contain.

    If the lock is held by another live process the pass is skipped and
    ``locked_out`` is set; callers read the ledger as it is.

    Args:
        config: Usage configuration
        now: Fallback timestamp for records whose transcript has none

    Returns:
        SyncResult describing the pass
    """
    result = SyncResult()
    paths = config.paths

    with state_lock(paths.lock_path) as handle:
        if handle is None:
            logger.info("Usage sync skipped: lock %s is held", paths.lock_path)
            result.locked_out = True
            return result

        binder = ProfileBinder(
            BindingLog(paths.binding_log_path).read_entries(), config.profiles
        )
        store = StateStore(paths.state_path)
        state = store.load()
        ledger = LedgerStore(paths.ledger_path)

        for tool in KNOWN_TOOLS:
            for path in collect_session_files(paths.sessions_dir(tool)):
                result.scanned += 1
                _sync_file(path, tool, binder, state, ledger, result, now)

        store.save(state)

    logger.debug(
        "Usage sync: %d scanned, %d parsed, %d appended",
        result.scanned,
        result.parsed,
        len(result.appended),
    )
    return result


def _sync_file(
    path: Path,
    tool: str,
    binder: ProfileBinder,
    state: UsageState,
    ledger: LedgerStore,
    result: SyncResult,
    now: Optional[datetime],
) -> None:
    signature = _file_signature(path)
    if signature is None:
        return
    mtime_ms, size = signature
    file_key = str(path)
    file_entry = state.files.get(file_key)
    if file_entry is not None and file_entry.mtime_ms == mtime_ms and file_entry.size == size:
        return

    try:
        stats = parse_session_file(path, tool)
    except OSError as e:
        logger.warning("Could not read session log %s: %s", path, e)
        return
    result.parsed += 1

    binding = binder.resolve(tool, session_file=file_key, session_id=stats.session_id)
    if binding.ambiguous:
        result.ambiguous.append(file_key)
        return
    if not binding.is_bound:
        result.unbound.append(file_key)
        return

    skey = session_key(tool, stats.session_id) if stats.session_id else None
    session_entry = state.sessions.get(skey) if skey else None
    previous = merge_maxima(
        file_entry.usage if file_entry else None,
        session_entry.usage if session_entry else None,
    )
    delta = compute_delta(stats.usage, previous)
    if delta.reset:
        logger.info("Counters reset in %s; emitting fresh totals", path)

    if delta.should_emit:
        record = UsageRecord(
            timestamp=stats.end_ts or stats.start_ts or _now_iso(now),
            tool=tool,
            usage=delta.usage,
            profile_key=binding.match.profile_key,
            profile_name=binding.match.profile_name,
            model=stats.model,
            session_id=stats.session_id,
        )
        ledger.append(record)
        result.appended.append(record)

    state.files[file_key] = _counter_state(tool, stats, stats.usage, mtime_ms, size)
    if skey:
        if delta.reset or session_entry is None:
            session_usage = stats.usage
        else:
            session_usage = merge_maxima(session_entry.usage, stats.usage)
        state.sessions[skey] = _counter_state(tool, stats, session_usage)


def _counter_state(
    tool: str,
    stats: SessionStats,
    usage: TokenUsage,
    mtime_ms: Optional[float] = None,
    size: Optional[int] = None,
) -> CounterState:
    return CounterState(
        tool=tool,
        usage=usage,
        start_ts=stats.start_ts,
        end_ts=stats.end_ts,
        cwd=stats.cwd,
        model=stats.model,
        session_id=stats.session_id,
        mtime_ms=mtime_ms,
        size=size,
    )


def _context_profile(config: UsageConfig, context: UsageContext, tool: str):
    profile_key = context.profile_key
    profile_name = context.profile_name
    profile = config.get_profile(profile_key)
    if profile is not None:
        profile_name = profile_display_name(profile_key, profile, tool)
    return profile_key, profile_name or profile_key


def record_incremental_usage(
    config: UsageConfig,
    context: UsageContext,
    session_id: Optional[str],
    totals: Optional[TokenUsage],
    model: Optional[str] = None,
    now: Optional[datetime] = None,
    fields: Sequence[str] = COUNTER_FIELDS,
) -> Optional[UsageRecord]:
    """Record live session totals reported through the statusline.

    ``totals`` are the cumulative counters of the session so far. The
    stored maxima for the session (from earlier statusline calls and
    from transcript scans of the same session) are merged per field and
    only the delta is appended. Counters outside ``fields`` are not
    reported by the caller; they are left to the transcript scan.

    Args:
        config: Usage configuration
        context: Tool and active profile of the caller
        session_id: Session id from the statusline payload
        totals: Cumulative session totals from the payload
        model: Model reported by the payload
        now: Timestamp for the record, defaults to the current time
        fields: Counters in ``totals`` that are running totals

    Returns:
        The appended record, or None if nothing was written (missing
        inputs, no new usage, or lock unavailable)
    """
    tool = normalize_tool(context.tool)
    if not tool or not context.has_profile or not session_id or totals is None:
        return None

    paths = config.paths
    with state_lock(paths.lock_path) as handle:
        if handle is None:
            logger.debug("Incremental usage skipped: lock %s is held", paths.lock_path)
            return None

        store = StateStore(paths.state_path)
        state = store.load()
        skey = session_key(tool, session_id)
        session_entry = state.sessions.get(skey)
        related_files = [
            entry
            for entry in state.files.values()
            if normalize_tool(entry.tool) == tool and entry.session_id == session_id
        ]
        previous = merge_maxima(
            session_entry.usage if session_entry else None,
            *(entry.usage for entry in related_files),
        )
        delta = compute_delta(totals, previous, fields)
        stored = advance_counters(previous, totals, delta, fields)

        record = None
        if delta.should_emit:
            profile_key, profile_name = _context_profile(config, context, tool)
            record = UsageRecord(
                timestamp=_now_iso(now),
                tool=tool,
                usage=delta.usage,
                profile_key=profile_key,
                profile_name=profile_name,
                model=model,
                session_id=session_id,
            )
            append_usage_record(record, paths.ledger_path)

        state.sessions[skey] = CounterState(
            tool=tool,
            usage=stored,
            start_ts=session_entry.start_ts if session_entry else None,
            end_ts=_now_iso(now),
            cwd=context.cwd or (session_entry.cwd if session_entry else None),
            model=model or (session_entry.model if session_entry else None),
            session_id=session_id,
        )
        if delta.reset:
            logger.info("Counters reset for %s session %s", tool, session_id)
            for entry in related_files:
                entry.usage = stored

        store.save(state)
    return record


def read_ledger(config: UsageConfig) -> List[UsageRecord]:
    """Read every record in the usage ledger."""
    return read_usage_records(config.paths.ledger_path)


def read_totals_index(config: UsageConfig, sync: bool = True) -> TotalsIndex:
    """Optionally sync, then aggregate the ledger into a totals index."""
    if sync:
        sync_from_session_logs(config)
    return build_totals_index(read_ledger(config))


def _remove_lock_file(path: Path) -> bool:
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True


def clear_usage_history(config: UsageConfig) -> ResetResult:
    """Delete the ledger, the state document and the lock file.

    Failures are collected per file instead of aborting the reset.
    """
    result = ResetResult()
    paths = config.paths
    targets = (
        (paths.ledger_path, LedgerStore(paths.ledger_path).clear),
        (paths.state_path, StateStore(paths.state_path).clear),
        (paths.lock_path, lambda: _remove_lock_file(paths.lock_path)),
    )
    for path, clear in targets:
        try:
            removed = clear()
        except OSError as e:
            logger.error("Could not remove %s: %s", path, e)
            result.failed.append((path, str(e)))
            continue
        if removed:
            result.removed.append(path)
        else:
            result.missing.append(path)
    return result
