"""
Integration tests for the sync engine.

Tests the transcript sync pass and the statusline path against real
files in a temporary directory.
"""

import json
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

import pytest

from codenv_usage.config.loader import UsageContext, parse_usage_config
from codenv_usage.core.aggregation import lookup_totals
from codenv_usage.core.lock import acquire_lock, release_lock
from codenv_usage.core.statusline import parse_statusline_usage
from codenv_usage.core.sync import (
    clear_usage_history,
    read_ledger,
    read_totals_index,
    record_incremental_usage,
    sync_from_session_logs,
)
from codenv_usage.core.token_counter import TokenUsage
from codenv_usage.storage.bindings import BindingLog
from codenv_usage.storage.state import StateStore

SESSION_ID = "0199a1b2-c3d4-7e5f-8a9b-0c1d2e3f4a5b"
NOW = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def config(tmp_path):
    return parse_usage_config(
        {
            "codexSessionsPath": str(tmp_path / "codex"),
            "claudeSessionsPath": str(tmp_path / "claude"),
            "profiles": {"work": {"name": "Work", "type": "codex"}},
        },
        tmp_path,
        environ={},
    )


def _codex_log(config, totals, name=f"rollout-2026-01-05T10-00-00-{SESSION_ID}.jsonl"):
    """Write a codex transcript whose token_count events carry ``totals``."""
    path = config.paths.codex_sessions_dir / "2026" / "01" / "05" / name
    path.parent.mkdir(parents=True, exist_ok=True)
    lines = [{"timestamp": "2026-01-05T10:00:00Z", "type": "session_meta",
              "payload": {"id": SESSION_ID, "cwd": "/repo"}}]
    for i, (input_tokens, output_tokens) in enumerate(totals):
        lines.append({
            "timestamp": f"2026-01-05T10:0{i + 1}:00Z",
            "type": "event_msg",
            "payload": {"type": "token_count", "info": {"total_token_usage": {
                "input_tokens": input_tokens,
                "output_tokens": output_tokens,
                "total_tokens": input_tokens + output_tokens,
            }}},
        })
    path.write_text("".join(json.dumps(line) + "\n" for line in lines), encoding="utf-8")
    return path


def _bind(config, path=None, key="work", name="Work", session_id=None, tool="codex"):
    BindingLog(config.paths.binding_log_path).log_session_binding(
        tool, key, name, session_file=str(path) if path else None, session_id=session_id
    )


class TestSessionLogSync:
    """Test the transcript sync pass."""

    def test_bound_session_is_recorded(self, config):
        path = _codex_log(config, [(100, 50)])
        _bind(config, path)

        result = sync_from_session_logs(config)

        assert result.scanned == 1
        assert len(result.appended) == 1
        record = read_ledger(config)[0]
        assert record.tool == "codex"
        assert record.profile_key == "work"
        assert record.profile_name == "Work"
        assert record.session_id == SESSION_ID
        assert record.total_tokens == 150
        assert record.timestamp == "2026-01-05T10:01:00Z"

    def test_sync_is_idempotent(self, config):
        """Test that re-syncing unchanged transcripts appends nothing."""
        _bind(config, _codex_log(config, [(100, 50)]))

        sync_from_session_logs(config)
        second = sync_from_session_logs(config)

        assert second.parsed == 0
        assert len(read_ledger(config)) == 1

    def test_idempotent_even_when_file_is_reparsed(self, config):
        """Test that a touched but unchanged-total file emits nothing."""
        path = _codex_log(config, [(100, 50)])
        _bind(config, path)
        sync_from_session_logs(config)

        state = StateStore(config.paths.state_path).load()
        state.files[str(path)].mtime_ms = 0
        StateStore(config.paths.state_path).save(state)

        result = sync_from_session_logs(config)

        assert result.parsed == 1
        assert result.appended == []

    def test_growth_appends_delta(self, config):
        path = _codex_log(config, [(100, 50)])
        _bind(config, path)
        sync_from_session_logs(config)

        _codex_log(config, [(100, 50), (300, 80)])
        result = sync_from_session_logs(config)

        assert [r.total_tokens for r in result.appended] == [230]
        assert result.appended[0].usage.input_tokens == 200
        assert result.appended[0].usage.output_tokens == 30

    def test_counter_reset_emits_fresh_totals(self, config):
        """Test that shrinking counters emit the fresh totals for every field."""
        path = _codex_log(config, [(100, 50)])
        _bind(config, path)
        sync_from_session_logs(config)

        _codex_log(config, [(5, 5), (10, 60)])
        result = sync_from_session_logs(config)

        delta = result.appended[0].usage
        assert (delta.input_tokens, delta.output_tokens, delta.total_tokens) == (10, 60, 70)
        state = StateStore(config.paths.state_path).load()
        assert state.sessions[f"codex::{SESSION_ID}"].usage.total_tokens == 70

    def test_unbound_file_is_skipped_until_bound(self, config):
        """Test that state stays untouched so a later binding sees all usage."""
        path = _codex_log(config, [(100, 50)])

        first = sync_from_session_logs(config)
        assert first.unbound == [str(path)]
        assert read_ledger(config) == []
        assert StateStore(config.paths.state_path).load().files == {}

        _bind(config, session_id=SESSION_ID)
        second = sync_from_session_logs(config)

        assert [r.total_tokens for r in second.appended] == [150]

    def test_ambiguous_file_is_skipped(self, config):
        path = _codex_log(config, [(100, 50)])
        _bind(config, path, key="work")
        _bind(config, path, key="personal", name="Personal")

        result = sync_from_session_logs(config)

        assert result.ambiguous == [str(path)]
        assert read_ledger(config) == []

    def test_claude_sessions_are_synced(self, config):
        path = config.paths.claude_sessions_dir / "proj" / "s.jsonl"
        path.parent.mkdir(parents=True)
        path.write_text(json.dumps({
            "timestamp": "2026-01-05T09:00:00Z",
            "sessionId": "claude-sess",
            "message": {"model": "claude-opus-4-5-20251101",
                        "usage": {"input_tokens": 10, "output_tokens": 20}},
        }) + "\n", encoding="utf-8")
        _bind(config, key="cc-main", name="Main", session_id="claude-sess", tool="claude")

        result = sync_from_session_logs(config)

        record = result.appended[0]
        assert record.tool == "claude"
        assert record.model == "claude-opus-4-5-20251101"
        assert record.total_tokens == 30

    def test_locked_out_pass_changes_nothing(self, config):
        _bind(config, _codex_log(config, [(100, 50)]))
        handle = acquire_lock(config.paths.lock_path)
        try:
            result = sync_from_session_logs(config)
        finally:
            release_lock(handle)

        assert result.locked_out
        assert read_ledger(config) == []

    def test_unreadable_file_is_skipped(self, config):
        _bind(config, _codex_log(config, [(100, 50)]))
        with patch("codenv_usage.core.sync.parse_session_file", side_effect=OSError("denied")):
            result = sync_from_session_logs(config)

        assert result.parsed == 0
        assert read_ledger(config) == []
        assert not config.paths.lock_path.exists()

    def test_missing_session_dirs(self, config):
        result = sync_from_session_logs(config)
        assert result.scanned == 0
        assert config.paths.state_path.exists()


class TestIncrementalUsage:
    """Test the statusline-driven path."""

    def _context(self, **kwargs):
        defaults = dict(tool="codex", profile_key="work", profile_name="Work")
        defaults.update(kwargs)
        return UsageContext(**defaults)

    def test_first_observation_records_everything(self, config):
        record = record_incremental_usage(
            config, self._context(), "live-1", TokenUsage(100, 50, 0, 0, 150),
            model="gpt-5.1", now=NOW,
        )

        assert record.total_tokens == 150
        assert record.timestamp == "2026-01-05T12:00:00Z"
        assert record.model == "gpt-5.1"
        assert read_ledger(config) == [record]

    def test_repeated_observation_records_delta_only(self, config):
        context = self._context()
        record_incremental_usage(config, context, "live-1", TokenUsage(100, 50, 0, 0, 150))
        assert record_incremental_usage(config, context, "live-1", TokenUsage(100, 50, 0, 0, 150)) is None

        record = record_incremental_usage(config, context, "live-1", TokenUsage(120, 60, 0, 0, 180))

        assert record.total_tokens == 30
        assert sum(r.total_tokens for r in read_ledger(config)) == 180

    def test_reset_emits_fresh_totals(self, config):
        context = self._context()
        record_incremental_usage(config, context, "live-1", TokenUsage(100, 50, 0, 0, 150))
        record = record_incremental_usage(config, context, "live-1", TokenUsage(10, 60, 0, 0, 70))
        assert record.usage == TokenUsage(10, 60, 0, 0, 70)

    def test_requires_profile_session_and_totals(self, config):
        totals = TokenUsage(1, 1, 0, 0, 2)
        assert record_incremental_usage(config, UsageContext(tool="codex"), "s", totals) is None
        assert record_incremental_usage(config, self._context(tool="vim"), "s", totals) is None
        assert record_incremental_usage(config, self._context(), None, totals) is None
        assert record_incremental_usage(config, self._context(), "s", None) is None
        assert read_ledger(config) == []

    def test_skipped_while_locked(self, config):
        handle = acquire_lock(config.paths.lock_path)
        try:
            record = record_incremental_usage(
                config, self._context(), "live-1", TokenUsage(1, 1, 0, 0, 2)
            )
        finally:
            release_lock(handle)
        assert record is None

    def test_configured_profile_name_is_used(self, config):
        record = record_incremental_usage(
            config, self._context(profile_name=None), "live-1", TokenUsage(1, 1, 0, 0, 2)
        )
        assert record.profile_name == "Work"


class TestPathReconciliation:
    """Test that the two paths never double count one session."""

    def test_statusline_after_sync(self, config):
        _bind(config, _codex_log(config, [(100, 50)]))
        sync_from_session_logs(config)

        context = UsageContext(tool="codex", profile_key="work", profile_name="Work")
        same = record_incremental_usage(config, context, SESSION_ID, TokenUsage(100, 50, 0, 0, 150))
        more = record_incremental_usage(config, context, SESSION_ID, TokenUsage(110, 50, 0, 0, 160))

        assert same is None
        assert more.total_tokens == 10
        assert sum(r.total_tokens for r in read_ledger(config)) == 160

    def test_sync_after_statusline(self, config):
        context = UsageContext(tool="codex", profile_key="work", profile_name="Work")
        record_incremental_usage(config, context, SESSION_ID, TokenUsage(100, 50, 0, 0, 150))

        _bind(config, _codex_log(config, [(100, 50), (120, 60)]))
        result = sync_from_session_logs(config)

        assert [r.total_tokens for r in result.appended] == [30]
        assert sum(r.total_tokens for r in read_ledger(config)) == 180


    def test_session_entry_ahead_in_some_fields_is_a_reset(self, config):
        """Test that a transcript behind the session entry in one field re-emits fresh totals."""
        context = UsageContext(tool="codex", profile_key="work", profile_name="Work")
        record_incremental_usage(config, context, SESSION_ID, TokenUsage(130, 50, 0, 0, 180))

        _bind(config, _codex_log(config, [(100, 80)]))
        result = sync_from_session_logs(config)

        assert [r.usage for r in result.appended] == [TokenUsage(100, 80, 0, 0, 180)]
        state = StateStore(config.paths.state_path).load()
        assert state.sessions[f"codex::{SESSION_ID}"].usage == TokenUsage(100, 80, 0, 0, 180)

    def test_clean_sync_keeps_session_maxima(self, config):
        context = UsageContext(tool="codex", profile_key="work", profile_name="Work")
        record_incremental_usage(config, context, SESSION_ID, TokenUsage(100, 50, 0, 0, 150))

        path = _codex_log(config, [(120, 60)])
        _bind(config, path)
        result = sync_from_session_logs(config)

        assert [r.usage for r in result.appended] == [TokenUsage(20, 10, 0, 0, 30)]
        state = StateStore(config.paths.state_path).load()
        assert state.sessions[f"codex::{SESSION_ID}"].usage == TokenUsage(120, 60, 0, 0, 180)
        assert state.files[str(path)].usage == TokenUsage(120, 60, 0, 0, 180)


class TestClaudeStatusline:
    """Test claude statusline totals against transcript scans of the same session."""

    CONTEXT = UsageContext(tool="claude", profile_key="cc-main", profile_name="Main")

    def _render(self, config, input_tokens, output_tokens, cache_read):
        payload = {"context_window": {
            "total_input_tokens": input_tokens,
            "total_output_tokens": output_tokens,
            "current_usage": {"cache_read_input_tokens": cache_read},
        }}
        observed = parse_statusline_usage(payload, "claude")
        return record_incremental_usage(
            config, self.CONTEXT, "claude-sess", observed.usage, fields=observed.fields
        )

    def _transcript(self, config):
        path = config.paths.claude_sessions_dir / "proj" / "claude-sess.jsonl"
        path.parent.mkdir(parents=True)
        message = {"timestamp": "2026-01-05T09:00:00Z", "sessionId": "claude-sess",
                   "message": {"usage": {"input_tokens": 500, "output_tokens": 250,
                                         "cache_read_input_tokens": 5000}}}
        path.write_text((json.dumps(message) + "\n") * 2, encoding="utf-8")
        _bind(config, key="cc-main", name="Main", session_id="claude-sess", tool="claude")

    def test_smaller_turn_cache_is_not_a_reset(self, config):
        self._render(config, 1000, 500, 5000)
        record = self._render(config, 1100, 550, 3000)

        assert record.usage == TokenUsage(100, 50, 0, 0, 150)
        records = read_ledger(config)
        assert sum(r.usage.input_tokens for r in records) == 1100
        assert sum(r.total_tokens for r in records) == 1650

    def test_render_after_sync_adds_nothing(self, config):
        self._transcript(config)
        sync_from_session_logs(config)

        assert self._render(config, 1000, 500, 5000) is None
        assert sum(r.total_tokens for r in read_ledger(config)) == 11500

    def test_sync_after_render_adds_cache_only(self, config):
        self._render(config, 1000, 500, 5000)
        self._transcript(config)

        result = sync_from_session_logs(config)

        assert [r.usage for r in result.appended] == [TokenUsage(0, 0, 10000, 0, 10000)]
        assert sum(r.total_tokens for r in read_ledger(config)) == 11500


class TestLedgerQueries:
    """Test reading totals and resetting history."""

    def test_read_totals_index_syncs_first(self, config):
        _bind(config, _codex_log(config, [(100, 50)]))

        index = read_totals_index(config)

        assert lookup_totals(index, "codex", "work", None).total == 150

    def test_read_totals_index_without_sync(self, config):
        _bind(config, _codex_log(config, [(100, 50)]))
        index = read_totals_index(config, sync=False)
        assert lookup_totals(index, "codex", "work", None) is None

    def test_clear_usage_history(self, config):
        _bind(config, _codex_log(config, [(100, 50)]))
        sync_from_session_logs(config)

        result = clear_usage_history(config)

        assert config.paths.ledger_path in result.removed
        assert config.paths.state_path in result.removed
        assert config.paths.lock_path in result.missing
        assert result.ok
        assert read_ledger(config) == []
        assert Path(config.paths.binding_log_path).exists()

    def test_clear_collects_failures(self, config):
        _bind(config, _codex_log(config, [(100, 50)]))
        sync_from_session_logs(config)

        with patch(
            "codenv_usage.core.sync.LedgerStore.clear", side_effect=PermissionError("denied")
        ):
            result = clear_usage_history(config)

        assert not result.ok
        assert result.failed == [(config.paths.ledger_path, "denied")]
        assert config.paths.state_path in result.removed
        assert config.paths.ledger_path.exists()
