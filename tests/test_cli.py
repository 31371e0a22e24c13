"""
Tests for the CLI interface.
"""
import json

import pytest
from typer.testing import CliRunner

from codenv_usage.cli.main import (
    EXIT_CODE_FAIL,
    EXIT_CODE_PASS,
    _format_tokens,
    app,
)
from codenv_usage.storage.bindings import BindingLog
from codenv_usage.storage.ledger import read_usage_records

runner = CliRunner()

SESSION_ID = "0199a1b2-c3d4-7e5f-8a9b-0c1d2e3f4a5b"


@pytest.fixture
def config_file(tmp_path):
    """Write a config whose files all live under ``tmp_path``."""
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "codexSessionsPath": str(tmp_path / "codex"),
        "claudeSessionsPath": str(tmp_path / "claude"),
        "profiles": {
            "work": {"name": "Work", "type": "codex", "pricing": {"model": "gpt-5.1"}},
        },
    }), encoding="utf-8")
    return path


def _write_codex_log(tmp_path):
    path = tmp_path / "codex" / f"rollout-2026-01-05T10-00-00-{SESSION_ID}.jsonl"
    path.parent.mkdir(parents=True)
    path.write_text(json.dumps({
        "timestamp": "2026-01-05T10:01:00Z",
        "type": "event_msg",
        "payload": {"type": "token_count", "info": {"total_token_usage": {
            "input_tokens": 100, "output_tokens": 50, "total_tokens": 150,
        }}},
    }) + "\n", encoding="utf-8")
    return path


class TestCLI:
    """Test CLI commands."""

    def test_sync_command(self, tmp_path, config_file):
        """Test that sync reports appended records."""
        _write_codex_log(tmp_path)
        BindingLog(tmp_path / "profile-log.jsonl").log_session_binding(
            "codex", "work", "Work", session_id=SESSION_ID
        )

        result = runner.invoke(app, ["--config", str(config_file), "sync"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "appended 1 records" in result.output
        assert len(read_usage_records(tmp_path / "usage.jsonl")) == 1

    def test_sync_reports_unbound_logs(self, tmp_path, config_file):
        _write_codex_log(tmp_path)

        result = runner.invoke(app, ["--config", str(config_file), "sync"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "no profile binding" in result.output

    def test_totals_command(self, tmp_path, config_file):
        _write_codex_log(tmp_path)
        BindingLog(tmp_path / "profile-log.jsonl").log_session_binding(
            "codex", "work", "Work", session_id=SESSION_ID
        )

        result = runner.invoke(app, ["--config", str(config_file), "totals"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Work" in result.output
        assert "150" in result.output

    def test_totals_rejects_unknown_tool(self, config_file):
        result = runner.invoke(app, ["--config", str(config_file), "totals", "--tool", "vim"])
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Unknown tool" in result.output

    def test_statusline_records_payload(self, tmp_path, config_file):
        """Test that a piped payload is recorded and summarized."""
        payload = {
            "session_id": "live-1",
            "model": "gpt-5.1",
            "token_usage": {"total_token_usage": {
                "input_tokens": 100, "output_tokens": 50, "total_tokens": 150,
            }},
        }

        result = runner.invoke(
            app,
            ["--config", str(config_file), "statusline", "--no-sync"],
            input=json.dumps(payload),
            env={"CODE_ENV_TYPE": "codex", "CODE_ENV_PROFILE_KEY": "work"},
        )

        assert result.exit_code == EXIT_CODE_PASS
        assert "Total 150" in result.output
        records = read_usage_records(tmp_path / "usage.jsonl")
        assert [r.profile_name for r in records] == ["Work"]

    def test_statusline_tolerates_bad_payload(self, config_file):
        result = runner.invoke(
            app,
            ["--config", str(config_file), "statusline", "--no-sync", "--tool", "codex"],
            input="not json",
        )
        assert result.exit_code == EXIT_CODE_PASS
        assert "Today 0" in result.output

    def test_statusline_ignores_last_turn_usage(self, tmp_path, config_file):
        """Test that per-turn codex usage never turns into session deltas."""
        for last_turn in (
            {"input_tokens": 400, "output_tokens": 100},
            {"input_tokens": 50, "output_tokens": 20},
        ):
            payload = {"session_id": "live-1", "token_usage": {"last_token_usage": last_turn}}
            result = runner.invoke(
                app,
                ["--config", str(config_file), "statusline", "--no-sync", "--tool", "codex",
                 "--profile-key", "work"],
                input=json.dumps(payload),
            )
            assert result.exit_code == EXIT_CODE_PASS

        assert read_usage_records(tmp_path / "usage.jsonl") == []

    def test_use_command(self, tmp_path, config_file):
        result = runner.invoke(
            app,
            ["--config", str(config_file), "use", "--tool", "codex", "--profile-key", "work"],
            env={"CODE_ENV_TERMINAL_TAG": "tty3"},
        )

        assert result.exit_code == EXIT_CODE_PASS
        assert "Using Work" in result.output
        entries = BindingLog(tmp_path / "profile-log.jsonl").read_entries()
        assert entries[0].kind == "use"
        assert entries[0].profile_key == "work"
        assert entries[0].terminal_tag == "tty3"
        assert entries[0].cwd

    def test_use_rejects_unknown_tool(self, config_file):
        result = runner.invoke(app, [
            "--config", str(config_file), "use", "--tool", "vim", "--profile-key", "work",
        ])
        assert result.exit_code == EXIT_CODE_FAIL

    def test_bind_warns_when_already_bound(self, config_file):
        args = [
            "--config", str(config_file), "bind",
            "--tool", "codex", "--profile-key", "work", "--session-id", SESSION_ID,
        ]
        first = runner.invoke(app, args)
        second = runner.invoke(app, args)

        assert "already had a binding" not in first.output
        assert "already had a binding" in second.output
        assert second.exit_code == EXIT_CODE_PASS

    def test_bind_command(self, tmp_path, config_file):
        result = runner.invoke(app, [
            "--config", str(config_file), "bind",
            "--tool", "codex", "--profile-key", "work", "--session-id", SESSION_ID,
        ])

        assert result.exit_code == EXIT_CODE_PASS
        entries = BindingLog(tmp_path / "profile-log.jsonl").read_entries()
        assert entries[0].kind == "session"
        assert entries[0].profile_name == "Work"
        assert entries[0].session_id == SESSION_ID

    def test_bind_requires_session(self, config_file):
        result = runner.invoke(app, [
            "--config", str(config_file), "bind", "--tool", "codex", "--profile-key", "work",
        ])
        assert result.exit_code == EXIT_CODE_FAIL

    def test_reset_with_yes(self, tmp_path, config_file):
        ledger = tmp_path / "usage.jsonl"
        ledger.write_text("{}\n", encoding="utf-8")

        result = runner.invoke(app, ["--config", str(config_file), "reset", "--yes"])

        assert result.exit_code == EXIT_CODE_PASS
        assert not ledger.exists()

    def test_reset_can_be_aborted(self, tmp_path, config_file):
        ledger = tmp_path / "usage.jsonl"
        ledger.write_text("{}\n", encoding="utf-8")

        result = runner.invoke(app, ["--config", str(config_file), "reset"], input="n\n")

        assert result.exit_code == EXIT_CODE_PASS
        assert ledger.exists()

    def test_missing_config_fails(self, tmp_path):
        result = runner.invoke(app, ["--config", str(tmp_path / "missing.json"), "sync"])
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Config file not found" in result.output


class TestFormatting:
    """Test output helpers."""

    def test_format_tokens(self):
        assert _format_tokens(None) == "-"
        assert _format_tokens(950) == "950"
        assert _format_tokens(1200) == "1.20K"
        assert _format_tokens(3_400_000) == "3.40M"
        assert _format_tokens(2_000_000_000) == "2.00B"
