"""
CLI interface for codenv usage accounting.

Provides command-line access to syncing, totals, statusline recording,
profile activation, session binding and resetting the usage history.
"""

import json
import logging
import os
import sys
from typing import List, Optional, Tuple

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from codenv_usage.config.loader import UsageConfig, UsageContext, load_usage_config
from codenv_usage.core.aggregation import (
    build_cost_index,
    build_totals_index,
    lookup_cost,
    lookup_totals,
)
from codenv_usage.core.pricing import format_usd
from codenv_usage.core.profiles import (
    KNOWN_TOOLS,
    infer_profile_tool,
    normalize_tool,
    profile_display_name,
)
from codenv_usage.core.statusline import (
    get_model,
    get_session_id,
    get_workspace_dir,
    parse_statusline_usage,
)
from codenv_usage.core.sync import (
    clear_usage_history,
    read_ledger,
    record_incremental_usage,
    sync_from_session_logs,
)
from codenv_usage.storage.bindings import BindingLog

logger = logging.getLogger(__name__)

app = typer.Typer(help="Token usage ledger for codex and claude profiles.")
console = Console()
err_console = Console(stderr=True)

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


def setup_logging(verbose: bool = False, debug: bool = False):
    """Configure logging for the CLI."""
    level = logging.WARNING
    if verbose:
        level = logging.INFO
    if debug:
        level = logging.DEBUG

    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False, markup=True)],
        force=True,
    )
    logging.getLogger("codenv_usage").setLevel(level)


def _load_config(ctx: typer.Context) -> UsageConfig:
    if ctx.obj is None:
        ctx.obj = {}
    if "config" not in ctx.obj:
        ctx.obj["config"] = load_usage_config(ctx.obj.get("config_path"))
    return ctx.obj["config"]


def _fail(message: str):
    console.print(f"[red]Error:[/] {message}")
    sys.exit(EXIT_CODE_FAIL)


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to the code-env config file",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show progress logs"),
    debug: bool = typer.Option(False, "--debug", help="Show debug logs"),
):
    """codenv usage accounting."""
    setup_logging(verbose, debug)
    ctx.obj = {"config_path": config}


@app.command()
def sync(ctx: typer.Context):
    """Scan session transcripts and append new usage to the ledger."""
    try:
        result = sync_from_session_logs(_load_config(ctx))
    except Exception as e:
        _fail(str(e))

    if result.locked_out:
        console.print("[yellow]Another sync is running; ledger left as is[/]")
        sys.exit(EXIT_CODE_PASS)

    console.print(
        f"[green]✓[/] Scanned {result.scanned} session logs, "
        f"parsed {result.parsed}, appended {len(result.appended)} records"
    )
    if result.unbound:
        console.print(f"[dim]{len(result.unbound)} session logs have no profile binding[/]")
    if result.ambiguous:
        console.print(
            f"[yellow]{len(result.ambiguous)} session logs are bound to more than one profile[/]"
        )
        for path in result.ambiguous:
            console.print(f"  [dim]{path}[/]")
    sys.exit(EXIT_CODE_PASS)


def _format_tokens(value: Optional[int]) -> str:
    """Format a token count as 950, 1.20K, 3.40M or 1.00B."""
    if value is None:
        return "-"
    if value < 1000:
        return str(round(value))
    if value < 1_000_000:
        return f"{value / 1000:.2f}K"
    if value < 1_000_000_000:
        return f"{value / 1_000_000:.2f}M"
    return f"{value / 1_000_000_000:.2f}B"


def _format_currency(amount: Optional[float]) -> str:
    return format_usd(amount)


def _profile_rows(config: UsageConfig, records, tool_filter: Optional[str]) -> List[Tuple[str, Optional[str], Optional[str]]]:
    """Configured profiles first, then profiles only seen in the ledger."""
    rows = []
    seen = set()
    for key, profile in sorted(config.profiles.items()):
        tool = infer_profile_tool(key, profile)
        if not tool:
            continue
        rows.append((tool, key, profile_display_name(key, profile, tool)))
        seen.add((tool, key))
    for record in records:
        identity = (record.tool, record.profile_key or record.profile_name)
        if identity in seen or not identity[1]:
            continue
        seen.add(identity)
        rows.append((record.tool, record.profile_key, record.profile_name))
    if tool_filter:
        rows = [row for row in rows if row[0] == tool_filter]
    return rows


@app.command()
def totals(
    ctx: typer.Context,
    no_sync: bool = typer.Option(False, "--no-sync", help="Read the ledger without syncing first"),
    tool: Optional[str] = typer.Option(None, "--tool", "-t", help="Only show profiles of this tool"),
):
    """Show today's and all-time usage per profile."""
    tool_filter = None
    if tool:
        tool_filter = normalize_tool(tool)
        if tool_filter is None:
            _fail(f"Unknown tool '{tool}', expected one of: {', '.join(KNOWN_TOOLS)}")

    try:
        config = _load_config(ctx)
        if not no_sync:
            sync_from_session_logs(config)
        records = read_ledger(config)
    except Exception as e:
        _fail(str(e))

    rows = _profile_rows(config, records, tool_filter)
    if not rows:
        console.print("\n[bold yellow]No usage recorded yet[/]")
        console.print("\nBind a session to a profile with `codenv-usage bind`, then run `codenv-usage sync`.\n")
        sys.exit(EXIT_CODE_PASS)

    token_index = build_totals_index(records)
    cost_index = build_cost_index(records, config)

    table = Table(title="Usage")
    table.add_column("Tool")
    table.add_column("Profile")
    table.add_column("Name")
    table.add_column("Today", justify="right")
    table.add_column("Total", justify="right")
    table.add_column("Cost today", justify="right")
    table.add_column("Cost total", justify="right")

    for row_tool, key, name in rows:
        usage = lookup_totals(token_index, row_tool, key, name)
        cost = lookup_cost(cost_index, row_tool, key, name)
        table.add_row(
            row_tool,
            key or "-",
            name or "-",
            _format_tokens(usage.today if usage else 0),
            _format_tokens(usage.total if usage else 0),
            _format_currency(cost.today) if cost else "-",
            _format_currency(cost.total) if cost else "-",
        )

    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def statusline(
    ctx: typer.Context,
    tool: Optional[str] = typer.Option(None, "--tool", "-t", envvar="CODE_ENV_TYPE", help="Tool rendering the statusline"),
    profile_key: Optional[str] = typer.Option(None, "--profile-key", envvar="CODE_ENV_PROFILE_KEY", help="Active profile key"),
    profile_name: Optional[str] = typer.Option(None, "--profile-name", envvar="CODE_ENV_PROFILE_NAME", help="Active profile name"),
    no_sync: bool = typer.Option(False, "--no-sync", help="Skip the transcript scan"),
):
    """
    Record live usage from a statusline payload on stdin.

    Prints a one-line summary of the active profile's usage. A payload
    that isn't valid JSON still prints the summary from the ledger.
    """
    raw = sys.stdin.read()
    try:
        payload = json.loads(raw) if raw.strip() else {}
    except json.JSONDecodeError:
        logger.debug("Ignoring statusline payload that is not JSON")
        payload = {}

    resolved_tool = normalize_tool(tool)
    context = UsageContext(
        tool=resolved_tool,
        profile_key=profile_key,
        profile_name=profile_name,
        cwd=get_workspace_dir(payload),
    )

    try:
        config = _load_config(ctx)
        observed = parse_statusline_usage(payload, resolved_tool)
        if observed is not None:
            record_incremental_usage(
                config,
                context,
                get_session_id(payload),
                observed.usage,
                model=get_model(payload),
                fields=observed.fields,
            )
        if not no_sync:
            sync_from_session_logs(config)
        records = read_ledger(config)
    except Exception as e:
        _fail(str(e))

    usage = lookup_totals(build_totals_index(records), resolved_tool, profile_key, profile_name)
    cost = lookup_cost(build_cost_index(records, config), resolved_tool, profile_key, profile_name)

    segment = (
        f"Today {_format_tokens(usage.today if usage else 0)}"
        f" | Total {_format_tokens(usage.total if usage else 0)}"
    )
    if cost is not None and cost.total is not None:
        segment += f" | {_format_currency(cost.total)}"
    console.print(segment, markup=False, highlight=False)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def use(
    ctx: typer.Context,
    tool: str = typer.Option(..., "--tool", "-t", help="Tool the profile is for"),
    profile_key: str = typer.Option(..., "--profile-key", help="Profile being activated"),
    terminal_tag: Optional[str] = typer.Option(
        None, "--terminal-tag", envvar="CODE_ENV_TERMINAL_TAG", help="Terminal the profile is active in"
    ),
):
    """Record that a profile was activated."""
    normalized = normalize_tool(tool)
    if normalized is None:
        _fail(f"Unknown tool '{tool}', expected one of: {', '.join(KNOWN_TOOLS)}")

    context = UsageContext(
        tool=normalized,
        profile_key=profile_key,
        cwd=os.getcwd(),
        terminal_tag=terminal_tag,
    )
    try:
        config = _load_config(ctx)
        profile = config.get_profile(profile_key)
        profile_name = profile_display_name(profile_key, profile, normalized) if profile else None
        entry = BindingLog(config.paths.binding_log_path).log_profile_use(
            context.tool,
            context.profile_key,
            profile_name,
            terminal_tag=context.terminal_tag,
            cwd=context.cwd,
        )
    except Exception as e:
        _fail(str(e))

    console.print(f"[green]✓[/] Using {entry.profile_name} ({normalized})")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def bind(
    ctx: typer.Context,
    tool: str = typer.Option(..., "--tool", "-t", help="Tool the session belongs to"),
    profile_key: str = typer.Option(..., "--profile-key", help="Profile to attribute the session to"),
    profile_name: Optional[str] = typer.Option(None, "--profile-name", help="Display name of the profile"),
    session_file: Optional[str] = typer.Option(None, "--session-file", help="Path of the session transcript"),
    session_id: Optional[str] = typer.Option(None, "--session-id", help="Session id"),
):
    """Attribute a session transcript or session id to a profile."""
    normalized = normalize_tool(tool)
    if normalized is None:
        _fail(f"Unknown tool '{tool}', expected one of: {', '.join(KNOWN_TOOLS)}")
    if not session_file and not session_id:
        _fail("Provide --session-file or --session-id")

    try:
        config = _load_config(ctx)
        profile = config.get_profile(profile_key)
        if profile is not None and not profile_name:
            profile_name = profile_display_name(profile_key, profile, normalized)
        log = BindingLog(config.paths.binding_log_path)
        already_bound = log.session_binding_index().is_bound(session_file, session_id)
        entry = log.log_session_binding(
            normalized,
            profile_key,
            profile_name,
            session_file=session_file,
            session_id=session_id,
        )
    except Exception as e:
        _fail(str(e))

    if already_bound:
        console.print(
            "[yellow]This session already had a binding; a different profile makes it ambiguous[/]"
        )
    console.print(
        f"[green]✓[/] Bound {session_file or session_id} to {entry.profile_name} ({normalized})"
    )
    sys.exit(EXIT_CODE_PASS)


@app.command()
def reset(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="Don't ask for confirmation"),
):
    """Delete the usage ledger and sync state."""
    try:
        config = _load_config(ctx)
    except Exception as e:
        _fail(str(e))

    if not yes and not typer.confirm("Delete all recorded usage?"):
        console.print("Aborted")
        sys.exit(EXIT_CODE_PASS)

    result = clear_usage_history(config)
    for path in result.removed:
        console.print(f"[green]✓[/] Removed {path}")
    for path, error in result.failed:
        console.print(f"[red]Could not remove {path}:[/] {error}")
    if not result.removed and not result.failed:
        console.print("[dim]Nothing to remove[/]")
    sys.exit(EXIT_CODE_PASS if result.ok else EXIT_CODE_FAIL)


if __name__ == "__main__":
    app()
