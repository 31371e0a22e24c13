"""
Statusline payload parsing.

The host tools pipe a JSON payload to the statusline command on every
render. These helpers pull the cumulative session totals, session id,
model and working directory out of it, accepting the field spellings
each tool has used.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from .profiles import CLAUDE, CODEX, normalize_tool
from .token_counter import COUNTER_FIELDS, TokenUsage, coerce_count

_INPUT_KEYS = ("inputTokens", "input", "input_tokens")
_OUTPUT_KEYS = ("outputTokens", "output", "output_tokens")
_REASONING_KEYS = ("reasoning_output_tokens", "reasoningOutputTokens", "reasoning_output")
_TOTAL_KEYS = ("totalTokens", "total", "total_tokens")
_CLAUDE_CACHE_READ_KEYS = (
    "cache_read_input_tokens",
    "cacheReadInputTokens",
    "cache_read",
    "cacheRead",
)
_CODEX_CACHE_READ_KEYS = ("cached_input_tokens", "cachedInputTokens") + _CLAUDE_CACHE_READ_KEYS
_CACHE_WRITE_KEYS = (
    "cache_creation_input_tokens",
    "cacheCreationInputTokens",
    "cache_write_input_tokens",
    "cacheWriteInputTokens",
    "cache_write",
    "cacheWrite",
)


def _nested(record: Dict[str, Any], *keys: str) -> Optional[Dict[str, Any]]:
    for key in keys:
        value = record.get(key)
        if isinstance(value, dict):
            return value
    return None


def _first(record: Dict[str, Any], keys) -> Optional[int]:
    for key in keys:
        count = coerce_count(record.get(key))
        if count is not None:
            return count
    return None


def _text(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class StatuslineUsage:
    """Running session totals read from a statusline payload.

    ``fields`` names the counters the payload reports as running totals.
    The other counters are zero and are never compared with stored maxima.
    """
    usage: TokenUsage
    fields: Tuple[str, ...] = COUNTER_FIELDS


def _usage_from_parts(
    input_tokens: Optional[int],
    output_tokens: Optional[int],
    cache_read: Optional[int],
    cache_write: Optional[int],
    total: Optional[int],
) -> Optional[StatuslineUsage]:
    parts = dict(zip(COUNTER_FIELDS, (input_tokens, output_tokens, cache_read, cache_write, total)))
    reported = tuple(name for name, value in parts.items() if value is not None)
    if not reported:
        return None
    usage = TokenUsage.from_counts(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        cache_read_tokens=cache_read,
        cache_write_tokens=cache_write,
        total_tokens=total,
    )
    return StatuslineUsage(usage=usage, fields=reported)


def _codex_record(record: Dict[str, Any]) -> Optional[StatuslineUsage]:
    input_tokens = _first(record, _INPUT_KEYS)
    output_tokens = _first(record, _OUTPUT_KEYS)
    reasoning = _first(record, _REASONING_KEYS)
    if reasoning is not None:
        output_tokens = (output_tokens or 0) + reasoning
    cache_read = _first(record, _CODEX_CACHE_READ_KEYS)
    cache_write = _first(record, _CACHE_WRITE_KEYS)
    total = _first(record, _TOTAL_KEYS)

    # codex counts cached input inside input_tokens
    if input_tokens is not None and cache_read:
        input_tokens = max(0, input_tokens - cache_read)
    return _usage_from_parts(input_tokens, output_tokens, cache_read, cache_write, total)


def _claude_record(record: Dict[str, Any]) -> Optional[StatuslineUsage]:
    return _usage_from_parts(
        _first(record, _INPUT_KEYS),
        _first(record, _OUTPUT_KEYS),
        _first(record, _CLAUDE_CACHE_READ_KEYS),
        _first(record, _CACHE_WRITE_KEYS),
        _first(record, _TOTAL_KEYS),
    )


def parse_codex_usage(payload: Dict[str, Any]) -> Optional[StatuslineUsage]:
    """Session totals from ``token_usage`` or ``usage``.

    ``last_token_usage`` describes a single turn and is never read.
    """
    token_usage = payload.get("token_usage")
    if isinstance(token_usage, (int, float)) and not isinstance(token_usage, bool):
        total = coerce_count(token_usage)
        if total is None:
            return None
        return StatuslineUsage(usage=TokenUsage(total_tokens=total), fields=("total_tokens",))

    if isinstance(token_usage, dict):
        for nested in (
            _nested(token_usage, "total_token_usage", "totalTokenUsage"),
            token_usage,
        ):
            if nested is None:
                continue
            usage = _codex_record(nested)
            if usage is not None:
                return usage

    usage = payload.get("usage")
    if isinstance(usage, dict):
        return _codex_record(usage)
    return None


def parse_claude_usage(payload: Dict[str, Any]) -> Optional[StatuslineUsage]:
    """Session totals from ``context_window`` or ``usage``.

    ``context_window.current_usage`` only holds the latest turn, so its
    cache counters are left out; the running totals are input and output.
    """
    context_window = _nested(payload, "context_window", "contextWindow")
    if context_window is not None:
        totals = _usage_from_parts(
            _first(context_window, ("total_input_tokens", "totalInputTokens")),
            _first(context_window, ("total_output_tokens", "totalOutputTokens")),
            None,
            None,
            None,
        )
        if totals is not None:
            return totals

    usage = payload.get("usage")
    if isinstance(usage, dict):
        return _claude_record(usage)
    return None


def parse_statusline_usage(payload: Any, tool: Optional[str]) -> Optional[StatuslineUsage]:
    """Extract cumulative session totals from a statusline payload.

    Args:
        payload: Decoded statusline JSON
        tool: Tool that produced the payload; when unknown the codex shape
            is tried first, then the claude shape

    Returns:
        StatuslineUsage, or None if the payload carries no usage
    """
    if not isinstance(payload, dict):
        return None
    normalized = normalize_tool(tool)
    if normalized == CODEX:
        return parse_codex_usage(payload)
    if normalized == CLAUDE:
        return parse_claude_usage(payload)
    return parse_codex_usage(payload) or parse_claude_usage(payload)


def get_session_id(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    return _text(payload.get("session_id")) or _text(payload.get("sessionId"))


def get_model(payload: Any) -> Optional[str]:
    """Model name: a plain string, or displayName / display_name / id."""
    if not isinstance(payload, dict):
        return None
    raw = payload.get("model")
    if isinstance(raw, str):
        return raw.strip() or None
    if isinstance(raw, dict):
        return (
            _text(raw.get("displayName"))
            or _text(raw.get("display_name"))
            or _text(raw.get("id"))
        )
    return None


def get_workspace_dir(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    workspace = payload.get("workspace")
    if not isinstance(workspace, dict):
        return None
    return _text(workspace.get("current_dir")) or _text(workspace.get("project_dir"))
