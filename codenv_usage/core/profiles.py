"""
Tool identifiers and profile naming.

Maps the many spellings of a tool to its canonical identifier and
derives a profile's display name.
"""

import re
from typing import Optional

from codenv_usage.config.loader import ProfileConfig

CODEX = "codex"
CLAUDE = "claude"
KNOWN_TOOLS = (CODEX, CLAUDE)

_TOOL_ALIASES = {
    "codex": CODEX,
    "claude": CLAUDE,
    "claudecode": CLAUDE,
    "cc": CLAUDE,
}
_PREFIX_SEPARATORS = ("-", "_", ".")


def normalize_tool(value: Optional[str]) -> Optional[str]:
    """Return the canonical tool id for ``value``, or None if unknown.

    Matching ignores case, whitespace, underscores and dashes, so
    "Claude Code", "claude_code" and "cc" all map to ``claude``.
    """
    if not value:
        return None
    compact = re.sub(r"[\s_-]+", "", str(value).strip().lower())
    return _TOOL_ALIASES.get(compact)


def usage_tool_label(value: Optional[str]) -> Optional[str]:
    """Canonical tool id, or the trimmed raw text for tools we don't know."""
    normalized = normalize_tool(value)
    if normalized:
        return normalized
    if value is None:
        return None
    trimmed = str(value).strip()
    return trimmed or None


def _tool_prefixes(tool: str):
    return (tool, "cc") if tool == CLAUDE else (tool,)


def has_tool_prefix(name: str, tool: str) -> bool:
    if not name:
        return False
    lowered = name.lower()
    return any(
        lowered.startswith(f"{prefix}{sep}")
        for prefix in _tool_prefixes(tool)
        for sep in _PREFIX_SEPARATORS
    )


def strip_tool_prefix(name: str, tool: Optional[str]) -> str:
    """Drop a leading "codex-" / "claude_" / "cc." style prefix from ``name``."""
    normalized = normalize_tool(tool)
    if not name or not normalized:
        return name
    lowered = name.lower()
    for prefix in _tool_prefixes(normalized):
        for sep in _PREFIX_SEPARATORS:
            candidate = f"{prefix}{sep}"
            if lowered.startswith(candidate):
                return name[len(candidate):] or name
    return name


def infer_profile_tool(
    profile_key: str,
    profile: Optional[ProfileConfig],
    requested_tool: Optional[str] = None,
) -> Optional[str]:
    """Work out which tool a profile belongs to.

    Precedence: explicit request, the profile's declared type, then a
    tool prefix on the profile key.
    """
    if requested_tool:
        return normalize_tool(requested_tool)
    if profile is not None:
        declared = normalize_tool(profile.type)
        if declared:
            return declared
    for tool in KNOWN_TOOLS:
        if has_tool_prefix(profile_key, tool):
            return tool
    return None


def profile_display_name(
    profile_key: str,
    profile: Optional[ProfileConfig],
    requested_tool: Optional[str] = None,
) -> str:
    if profile is not None and profile.name:
        return profile.name
    if profile is not None and profile.type:
        return strip_tool_prefix(profile_key, profile.type)
    if requested_tool:
        return strip_tool_prefix(profile_key, requested_tool)
    return profile_key
