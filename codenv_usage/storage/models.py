"""
Data models for storage layer.

Defines the ledger record, the sync progress markers and the profile
binding log entry, together with their on-disk JSON shapes.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional

from codenv_usage.core.profiles import normalize_tool, usage_tool_label
from codenv_usage.core.token_counter import TokenUsage, coerce_count, first_count

INPUT_KEYS = ("inputTokens", "input", "input_tokens")
OUTPUT_KEYS = ("outputTokens", "output", "output_tokens")
CACHE_READ_KEYS = (
    "cacheReadTokens",
    "cacheRead",
    "cache_read",
    "cache_read_input_tokens",
    "cached_input_tokens",
)
CACHE_WRITE_KEYS = (
    "cacheWriteTokens",
    "cacheWrite",
    "cache_write",
    "cache_creation_input_tokens",
)
TOTAL_KEYS = ("totalTokens", "total", "total_tokens")

STATE_VERSION = 2


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class UsageRecord:
    """Immutable ledger line.

    Append-only records that form the usage ledger. Once written,
    these records must never be modified.
    """
    timestamp: str
    tool: str
    usage: TokenUsage
    profile_key: Optional[str] = None
    profile_name: Optional[str] = None
    model: Optional[str] = None
    session_id: Optional[str] = None

    @property
    def total_tokens(self) -> int:
        return self.usage.total_tokens

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "ts": self.timestamp,
            "type": self.tool,
            "profileKey": self.profile_key,
            "profileName": self.profile_name,
            "model": self.model,
            "sessionId": self.session_id,
        }
        data.update(self.usage.to_wire())
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UsageRecord":
        """Tolerant reader for ledger lines written by any past version.

        Every numeric field accepts several key aliases. The total is the
        larger of the recorded total and the breakdown sum, so legacy
        lines without cache fields still read consistently.
        """
        usage = TokenUsage.from_counts(
            input_tokens=first_count(data, *INPUT_KEYS),
            output_tokens=first_count(data, *OUTPUT_KEYS),
            cache_read_tokens=first_count(data, *CACHE_READ_KEYS),
            cache_write_tokens=first_count(data, *CACHE_WRITE_KEYS),
        )
        recorded_total = first_count(data, *TOTAL_KEYS) or 0
        usage = replace(usage, total_tokens=max(recorded_total, usage.breakdown_total))

        raw_tool = data.get("type", data.get("tool"))
        return cls(
            timestamp=str(data.get("ts") or data.get("timestamp") or ""),
            tool=usage_tool_label(_optional_str(raw_tool)) or "unknown",
            usage=usage,
            profile_key=_optional_str(data.get("profileKey")),
            profile_name=_optional_str(data.get("profileName")),
            model=_optional_str(data.get("model")),
            session_id=_optional_str(data.get("sessionId")),
        )


@dataclass
class CounterState:
    """Last observed cumulative counters for one session log file or session.

    Mutated in place by the sync pass; ``mtime_ms`` and ``size`` are only
    meaningful for file entries.
    """
    tool: Optional[str] = None
    usage: TokenUsage = field(default_factory=TokenUsage)
    start_ts: Optional[str] = None
    end_ts: Optional[str] = None
    cwd: Optional[str] = None
    model: Optional[str] = None
    session_id: Optional[str] = None
    mtime_ms: Optional[float] = None
    size: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.mtime_ms is not None:
            data["mtimeMs"] = self.mtime_ms
        if self.size is not None:
            data["size"] = self.size
        data["type"] = self.tool
        data.update(self.usage.to_wire())
        data.update(
            {
                "startTs": self.start_ts,
                "endTs": self.end_ts,
                "cwd": self.cwd,
                "model": self.model,
                "sessionId": self.session_id,
            }
        )
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CounterState":
        mtime = data.get("mtimeMs")
        try:
            mtime_ms = float(mtime) if mtime is not None else None
        except (TypeError, ValueError):
            mtime_ms = None
        return cls(
            tool=_optional_str(data.get("type")),
            usage=TokenUsage.from_counts(
                input_tokens=first_count(data, *INPUT_KEYS),
                output_tokens=first_count(data, *OUTPUT_KEYS),
                cache_read_tokens=first_count(data, *CACHE_READ_KEYS),
                cache_write_tokens=first_count(data, *CACHE_WRITE_KEYS),
                total_tokens=first_count(data, *TOTAL_KEYS),
            ),
            start_ts=_optional_str(data.get("startTs")),
            end_ts=_optional_str(data.get("endTs")),
            cwd=_optional_str(data.get("cwd")),
            model=_optional_str(data.get("model")),
            session_id=_optional_str(data.get("sessionId")),
            mtime_ms=mtime_ms,
            size=coerce_count(data.get("size")),
        )


@dataclass
class UsageState:
    """Whole state document: per-file and per-session progress markers."""
    files: Dict[str, CounterState] = field(default_factory=dict)
    sessions: Dict[str, CounterState] = field(default_factory=dict)
    version: int = STATE_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "files": {path: entry.to_dict() for path, entry in self.files.items()},
            "sessions": {key: entry.to_dict() for key, entry in self.sessions.items()},
        }


def session_key(tool: str, session_id: str) -> str:
    """Key of a session entry in the state document."""
    return f"{tool}::{session_id}"


@dataclass(frozen=True)
class ProfileBindingEntry:
    """One line of the append-only profile binding log.

    ``kind == "use"`` records a profile activation; ``kind == "session"``
    attributes a transcript file and/or session id to a profile.
    """
    kind: str
    timestamp: str
    tool: Optional[str] = None
    profile_key: Optional[str] = None
    profile_name: Optional[str] = None
    terminal_tag: Optional[str] = None
    cwd: Optional[str] = None
    session_file: Optional[str] = None
    session_id: Optional[str] = None

    @property
    def identity(self) -> Optional[str]:
        return self.profile_key or self.profile_name

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "kind": self.kind,
            "profileKey": self.profile_key,
            "profileName": self.profile_name,
            "profileType": self.tool,
            "terminalTag": self.terminal_tag,
            "cwd": self.cwd,
            "sessionFile": self.session_file,
            "sessionId": self.session_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProfileBindingEntry":
        kind = "session" if str(data.get("kind") or "").lower() == "session" else "use"
        return cls(
            kind=kind,
            timestamp=str(data.get("timestamp") or ""),
            tool=normalize_tool(_optional_str(data.get("profileType"))),
            profile_key=_optional_str(data.get("profileKey")),
            profile_name=_optional_str(data.get("profileName")),
            terminal_tag=_optional_str(data.get("terminalTag")),
            cwd=_optional_str(data.get("cwd")),
            session_file=_optional_str(data.get("sessionFile")),
            session_id=_optional_str(data.get("sessionId")),
        )
