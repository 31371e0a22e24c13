"""
Session log parsing.

Extracts per-session token totals from the two supported transcript
formats. Each format is a strategy implementing ``extract(path)``:

- ``CumulativeCounterFormat`` (codex): token_count events carry a running
  total for the whole session plus the last turn's delta.
- ``AdditiveMessageFormat`` (claude): every message carries its own usage,
  which is summed over the file.
"""

import json
import logging
import os
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

from .profiles import CLAUDE, CODEX, normalize_tool
from .token_counter import TokenUsage, coerce_count, first_count

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

UUID_RE = re.compile(
    r"([0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12})"
)
SYNTHETIC_MODELS = {"<synthetic>"}
MODEL_KEYS = ("model", "modelId", "model_id")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class SessionStats:
    """Normalized totals for one session transcript."""
    usage: TokenUsage
    start_ts: Optional[str] = None
    end_ts: Optional[str] = None
    cwd: Optional[str] = None
    session_id: Optional[str] = None
    model: Optional[str] = None


class _TimeRange:
    def __init__(self):
        self.start: Optional[str] = None
        self.end: Optional[str] = None
        self._start_dt: Optional[datetime] = None
        self._end_dt: Optional[datetime] = None

    def update(self, raw: Any) -> None:
        parsed = parse_timestamp(raw)
        if parsed is None:
            return
        if self._start_dt is None or parsed < self._start_dt:
            self._start_dt, self.start = parsed, raw
        if self._end_dt is None or parsed > self._end_dt:
            self._end_dt, self.end = parsed, raw


def iter_json_lines(path: PathLike) -> Iterator[Dict[str, Any]]:
    """Yield each JSON object in a JSONL file, skipping malformed lines."""
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                data = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(data, dict):
                yield data


def session_id_from_filename(path: PathLike) -> Optional[str]:
    """Return the last UUID embedded in a transcript file name, if any."""
    matches = UUID_RE.findall(Path(path).name)
    return matches[-1] if matches else None


def _record(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _text(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


class SessionLogFormat:
    """Strategy interface: turn one transcript file into SessionStats."""

    tool: str = ""

    def extract(self, path: PathLike) -> SessionStats:
        """Parse ``path``.

        Raises:
            OSError: If the file cannot be read
        """
        raise NotImplementedError


class CumulativeCounterFormat(SessionLogFormat):
    """Codex rollout transcripts.

    The definitive counters are the per-field maxima of the cumulative
    ``total_token_usage`` snapshots. Transcripts that never report a
    cumulative total fall back to the sum of ``last_token_usage`` deltas.
    Upstream counts cached input inside ``input_tokens``; it is split out
    here so the categories don't overlap.
    """

    tool = CODEX

    def extract(self, path: PathLike) -> SessionStats:
        max_input = max_output = max_cached = max_total = 0
        sum_input = sum_output = sum_cached = sum_total = 0
        has_cumulative = False
        time_range = _TimeRange()
        cwd = session_id = model = None

        for entry in iter_json_lines(path):
            time_range.update(entry.get("timestamp"))
            entry_type = entry.get("type")
            payload = _record(entry.get("payload"))

            if entry_type == "session_meta":
                cwd = cwd or _text(payload.get("cwd"))
                session_id = session_id or _text(payload.get("id"))
                model = _text(payload.get("model")) or model
                continue
            if entry_type == "turn_context":
                cwd = cwd or _text(payload.get("cwd"))
                model = _text(payload.get("model")) or model
                continue
            if entry_type != "event_msg" or payload.get("type") != "token_count":
                continue

            info = _record(payload.get("info"))
            total_usage = _record(info.get("total_token_usage"))
            last_usage = _record(info.get("last_token_usage"))

            cumulative_total = coerce_count(total_usage.get("total_tokens"))
            if cumulative_total is not None:
                has_cumulative = True
                max_total = max(max_total, cumulative_total)
                max_input = max(max_input, coerce_count(total_usage.get("input_tokens")) or 0)
                max_output = max(max_output, coerce_count(total_usage.get("output_tokens")) or 0)
                max_cached = max(
                    max_cached, coerce_count(total_usage.get("cached_input_tokens")) or 0
                )
            else:
                sum_total += coerce_count(last_usage.get("total_tokens")) or 0
                sum_input += coerce_count(last_usage.get("input_tokens")) or 0
                sum_output += coerce_count(last_usage.get("output_tokens")) or 0
                sum_cached += coerce_count(last_usage.get("cached_input_tokens")) or 0

        if has_cumulative:
            input_tokens, output_tokens, cached, total = max_input, max_output, max_cached, max_total
        else:
            input_tokens, output_tokens, cached, total = sum_input, sum_output, sum_cached, sum_total

        usage = TokenUsage(
            input_tokens=max(0, input_tokens - cached),
            output_tokens=output_tokens,
            cache_read_tokens=cached,
            cache_write_tokens=0,
            total_tokens=total,
        )
        return SessionStats(
            usage=usage,
            start_ts=time_range.start,
            end_ts=time_range.end,
            cwd=cwd,
            session_id=session_id or session_id_from_filename(path),
            model=model,
        )


class AdditiveMessageFormat(SessionLogFormat):
    """Claude project transcripts: per-message usage, summed over the file."""

    tool = CLAUDE

    def extract(self, path: PathLike) -> SessionStats:
        input_tokens = output_tokens = cache_read = cache_write = 0
        time_range = _TimeRange()
        cwd = session_id = model = None

        for entry in iter_json_lines(path):
            time_range.update(entry.get("timestamp"))
            cwd = cwd or _text(entry.get("cwd"))
            session_id = session_id or _text(entry.get("sessionId"))

            message = _record(entry.get("message"))
            found_model = _find_model(message) or _find_model(entry)
            if found_model:
                model = found_model

            usage = _record(message.get("usage"))
            if not usage:
                continue
            input_tokens += first_count(usage, "input_tokens") or 0
            output_tokens += first_count(usage, "output_tokens") or 0
            cache_write += first_count(usage, "cache_creation_input_tokens") or 0
            cache_read += first_count(usage, "cache_read_input_tokens") or 0

        stem_id = Path(path).stem
        if not session_id and UUID_RE.fullmatch(stem_id):
            session_id = stem_id

        return SessionStats(
            usage=TokenUsage.from_counts(
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                cache_read_tokens=cache_read,
                cache_write_tokens=cache_write,
            ),
            start_ts=time_range.start,
            end_ts=time_range.end,
            cwd=cwd,
            session_id=session_id,
            model=model,
        )


def _find_model(record: Dict[str, Any]) -> Optional[str]:
    for key in MODEL_KEYS:
        value = _text(record.get(key))
        if value and value not in SYNTHETIC_MODELS:
            return value
    return None


_FORMATS = {
    CODEX: CumulativeCounterFormat,
    CLAUDE: AdditiveMessageFormat,
}


def format_for_tool(tool: str) -> SessionLogFormat:
    """Get the transcript format strategy for ``tool``.

    Raises:
        ValueError: If the tool has no known transcript format
    """
    normalized = normalize_tool(tool)
    if normalized not in _FORMATS:
        raise ValueError(f"Unsupported tool: {tool}")
    return _FORMATS[normalized]()


def parse_session_file(path: PathLike, tool: str) -> SessionStats:
    """Parse one transcript with the format matching ``tool``."""
    return format_for_tool(tool).extract(path)


def collect_session_files(root: Optional[PathLike]) -> List[Path]:
    """Recursively list ``*.jsonl`` transcripts under ``root``.

    Hidden files and directories are skipped, unreadable directories
    are ignored, and a missing root yields an empty list.
    """
    if root is None:
        return []
    root_path = Path(root)
    if not root_path.is_dir():
        return []

    files = []
    stack = [root_path]
    while stack:
        current = stack.pop()
        try:
            entries = list(os.scandir(current))
        except OSError as e:
            logger.debug("Skipping unreadable directory %s: %s", current, e)
            continue
        for entry in entries:
            if entry.name.startswith("."):
                continue
            try:
                if entry.is_dir():
                    stack.append(Path(entry.path))
                elif entry.is_file() and entry.name.endswith(".jsonl"):
                    files.append(Path(entry.path))
            except OSError:
                continue
    return sorted(files)
