"""
State store for sync progress.

Persists the last observed cumulative counters per session log file
and per logical session, so each sync pass only emits deltas.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Union

from .models import CounterState, UsageState

logger = logging.getLogger(__name__)


class StateStore:
    """JSON document ``{version, files, sessions}`` rewritten whole on save."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def load(self) -> UsageState:
        """Load the state document.

        A missing, unreadable or malformed document is treated as empty
        state; individual malformed entries are dropped.
        """
        if not self.path.exists():
            return UsageState()
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable usage state %s: %s", self.path, e)
            return UsageState()
        if not isinstance(raw, dict):
            return UsageState()

        return UsageState(
            files=_load_entries(raw.get("files")),
            sessions=_load_entries(raw.get("sessions")),
        )

    def save(self, state: UsageState) -> None:
        """Atomically replace the state document.

        Must be called with the state lock held.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(state.to_dict(), indent=2, ensure_ascii=False) + "\n"
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise

    def clear(self) -> bool:
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        return True


def _load_entries(raw: Any) -> Dict[str, CounterState]:
    if not isinstance(raw, dict):
        return {}
    entries = {}
    for key, value in raw.items():
        if not isinstance(value, dict):
            continue
        entries[str(key)] = CounterState.from_dict(value)
    return entries
