"""
Profile binding log.

Append-only JSON Lines log recording which profile was activated
("use" entries) and which session transcripts belong to which profile
("session" entries). Entries are never mutated or deleted.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Set, Union

from .models import ProfileBindingEntry

logger = logging.getLogger(__name__)


@dataclass
class SessionBindingIndex:
    """Transcript files and session ids that already have a binding."""
    by_file: Set[str] = field(default_factory=set)
    by_id: Set[str] = field(default_factory=set)

    def is_bound(self, session_file: Optional[str], session_id: Optional[str]) -> bool:
        return bool(
            (session_file and session_file in self.by_file)
            or (session_id and session_id in self.by_id)
        )


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class BindingLog:
    """Reader and appender for the profile binding log."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def append(self, entry: ProfileBindingEntry) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry.to_dict(), ensure_ascii=False) + "\n")

    def read_entries(self) -> List[ProfileBindingEntry]:
        """Read every entry; malformed lines are skipped."""
        if not self.path.exists():
            return []
        entries = []
        with open(self.path, "r", encoding="utf-8", errors="replace") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    data = json.loads(line)
                except json.JSONDecodeError:
                    logger.debug("Skipping malformed binding log line in %s", self.path)
                    continue
                if isinstance(data, dict):
                    entries.append(ProfileBindingEntry.from_dict(data))
        return entries

    def log_profile_use(
        self,
        tool: str,
        profile_key: str,
        profile_name: Optional[str] = None,
        terminal_tag: Optional[str] = None,
        cwd: Optional[str] = None,
        timestamp: Optional[str] = None,
    ) -> ProfileBindingEntry:
        """Record that an operator activated a profile."""
        entry = ProfileBindingEntry(
            kind="use",
            timestamp=timestamp or _now_iso(),
            tool=tool,
            profile_key=profile_key,
            profile_name=profile_name or profile_key,
            terminal_tag=terminal_tag,
            cwd=cwd,
        )
        self.append(entry)
        return entry

    def log_session_binding(
        self,
        tool: str,
        profile_key: Optional[str],
        profile_name: Optional[str],
        session_file: Optional[str] = None,
        session_id: Optional[str] = None,
        terminal_tag: Optional[str] = None,
        cwd: Optional[str] = None,
        timestamp: Optional[str] = None,
    ) -> Optional[ProfileBindingEntry]:
        """Attribute a session transcript and/or session id to a profile.

        Returns None without writing anything when neither a profile key
        nor a profile name is given. A name-only binding keeps its key
        empty so distinct names stay distinct identities.
        """
        if not profile_key and not profile_name:
            return None
        entry = ProfileBindingEntry(
            kind="session",
            timestamp=timestamp or _now_iso(),
            tool=tool,
            profile_key=profile_key,
            profile_name=profile_name or profile_key,
            terminal_tag=terminal_tag,
            cwd=cwd,
            session_file=session_file,
            session_id=session_id,
        )
        self.append(entry)
        return entry

    def session_binding_index(self) -> SessionBindingIndex:
        index = SessionBindingIndex()
        for entry in self.read_entries():
            if entry.kind != "session":
                continue
            if entry.session_file:
                index.by_file.add(entry.session_file)
            if entry.session_id:
                index.by_id.add(entry.session_id)
        return index
