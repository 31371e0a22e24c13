"""
Profile binding resolution.

Decides which profile a session transcript belongs to, using only the
"session" entries of the binding log. Ambiguity is never guessed away.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from codenv_usage.config.loader import ProfileConfig
from codenv_usage.storage.models import ProfileBindingEntry

from .profiles import normalize_tool, profile_display_name

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProfileMatch:
    """The profile a session is attributed to."""
    profile_key: Optional[str]
    profile_name: Optional[str]


@dataclass(frozen=True)
class BindingResult:
    """Outcome of a resolution: a match, ambiguity, or neither."""
    match: Optional[ProfileMatch] = None
    ambiguous: bool = False

    @property
    def is_bound(self) -> bool:
        return self.match is not None


UNBOUND = BindingResult()


class ProfileBinder:
    """Resolve sessions to profiles from the binding log.

    Only ``session`` entries of the requested tool are considered; ``use``
    entries never attribute a session on their own.
    """

    def __init__(
        self,
        entries: Iterable[ProfileBindingEntry],
        profiles: Optional[Dict[str, ProfileConfig]] = None,
    ):
        self.profiles = profiles or {}
        self._session_entries: Dict[str, List[ProfileBindingEntry]] = {}
        for entry in entries:
            if entry.kind != "session" or not entry.tool:
                continue
            self._session_entries.setdefault(entry.tool, []).append(entry)

    def resolve(
        self,
        tool: str,
        session_file: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> BindingResult:
        """Find the profile bound to a session.

        Matching is by exact file path first and falls back to the session
        id. Within the matching entries, one distinct profile binds; more
        than one is ambiguous and binds nothing.

        Args:
            tool: Tool the session belongs to
            session_file: Transcript path as recorded in the binding log
            session_id: Session id recovered from the transcript

        Returns:
            BindingResult with the match, or flagged ambiguous
        """
        normalized = normalize_tool(tool)
        candidates = self._session_entries.get(normalized or "", [])

        if session_file:
            matches = [e for e in candidates if e.session_file == session_file]
            if matches:
                result = self._unique_match(matches, normalized)
                if result.match or result.ambiguous:
                    return result

        if session_id:
            matches = [e for e in candidates if e.session_id == session_id]
            if matches:
                result = self._unique_match(matches, normalized)
                if result.match or result.ambiguous:
                    return result

        return UNBOUND

    def _unique_match(
        self, entries: List[ProfileBindingEntry], tool: Optional[str]
    ) -> BindingResult:
        unique: Dict[str, ProfileBindingEntry] = {}
        for entry in entries:
            identity = entry.identity
            if identity and identity not in unique:
                unique[identity] = entry

        if not unique:
            return UNBOUND
        if len(unique) > 1:
            logger.debug("Ambiguous binding across profiles %s", sorted(unique))
            return BindingResult(ambiguous=True)

        entry = next(iter(unique.values()))
        return BindingResult(match=self._normalize_match(entry, tool))

    def _normalize_match(
        self, entry: ProfileBindingEntry, tool: Optional[str]
    ) -> ProfileMatch:
        profile_name = entry.profile_name
        profile = self.profiles.get(entry.profile_key) if entry.profile_key else None
        if profile is not None:
            profile_name = profile_display_name(entry.profile_key, profile, tool)
        if not profile_name:
            profile_name = entry.profile_key
        return ProfileMatch(profile_key=entry.profile_key, profile_name=profile_name)
