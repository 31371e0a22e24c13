"""
Ledger store for usage records.

Append-only JSON Lines file: one UsageRecord per line, never rewritten
in place. Reading is tolerant of malformed lines and older field names.
"""

import json
import logging
import os
from pathlib import Path
from typing import Iterator, List, Union

from .models import UsageRecord

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


class LedgerStore:
    """Append-only usage ledger backed by a JSONL file.

    Appends need no locking of their own: both writers (the sync pass and
    the statusline path) only append while holding the state lock.
    """

    def __init__(self, path: PathLike):
        """Initialize the store with a ledger file path.

        Args:
            path: Path to the JSONL ledger file
        """
        self.path = Path(path)

    def append(self, record: UsageRecord) -> None:
        """Append one record as a single JSON line.

        The line is written with one ``write`` call and flushed before the
        file is closed, so concurrent readers never see half a record.

        Args:
            record: The usage record to store
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        line = json.dumps(record.to_dict(), ensure_ascii=False) + "\n"
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(line)
            f.flush()
            os.fsync(f.fileno())

    def iter_records(self) -> Iterator[UsageRecord]:
        """Stream records from the ledger, skipping lines that don't parse."""
        if not self.path.exists():
            return

        with open(self.path, "r", encoding="utf-8", errors="replace") as f:
            for line_num, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    data = json.loads(line)
                except json.JSONDecodeError:
                    logger.debug("Skipping malformed ledger line %s:%d", self.path, line_num)
                    continue
                if not isinstance(data, dict):
                    continue
                yield UsageRecord.from_dict(data)

    def read_all(self) -> List[UsageRecord]:
        """Read every usage record in the ledger.

        Returns:
            List of records in file order; empty if the ledger doesn't exist
        """
        return list(self.iter_records())

    def clear(self) -> bool:
        """Delete the ledger file. Returns False if there was nothing to delete."""
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        return True


def append_usage_record(record: UsageRecord, path: PathLike) -> None:
    """Append a single usage record to the ledger at ``path``."""
    LedgerStore(path).append(record)


def read_usage_records(path: PathLike) -> List[UsageRecord]:
    """Read all usage records from the ledger at ``path``."""
    return LedgerStore(path).read_all()
