"""
File-based mutual exclusion for sync passes.

A lock is a file created with O_CREAT | O_EXCL holding the owner's pid
and an ISO timestamp. Acquisition never blocks: a caller that cannot
take the lock skips its sync and reads whatever data already exists.
"""

import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterator, Optional, Tuple, Union

logger = logging.getLogger(__name__)

LOCK_STALE_AFTER = timedelta(minutes=10)


@dataclass(frozen=True)
class LockHandle:
    """An acquired lock: the open descriptor and the lock file path."""
    path: Path
    fd: int


def is_process_alive(pid: int) -> Optional[bool]:
    """Probe ``pid`` with signal 0.

    Returns:
        True if the process exists, False if it doesn't, None if the
        probe is inconclusive on this platform
    """
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # exists, owned by another user
        return True
    except (OSError, AttributeError, ValueError):
        return None
    return True


def read_lock_info(lock_path: Path) -> Tuple[Optional[int], Optional[datetime]]:
    """Read ``(pid, timestamp)`` from a lock file; unreadable parts are None."""
    try:
        raw = lock_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return None, None

    lines = raw.splitlines()
    pid = None
    if lines:
        try:
            pid = int(lines[0].strip())
        except ValueError:
            pid = None
        if pid is not None and pid <= 0:
            pid = None

    timestamp = None
    if len(lines) > 1 and lines[1].strip():
        try:
            timestamp = datetime.fromisoformat(lines[1].strip().replace("Z", "+00:00"))
        except ValueError:
            timestamp = None
        if timestamp is not None and timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
    return pid, timestamp


def is_lock_stale(lock_path: Path, now: Optional[datetime] = None) -> bool:
    """Decide whether an existing lock has been abandoned.

    A recorded pid is authoritative when it can be probed. Only when
    there is no pid, or probing is inconclusive, does the lock age
    decide. A lock with neither is stale.
    """
    pid, timestamp = read_lock_info(lock_path)
    if pid is not None:
        alive = is_process_alive(pid)
        if alive is not None:
            return not alive
    if timestamp is not None:
        current = now or datetime.now(timezone.utc)
        return current - timestamp > LOCK_STALE_AFTER
    return True


def _try_create(lock_path: Path) -> Optional[int]:
    try:
        fd = os.open(str(lock_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    except FileExistsError:
        return None
    stamp = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    os.write(fd, f"{os.getpid()}\n{stamp}\n".encode("utf-8"))
    return fd


def acquire_lock(lock_path: Union[str, Path]) -> Optional[LockHandle]:
    """Try once to take the lock, reclaiming it once if it is stale.

    Args:
        lock_path: Path of the lock file

    Returns:
        LockHandle on success, None if another live process holds the lock
    """
    path = Path(lock_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd = _try_create(path)
    if fd is not None:
        return LockHandle(path=path, fd=fd)

    if not is_lock_stale(path):
        logger.debug("Lock %s is held by another process", path)
        return None

    logger.info("Reclaiming stale lock %s", path)
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Could not remove stale lock %s: %s", path, e)
        return None

    fd = _try_create(path)
    return LockHandle(path=path, fd=fd) if fd is not None else None


def release_lock(handle: Optional[LockHandle]) -> None:
    """Close and delete the lock file. Never raises."""
    if handle is None:
        return
    try:
        os.close(handle.fd)
    except OSError as e:
        logger.debug("Closing lock descriptor failed: %s", e)
    try:
        handle.path.unlink()
    except OSError as e:
        logger.debug("Removing lock %s failed: %s", handle.path, e)


@contextmanager
def state_lock(lock_path: Union[str, Path]) -> Iterator[Optional[LockHandle]]:
    """Hold the lock for the duration of a ``with`` block.

    Yields None when the lock is unavailable; the body decides what to
    do then (normally: skip the sync).
    """
    handle = acquire_lock(lock_path)
    try:
        yield handle
    finally:
        release_lock(handle)
