"""PID lock files with atomic creation and stale-holder recovery."""

from __future__ import annotations

import os
import re
from types import TracebackType

__all__ = [
    "LockHeldError",
    "SessionLock",
    "acquire_lock",
    "read_pid_from_lock",
    "is_process_alive",
]

_PID_RE = re.compile(r"[+-]?[0-9]+")


class LockHeldError(Exception):
    """The lock file exists and its holder process is alive."""

    def __init__(self, lock_path: str, pid: int) -> None:
        self.lock_path = lock_path
        self.pid = pid
        super().__init__(
            f"session lock held by live process: lockPath={lock_path!r} "
            f"holder pid={pid} (use --force-new to override)"
        )


class SessionLock:
    """A held lock file; ``release`` removes it unless the hold is re-entrant."""

    def __init__(self, path: str, owned: bool = True) -> None:
        self.path = path
        self.owned = owned

    def release(self) -> None:
        """Remove the lock file. A missing file is not an error."""
        if not self.owned:
            return
        try:
            os.remove(self.path)
        except FileNotFoundError:
            pass

    def __enter__(self) -> SessionLock:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()

    def __repr__(self) -> str:
        return f"SessionLock(path={self.path!r}, owned={self.owned})"


def _remove_quietly(path: str) -> None:
    try:
        os.remove(path)
    except OSError:
        pass


def _try_create(lock_path: str) -> SessionLock:
    """Single O_EXCL attempt; raises ``FileExistsError`` if the lock exists."""
    fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
    try:
        with os.fdopen(fd, "w", encoding="ascii") as handle:
            handle.write(f"{os.getpid()}\n")
    except OSError:
        _remove_quietly(lock_path)
        raise
    return SessionLock(lock_path)


def read_pid_from_lock(lock_path: str | os.PathLike[str]) -> int:
    """Read the PID stored in a lock file.

    Raises ``OSError`` if the file cannot be read and ``ValueError`` if its
    content is not an integer.
    """
    with open(lock_path, encoding="utf-8", errors="replace") as handle:
        text = handle.read().rstrip("\n")
    if not _PID_RE.fullmatch(text):
        raise ValueError(f"malformed lock content {text!r}")
    return int(text)


def is_process_alive(pid: int) -> bool:
    """Report whether a process with ``pid`` exists.

    Non-positive PIDs are never alive. A process owned by another user counts
    as alive, and so does any unexpected probe failure.
    """
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except (OSError, OverflowError):
        return True
    return True


def acquire_lock(lock_path: str | os.PathLike[str], force_new: bool = False) -> SessionLock:
    """Atomically create ``lock_path`` holding the current PID.

    An existing lock whose holder is dead or whose content is malformed is
    removed and the creation retried once. A lock already held by this process
    yields a re-entrant lock whose release does nothing. ``force_new`` removes
    any existing lock first. Raises ``LockHeldError`` when a live process holds
    the lock.
    """
    path = os.fspath(lock_path)
    if force_new:
        _remove_quietly(path)

    try:
        return _try_create(path)
    except FileExistsError:
        pass

    try:
        existing_pid = read_pid_from_lock(path)
    except (OSError, ValueError):
        _remove_quietly(path)
        return _try_create(path)

    if existing_pid == os.getpid():
        return SessionLock(path, owned=False)

    if is_process_alive(existing_pid):
        raise LockHeldError(path, existing_pid)

    _remove_quietly(path)
    return _try_create(path)