"""Atomic file writes, JSON helpers and the inbox-to-processed move."""

from __future__ import annotations

import errno
import json
import os
import tempfile
import time
from typing import Any

__all__ = [
    "atomic_write_json",
    "atomic_write_bytes",
    "read_json",
    "move_to_processed",
]


def atomic_write_json(path: str | os.PathLike[str], value: Any) -> None:
    """Serialise ``value`` as indented JSON and write it atomically with mode 0o600."""
    try:
        text = json.dumps(value, indent=2, ensure_ascii=False)
    except (TypeError, ValueError) as exc:
        raise TypeError(f"marshal json for {os.fspath(path)!r}: {exc}") from exc
    atomic_write_bytes(path, text.encode("utf-8"), 0o600)


def atomic_write_bytes(
    path: str | os.PathLike[str], data: bytes, mode: int = 0o600
) -> None:
    """Write ``data`` to ``path`` via a same-directory temp file, fsync and rename.

    The temp file lives in the target's directory so the final rename stays on
    one filesystem. A cross-filesystem rename raises ``OSError`` with
    ``errno.EXDEV`` rather than falling back to a non-atomic copy.
    """
    target = os.fspath(path)
    directory = os.path.dirname(target) or "."

    fd, tmp_path = tempfile.mkstemp(prefix=".tmp.", dir=directory)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        # Explicit chmod so the result does not depend on the process umask.
        os.chmod(tmp_path, mode)
        try:
            os.rename(tmp_path, target)
        except OSError as exc:
            if exc.errno == errno.EXDEV:
                raise OSError(
                    errno.EXDEV,
                    f"rename {tmp_path!r} -> {target!r}: cross-filesystem rename "
                    "is not atomic; temp dir and target must share a filesystem",
                ) from exc
            raise
    except BaseException:
        try:
            os.remove(tmp_path)
        except FileNotFoundError:
            pass
        raise


def read_json(path: str | os.PathLike[str]) -> Any:
    """Read ``path`` and return its decoded JSON value.

    A missing file raises ``FileNotFoundError``; malformed JSON raises ``ValueError``.
    """
    with open(path, "rb") as handle:
        data = handle.read()
    try:
        return json.loads(data)
    except ValueError as exc:
        raise ValueError(f"unmarshal {os.fspath(path)!r}: {exc}") from exc


def _processed_stamp() -> str:
    ns = time.time_ns()
    seconds, fraction = divmod(ns, 1_000_000_000)
    return time.strftime("%Y%m%dT%H%M%S", time.gmtime(seconds)) + f".{fraction:09d}Z"


def move_to_processed(
    src_inbox_path: str | os.PathLike[str], processed_dir: str | os.PathLike[str]
) -> str:
    """Move a message file into ``processed_dir`` under a timestamp-prefixed name.

    The name is ``<UTC stamp with nanoseconds>-<original basename>``, so lexical
    order is chronological. ``processed_dir`` is created with mode 0o700 when
    missing. Returns the destination path.
    """
    src = os.fspath(src_inbox_path)
    processed = os.fspath(processed_dir)
    os.makedirs(processed, mode=0o700, exist_ok=True)

    dst = os.path.join(processed, f"{_processed_stamp()}-{os.path.basename(src)}")
    try:
        os.rename(src, dst)
    except OSError as exc:
        if exc.errno == errno.EXDEV:
            raise OSError(
                errno.EXDEV,
                f"move {src!r} -> {dst!r}: cross-filesystem rename is not atomic; "
                "inbox and processed dirs must share a filesystem",
            ) from exc
        raise
    return dst