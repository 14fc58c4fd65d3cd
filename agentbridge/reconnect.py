"""Reconnect-or-register: resume an abandoned session with a matching identity."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Protocol

from .lock import LockHeldError, SessionLock, acquire_lock, is_process_alive
from .manifest import ROLE_NEUTRAL, Manifest, RegisterOpts
from .scope import is_path_descendant_or_equal

__all__ = [
    "IdentityLiveError",
    "IdentityMatch",
    "scope_matches",
    "find_identity_matches",
    "try_reuse",
]


class IdentityLiveError(Exception):
    """Every session with the requested identity is held by a live process."""

    def __init__(self) -> None:
        super().__init__(
            "a live session already exists with this identity: "
            "use --force-new for a second instance"
        )


@dataclass
class IdentityMatch:
    """A candidate session: its directory name and its manifest."""

    id: str
    manifest: Manifest


class _SessionStore(Protocol):
    data_dir: str

    def load_manifest(self, session_id: str) -> Manifest: ...

    def session_dir(self, session_id: str) -> str: ...

    def adopt_and_backfill(self, session_id: str, scope: str) -> Manifest: ...


def scope_matches(manifest: Manifest, want_scope: str, abs_proj: str) -> bool:
    """Equal non-empty scopes match; a scope-less manifest matches when its
    project path is an ancestor of, or equal to, ``abs_proj``."""
    if manifest.scope:
        return manifest.scope == want_scope
    return is_path_descendant_or_equal(abs_proj, manifest.project_path)


def find_identity_matches(
    manager: _SessionStore, abs_proj: str, opts: RegisterOpts
) -> list[IdentityMatch]:
    """Return sessions matching agent name, role, team and scope, most recent first.

    Order is last heartbeat descending, then start time descending, then id.
    Unreadable or invalid manifests are skipped.
    """
    want_agent = opts.agent_name or os.path.basename(abs_proj)
    want_role = opts.role or ROLE_NEUTRAL

    sessions_root = os.path.join(manager.data_dir, "sessions")
    try:
        entries = sorted(
            (entry for entry in os.scandir(sessions_root) if entry.is_dir()),
            key=lambda entry: entry.name,
        )
    except FileNotFoundError:
        return []

    matches: list[IdentityMatch] = []
    for entry in entries:
        try:
            manifest = manager.load_manifest(entry.name)
        except (OSError, ValueError):
            continue
        if manifest.agent_name != want_agent or manifest.role != want_role:
            continue
        if opts.team_id and manifest.team_id != opts.team_id:
            continue
        if not scope_matches(manifest, opts.scope, abs_proj):
            continue
        matches.append(IdentityMatch(entry.name, manifest))

    # Entries are already in id order; a stable reverse sort keeps it for ties.
    matches.sort(
        key=lambda match: (match.manifest.last_heartbeat, match.manifest.started_at),
        reverse=True,
    )
    return matches


def try_reuse(
    manager: _SessionStore, abs_proj: str, opts: RegisterOpts
) -> tuple[Manifest, SessionLock] | None:
    """Resume the most recent matching session whose owner process is dead.

    Returns the adopted manifest and its lock, or ``None`` when nothing is
    resumable and a fresh session should be registered. Raises
    ``IdentityLiveError`` when matches exist but all are owned by live processes.
    """
    matches = find_identity_matches(manager, abs_proj, opts)
    if not matches:
        return None

    saw_live = False
    for candidate in matches:
        if is_process_alive(candidate.manifest.pid):
            saw_live = True
            continue
        try:
            lock = acquire_lock(os.path.join(manager.session_dir(candidate.id), "lock"), False)
        except LockHeldError:
            saw_live = True
            continue
        except OSError:
            continue
        try:
            manifest = manager.adopt_and_backfill(candidate.id, opts.scope)
        except BaseException:
            lock.release()
            raise
        return manifest, lock

    if saw_live:
        raise IdentityLiveError()
    return None