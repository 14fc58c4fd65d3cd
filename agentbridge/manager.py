"""Session lifecycle: registration, manifest storage, lookup and heartbeats."""

from __future__ import annotations

import os
import secrets
import shutil
import threading
from datetime import datetime, timezone
from typing import Callable

from .atomic import atomic_write_json, read_json
from .lock import SessionLock, acquire_lock, is_process_alive
from .manifest import (
    ROLE_NEUTRAL,
    SCHEMA_VERSION_V2,
    STATUS_ACTIVE,
    Manifest,
    RegisterOpts,
)
from .reconnect import try_reuse
from .scope import is_path_descendant_or_equal

__all__ = [
    "DEFAULT_CAPABILITIES",
    "NoSessionForCwdError",
    "SessionExistsForProjectError",
    "Heartbeat",
    "Manager",
    "generate_session_id",
]

DEFAULT_CAPABILITIES = ("query", "context-dump", "conversation")


class NoSessionForCwdError(LookupError):
    """No manifest's project path matches the directory or any of its ancestors."""

    def __init__(self) -> None:
        super().__init__("no session matches cwd or its ancestors")


class SessionExistsForProjectError(Exception):
    """A live session already exists for the project path."""

    def __init__(self, project_path: str, session_id: str, pid: int) -> None:
        self.project_path = project_path
        self.session_id = session_id
        self.pid = pid
        super().__init__(
            f"session already exists for project: project {project_path!r} already has "
            f"active session {session_id} (pid {pid}), use --force-new to override"
        )


class Heartbeat:
    """A background thread that calls ``tick`` every ``interval`` seconds until stopped."""

    def __init__(self, interval: float, tick: Callable[[], object]) -> None:
        self._stopped = threading.Event()
        self._thread = threading.Thread(
            target=self._run, args=(interval, tick), name="agentbridge-heartbeat", daemon=True
        )
        self._thread.start()

    def _run(self, interval: float, tick: Callable[[], object]) -> None:
        while not self._stopped.wait(interval):
            try:
                tick()
            except (OSError, ValueError):
                # Best effort: the next tick retries.
                pass

    def stop(self) -> None:
        """Ask the thread to exit; it stops before its next tick."""
        self._stopped.set()

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the thread to exit; return whether it has."""
        self._thread.join(timeout)
        return not self._thread.is_alive()


def generate_session_id() -> str:
    """Return 8 lowercase hex characters (4 random bytes)."""
    return secrets.token_hex(4)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Manager:
    """Owns session state on disk under ``data_dir``; safe to share across threads."""

    def __init__(
        self,
        data_dir: str | os.PathLike[str],
        heartbeat_interval: float = 1.0,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self.data_dir = os.fspath(data_dir)
        self.heartbeat_interval = heartbeat_interval
        self.now = now or _utc_now
        # Serialises every read-modify-write of a manifest in this process.
        self._manifest_lock = threading.Lock()

    def _current_time(self) -> datetime:
        value = (self.now or _utc_now)()
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def session_dir(self, session_id: str) -> str:
        """Return the per-session directory; ``session_id`` is not validated."""
        return os.path.join(self.data_dir, "sessions", session_id)

    def _manifest_path(self, session_id: str) -> str:
        return os.path.join(self.session_dir(session_id), "manifest.json")

    def register(self, opts: RegisterOpts) -> tuple[Manifest, SessionLock]:
        """Create (or, with ``resume``, reuse) a session and return it with its lock.

        Raises ``SessionExistsForProjectError`` when a live session already owns
        the same project path and ``force_new`` is not set.
        """
        if not opts.project_path:
            raise ValueError("register: ProjectPath required")
        abs_proj = os.path.normpath(os.path.abspath(opts.project_path))

        if opts.resume and not opts.force_new:
            resumed = try_reuse(self, abs_proj, opts)
            if resumed is not None:
                return resumed

        if not opts.force_new:
            self._refuse_live_duplicate(abs_proj)

        session_id = generate_session_id()
        session_dir = self.session_dir(session_id)
        os.makedirs(session_dir, mode=0o700, exist_ok=True)
        for sub in ("inbox", "outbox"):
            os.makedirs(os.path.join(session_dir, sub), mode=0o700, exist_ok=True)
        try:
            os.chmod(session_dir, 0o700)
        except OSError:
            pass

        try:
            lock = acquire_lock(os.path.join(session_dir, "lock"), opts.force_new)
        except BaseException:
            shutil.rmtree(session_dir, ignore_errors=True)
            raise

        now = self._current_time()
        base = os.path.basename(abs_proj)
        manifest = Manifest(
            session_id=session_id,
            schema_version=SCHEMA_VERSION_V2,
            project_name=base,
            project_path=abs_proj,
            agent_name=opts.agent_name or base,
            role=opts.role or ROLE_NEUTRAL,
            pid=os.getpid(),
            started_at=now,
            last_heartbeat=now,
            status=STATUS_ACTIVE,
            capabilities=list(opts.capabilities or DEFAULT_CAPABILITIES),
            team_id=opts.team_id,
            scope=opts.scope,
        )
        try:
            self.save_manifest(manifest)
        except BaseException:
            lock.release()
            shutil.rmtree(session_dir, ignore_errors=True)
            raise
        return manifest, lock

    def _refuse_live_duplicate(self, abs_proj: str) -> None:
        try:
            existing_id = self.longest_prefix_lookup(abs_proj)
            existing = self.load_manifest(existing_id)
        except (NoSessionForCwdError, OSError, ValueError):
            return
        if os.path.normpath(existing.project_path) == abs_proj and is_process_alive(existing.pid):
            raise SessionExistsForProjectError(abs_proj, existing_id, existing.pid)

    def save_manifest(self, manifest: Manifest) -> None:
        """Validate and atomically write the session's manifest.json."""
        manifest.validate()
        atomic_write_json(self._manifest_path(manifest.session_id), manifest.to_dict())

    def load_manifest(self, session_id: str) -> Manifest:
        """Read and validate manifest.json, applying v1 defaults to v1 manifests."""
        manifest = Manifest.from_dict(read_json(self._manifest_path(session_id)))
        manifest.validate()
        if manifest.schema_version == 1:
            manifest.apply_v1_defaults()
        return manifest

    def longest_prefix_lookup(self, cwd: str | os.PathLike[str]) -> str:
        """Return the session directory name whose project path is the longest
        prefix of ``cwd``; raise ``NoSessionForCwdError`` when none matches."""
        abs_cwd = os.path.abspath(os.fspath(cwd))
        sessions_root = os.path.join(self.data_dir, "sessions")
        try:
            with os.scandir(sessions_root) as scan:
                names = sorted(entry.name for entry in scan if entry.is_dir())
        except FileNotFoundError:
            raise NoSessionForCwdError() from None

        best_match = ""
        best_len = -1
        for name in names:
            try:
                manifest = self.load_manifest(name)
            except (OSError, ValueError):
                continue
            if not is_path_descendant_or_equal(abs_cwd, manifest.project_path):
                continue
            if len(manifest.project_path) > best_len:
                best_len = len(manifest.project_path)
                # The directory name, never the manifest's own sessionId field.
                best_match = name

        if not best_match:
            raise NoSessionForCwdError()
        return best_match

    def start_heartbeat(self, session_id: str) -> Heartbeat:
        """Refresh the session's heartbeat every ``heartbeat_interval`` seconds."""
        return Heartbeat(self.heartbeat_interval, lambda: self.touch(session_id))

    def touch(self, session_id: str) -> None:
        """Set the session's last heartbeat to now."""
        with self._manifest_lock:
            manifest = self.load_manifest(session_id)
            manifest.last_heartbeat = self._current_time()
            self.save_manifest(manifest)

    def set_last_consumed(self, session_id: str, msg_id: str) -> None:
        """Record the most recently consumed inbox message."""
        with self._manifest_lock:
            manifest = self.load_manifest(session_id)
            manifest.last_consumed_msg_id = msg_id
            self.save_manifest(manifest)

    def set_state(self, session_id: str, state: str) -> None:
        """Record the agent task-state and refresh the heartbeat."""
        with self._manifest_lock:
            manifest = self.load_manifest(session_id)
            manifest.state = state
            manifest.last_heartbeat = self._current_time()
            self.save_manifest(manifest)

    def adopt_pid(self, session_id: str) -> None:
        """Claim the session for this process: write its PID and refresh the heartbeat."""
        with self._manifest_lock:
            manifest = self.load_manifest(session_id)
            manifest.pid = os.getpid()
            manifest.last_heartbeat = self._current_time()
            self.save_manifest(manifest)

    def adopt_and_backfill(self, session_id: str, scope: str) -> Manifest:
        """Adopt the session and fill in ``scope`` if it has none; return the manifest."""
        with self._manifest_lock:
            manifest = self.load_manifest(session_id)
            manifest.pid = os.getpid()
            manifest.last_heartbeat = self._current_time()
            if not manifest.scope and scope:
                manifest.scope = scope
            self.save_manifest(manifest)
            return manifest