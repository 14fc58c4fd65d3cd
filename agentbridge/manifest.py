"""Session manifest model, agent task-states, staleness and register options."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

__all__ = [
    "SCHEMA_VERSION_V2",
    "ROLE_VAL",
    "ROLE_ESC",
    "ROLE_ARCHITECT",
    "ROLE_OBSERVER",
    "ROLE_NEUTRAL",
    "STATUS_ACTIVE",
    "STATE_IDLE",
    "STATE_WORKING",
    "STATE_DONE",
    "STATE_ORCHESTRATING",
    "ZERO_TIME",
    "ManifestError",
    "Manifest",
    "RegisterOpts",
    "is_valid_state",
    "states_hint",
    "is_stale",
    "format_time",
    "parse_time",
]

SCHEMA_VERSION_V2 = 2

ROLE_VAL = "val"
ROLE_ESC = "esc"
ROLE_ARCHITECT = "architect"
ROLE_OBSERVER = "observer"
ROLE_NEUTRAL = "neutral"

STATUS_ACTIVE = "active"

STATE_IDLE = "idle"
STATE_WORKING = "working"
STATE_DONE = "done"
STATE_ORCHESTRATING = "orchestrating"

_CANONICAL_STATES = (STATE_IDLE, STATE_WORKING, STATE_DONE, STATE_ORCHESTRATING)

ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)

_TIME_RE = re.compile(
    r"(\d{4})-(\d{2})-(\d{2})T(\d{2}):(\d{2}):(\d{2})(?:\.(\d{1,9}))?(Z|[+-]\d{2}:\d{2})"
)


class ManifestError(ValueError):
    """A manifest is missing required fields or cannot be decoded."""


def format_time(value: datetime) -> str:
    """Render ``value`` as RFC 3339 with trimmed fractional seconds.

    Naive datetimes are taken to be UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    text = (
        f"{value.year:04d}-{value.month:02d}-{value.day:02d}"
        f"T{value.hour:02d}:{value.minute:02d}:{value.second:02d}"
    )
    if value.microsecond:
        text += "." + f"{value.microsecond:06d}".rstrip("0")
    offset = value.utcoffset() or timedelta(0)
    if offset == timedelta(0):
        return text + "Z"
    minutes = int(offset.total_seconds()) // 60
    sign = "+" if minutes >= 0 else "-"
    hours, mins = divmod(abs(minutes), 60)
    return f"{text}{sign}{hours:02d}:{mins:02d}"


def parse_time(text: str) -> datetime:
    """Parse an RFC 3339 timestamp; digits beyond microseconds are truncated."""
    match = _TIME_RE.fullmatch(text)
    if match is None:
        raise ValueError(f"invalid RFC 3339 time {text!r}")
    year, month, day, hour, minute, second, fraction, zone = match.groups()
    micro = int((fraction or "").ljust(6, "0")[:6])
    if zone == "Z":
        tz = timezone.utc
    else:
        sign = 1 if zone[0] == "+" else -1
        tz = timezone(sign * timedelta(hours=int(zone[1:3]), minutes=int(zone[4:6])))
    return datetime(
        int(year), int(month), int(day), int(hour), int(minute), int(second), micro, tzinfo=tz
    )


def _field(data: dict[str, Any], key: str, kind: type, default: Any) -> Any:
    value = data.get(key)
    if value is None:
        return default
    if kind is int:
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value != int(value):
            raise ManifestError(f"manifest: field {key!r} must be an integer")
        return int(value)
    if not isinstance(value, kind):
        raise ManifestError(f"manifest: field {key!r} must be {kind.__name__}")
    return value


def _time_field(data: dict[str, Any], key: str) -> datetime:
    raw = _field(data, key, str, None)
    if raw is None:
        return ZERO_TIME
    try:
        return parse_time(raw)
    except ValueError as exc:
        raise ManifestError(f"manifest: field {key!r}: {exc}") from exc


@dataclass
class Manifest:
    """On-disk representation of a session (schema v2)."""

    session_id: str = ""
    schema_version: int = SCHEMA_VERSION_V2
    project_name: str = ""
    project_path: str = ""
    agent_name: str = ""
    role: str = ""
    pid: int = 0
    started_at: datetime = ZERO_TIME
    last_heartbeat: datetime = ZERO_TIME
    status: str = ""
    capabilities: list[str] = field(default_factory=list)
    last_consumed_msg_id: str = ""
    team_id: str = ""
    scope: str = ""
    state: str = ""

    def validate(self) -> None:
        """Raise ``ManifestError`` unless the minimum required fields are present."""
        if not self.session_id:
            raise ManifestError("manifest: empty sessionId")
        if not self.project_path:
            raise ManifestError(f"manifest: empty projectPath (sessionId={self.session_id})")
        if self.schema_version not in (SCHEMA_VERSION_V2, 1):
            raise ManifestError(
                f"manifest: unsupported schemaVersion={self.schema_version} "
                f"(sessionId={self.session_id}, supported: 1, 2)"
            )

    def apply_v1_defaults(self) -> None:
        """Fill v2-only fields with safe defaults when read from a v1 manifest."""
        if not self.role:
            self.role = ROLE_NEUTRAL
        if not self.agent_name:
            self.agent_name = self.project_name
        # The PID stays 0: no owning process can be inferred for a v1 manifest.

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON object form; optional empty fields are omitted."""
        data: dict[str, Any] = {
            "sessionId": self.session_id,
            "schemaVersion": self.schema_version,
            "projectName": self.project_name,
            "projectPath": self.project_path,
            "agentName": self.agent_name,
            "role": self.role,
            "pid": self.pid,
            "startedAt": format_time(self.started_at),
            "lastHeartbeat": format_time(self.last_heartbeat),
            "status": self.status,
            "capabilities": list(self.capabilities),
        }
        optional = {
            "lastConsumedMsgId": self.last_consumed_msg_id,
            "teamId": self.team_id,
            "scope": self.scope,
            "state": self.state,
        }
        data.update({key: value for key, value in optional.items() if value})
        return data

    @classmethod
    def from_dict(cls, data: Any) -> Manifest:
        """Build a manifest from its JSON object form; missing fields take zero values."""
        if not isinstance(data, dict):
            raise ManifestError("manifest: expected a JSON object")
        capabilities = _field(data, "capabilities", list, [])
        if not all(isinstance(item, str) for item in capabilities):
            raise ManifestError("manifest: field 'capabilities' must hold strings")
        return cls(
            session_id=_field(data, "sessionId", str, ""),
            schema_version=_field(data, "schemaVersion", int, 0),
            project_name=_field(data, "projectName", str, ""),
            project_path=_field(data, "projectPath", str, ""),
            agent_name=_field(data, "agentName", str, ""),
            role=_field(data, "role", str, ""),
            pid=_field(data, "pid", int, 0),
            started_at=_time_field(data, "startedAt"),
            last_heartbeat=_time_field(data, "lastHeartbeat"),
            status=_field(data, "status", str, ""),
            capabilities=list(capabilities),
            last_consumed_msg_id=_field(data, "lastConsumedMsgId", str, ""),
            team_id=_field(data, "teamId", str, ""),
            scope=_field(data, "scope", str, ""),
            state=_field(data, "state", str, ""),
        )


@dataclass
class RegisterOpts:
    """Inputs for registering (or resuming) a session."""

    project_path: str = ""
    agent_name: str = ""
    role: str = ""
    force_new: bool = False
    capabilities: list[str] = field(default_factory=list)
    team_id: str = ""
    scope: str = ""
    resume: bool = False


def is_valid_state(state: str) -> bool:
    """Report whether ``state`` is one of the canonical agent states."""
    return state in _CANONICAL_STATES


def states_hint() -> str:
    """Return the canonical states, comma separated, in fixed order."""
    return ", ".join(_CANONICAL_STATES)


def is_stale(manifest: Manifest, stale_seconds: int, now: datetime) -> bool:
    """Report whether the session's heartbeat is older than ``stale_seconds``.

    A session in the orchestrating state is heartbeat-exempt and never stale.
    """
    if manifest.state == STATE_ORCHESTRATING:
        return False
    return now - manifest.last_heartbeat > timedelta(seconds=stale_seconds)