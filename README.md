# agentbridge

A small library for registering and tracking sessions of cooperating
command-line agents that share one data directory on disk. All session state
lives in files under that directory, so several processes can share it
without a server.

## What it provides

- **Manifests** (`agentbridge.manifest`): the `Manifest` dataclass stored as
  `manifest.json` in each session directory, with `validate`,
  `apply_v1_defaults`, `to_dict` and `from_dict`. `validate` raises
  `ManifestError` when `sessionId` or `projectPath` is empty or the schema
  version is not 1 or 2. Agent task states are checked with `is_valid_state`
  (`idle`, `working`, `done`, `orchestrating`) and listed by `states_hint`.
  `is_stale` compares the last heartbeat with a threshold in seconds; a
  session in the `orchestrating` state is never stale. `format_time` and
  `parse_time` convert RFC 3339 timestamps. `RegisterOpts` bundles the inputs
  to `Manager.register`.
- **Atomic files** (`agentbridge.atomic`): `atomic_write_bytes` and
  `atomic_write_json` write through a temporary file in the target's
  directory, fsync, set the requested mode (0600 for JSON) and rename into
  place. `read_json` reads a file back, raising `FileNotFoundError` or
  `ValueError`. `move_to_processed` moves a file into a `processed` directory
  (created with mode 0700) under a name prefixed by a UTC timestamp with
  nanoseconds, so a sort by name is also a sort by time, and returns the new
  path.
- **PID locks** (`agentbridge.lock`): `acquire_lock` creates a lock file
  exclusively with mode 0600 holding the current PID. A lock whose content is
  malformed or whose holder is dead is removed and creation retried once; a
  lock held by another live process raises `LockHeldError`; a lock already
  held by this process gives a re-entrant `SessionLock` whose `release` does
  nothing. `force_new` removes any existing lock first. `SessionLock` is a
  context manager. `is_process_alive` and `read_pid_from_lock` are public too.
- **Project scope** (`agentbridge.scope`): `find_project_root` walks up to the
  nearest directory holding a `.git` entry (directory or file). The given home
  directory never counts, and with no marker the working directory is its own
  scope. `is_path_descendant_or_equal` is the lexical containment test used
  throughout.
- **Session manager** (`agentbridge.manager`): `Manager.register` creates a
  session directory with `inbox/` and `outbox/`, writes its manifest and
  returns it with its lock. It raises `SessionExistsForProjectError` when a
  live session already owns the same project path, unless `force_new` is set.
  `longest_prefix_lookup` returns the session directory name whose project
  path is the longest prefix of a working directory, or raises
  `NoSessionForCwdError`. `start_heartbeat` returns a `Heartbeat` thread that
  refreshes the manifest until `stop`. `touch`, `set_state`,
  `set_last_consumed`, `adopt_pid` and `adopt_and_backfill` update a manifest
  under one lock, so threads in the same process cannot lose each other's
  updates. `generate_session_id` returns 8 lowercase hex characters.
- **Reconnect** (`agentbridge.reconnect`): with `RegisterOpts(resume=True)`,
  `register` first looks for sessions with the same agent name, role, team and
  scope (most recent first) and resumes one whose manifest PID is no longer
  alive, keeping its id and inbox. If every match is owned by a live process
  it raises `IdentityLiveError`; with no match it registers a fresh session.

## Example

```python
from agentbridge.manager import Manager
from agentbridge.manifest import RegisterOpts

manager = Manager("/tmp/bridge-data", heartbeat_interval=5.0)
manifest, lock = manager.register(
    RegisterOpts(project_path="/work/myproj", agent_name="ESC-1", role="esc")
)
with lock:
    heartbeat = manager.start_heartbeat(manifest.session_id)
    manager.set_state(manifest.session_id, "working")
    print(manager.longest_prefix_lookup("/work/myproj/src"))
    heartbeat.stop()
    heartbeat.join(1.0)
```

## What it does not do

This package is a library only: it has no command-line program. It keeps
track of sessions and their manifests, but it does not define a message
format and does not send, poll, drain or wait for messages in a session's
inbox; `move_to_processed` is the only inbox file operation it offers.
Process liveness is checked with signal 0, so it is meant for POSIX systems.

## Running the tests

```
pip install -e ".[test]"
pytest
```