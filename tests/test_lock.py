import os
import stat

import pytest

from agentbridge.lock import (
    LockHeldError,
    SessionLock,
    acquire_lock,
    is_process_alive,
    read_pid_from_lock,
)


@pytest.fixture
def lock_path(tmp_path):
    return str(tmp_path / "session.lock")


def test_acquire_fresh(lock_path):
    lock = acquire_lock(lock_path, False)
    try:
        assert stat.S_IMODE(os.stat(lock_path).st_mode) == 0o600
        assert read_pid_from_lock(lock_path) == os.getpid()
    finally:
        lock.release()


def test_held_by_live_process_raises(lock_path):
    with open(lock_path, "w") as handle:
        handle.write("1\n")
    with pytest.raises(LockHeldError) as info:
        acquire_lock(lock_path, False)
    assert info.value.pid == 1
    assert "use --force-new to override" in str(info.value)
    assert os.path.exists(lock_path)


def test_stale_recovery(lock_path):
    with open(lock_path, "w") as handle:
        handle.write("999999\n")
    lock = acquire_lock(lock_path, False)
    try:
        assert read_pid_from_lock(lock_path) == os.getpid()
    finally:
        lock.release()


def test_malformed_lock_recovered_as_stale(lock_path):
    with open(lock_path, "w") as handle:
        handle.write("not-a-pid\n")
    lock = acquire_lock(lock_path, False)
    try:
        assert read_pid_from_lock(lock_path) == os.getpid()
    finally:
        lock.release()


def test_force_new_overrides_live(lock_path):
    with open(lock_path, "w") as handle:
        handle.write("1\n")
    lock = acquire_lock(lock_path, True)
    try:
        assert read_pid_from_lock(lock_path) == os.getpid()
    finally:
        lock.release()


def test_reentrant_same_pid(lock_path):
    first = acquire_lock(lock_path, False)
    try:
        second = acquire_lock(lock_path, False)
        assert second.owned is False
        second.release()
        assert os.path.exists(lock_path)
    finally:
        first.release()
    assert not os.path.exists(lock_path)


def test_release_removes_file(lock_path):
    lock = acquire_lock(lock_path, False)
    assert read_pid_from_lock(lock_path) == os.getpid()
    lock.release()
    with pytest.raises(FileNotFoundError):
        read_pid_from_lock(lock_path)
    # A second release is harmless.
    lock.release()
    with pytest.raises(FileNotFoundError):
        read_pid_from_lock(lock_path)


def test_context_manager_releases(lock_path):
    with acquire_lock(lock_path, False) as lock:
        assert isinstance(lock, SessionLock)
        assert read_pid_from_lock(lock_path) == os.getpid()
    with pytest.raises(FileNotFoundError):
        read_pid_from_lock(lock_path)


def test_missing_parent_dir_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        acquire_lock(str(tmp_path / "absent" / "session.lock"), False)


def test_read_pid_malformed_raises(lock_path):
    with open(lock_path, "w") as handle:
        handle.write("12ab\n")
    with pytest.raises(ValueError):
        read_pid_from_lock(lock_path)


def test_read_pid_missing_raises(lock_path):
    with pytest.raises(FileNotFoundError):
        read_pid_from_lock(lock_path)


@pytest.mark.parametrize(
    "pid, expected",
    [(os.getpid(), True), (1, True), (0, False), (-1, False), (999999, False)],
)
def test_is_process_alive(pid, expected):
    assert is_process_alive(pid) is expected