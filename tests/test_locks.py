"""Tests for task lock files."""

import json
import os
import threading

import pytest

from chadgi.persistence.locks import LockHeartbeat, TaskLockStore, generate_session_id, is_process_running

T0 = 1_700_000_000.0


class Clock:
    """Manually advanced time source."""

    def __init__(self, now: float = T0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def store(tmp_path, clock):
    return TaskLockStore(tmp_path / ".chadgi", stale_threshold_seconds=60, clock=clock)


class TestAcquire:
    """Tests for try_acquire."""

    def test_creates_lock_file(self, store):
        lock = store.try_acquire(12, "session-a", worker_id=1, repo_name="acme/app")
        assert lock is not None
        data = json.loads(store.path_for(12).read_text())
        assert data["issue_number"] == 12
        assert data["session_id"] == "session-a"
        assert data["pid"] == os.getpid()
        assert data["lock_id"] == lock.lock_id
        assert data["worker_id"] == 1
        assert store.is_locked(12)

    def test_second_acquire_fails(self, store):
        assert store.try_acquire(12, "session-a") is not None
        assert store.try_acquire(12, "session-b") is None
        assert store.read(12).session_id == "session-a"

    def test_stale_lock_not_taken_over(self, store, clock):
        store.try_acquire(12, "session-a")
        clock.now += 3600
        assert store.try_acquire(12, "session-b") is None
        assert store.is_locked(12)

    def test_concurrent_acquire_single_winner(self, store):
        """Exactly one of many simultaneous claimers gets the lock."""
        results = []
        barrier = threading.Barrier(8)

        def claim(n):
            barrier.wait()
            results.append(store.try_acquire(99, f"session-{n}"))

        threads = [threading.Thread(target=claim, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        winners = [r for r in results if r is not None]
        assert len(winners) == 1
        assert store.read(99).lock_id == winners[0].lock_id

    def test_each_acquisition_has_unique_id(self, store):
        first = store.try_acquire(1, "s")
        store.release(first)
        second = store.try_acquire(1, "s")
        assert first.lock_id != second.lock_id


class TestRelease:
    """Tests for release."""

    def test_release_is_idempotent(self, store):
        lock = store.try_acquire(3, "s")
        assert store.release(lock) is True
        assert store.release(lock) is False
        assert not store.is_locked(3)

    def test_old_release_leaves_newer_lock(self, store):
        old = store.try_acquire(3, "s1")
        store.release(old)
        new = store.try_acquire(3, "s2")
        assert store.release(old) is False
        assert store.read(3).lock_id == new.lock_id

    def test_release_session_locks(self, store):
        a = store.try_acquire(1, "s1")
        store.try_acquire(2, "s1")
        store.try_acquire(3, "s2")
        assert store.release_session_locks("s1", lock_ids={a.lock_id}) == 1
        assert store.is_locked(2)
        assert store.release_session_locks("s1") == 1
        assert [info.lock.issue_number for info in store.list_locks()] == [3]


class TestStaleness:
    """Tests for heartbeat age and stale clearing."""

    def test_fresh_then_stale(self, store, clock):
        lock = store.try_acquire(5, "s")
        assert not store.is_stale(lock)
        clock.now += 61
        assert store.is_stale(lock)

    def test_heartbeat_refreshes(self, store, clock):
        lock = store.try_acquire(5, "s")
        clock.now += 50
        assert store.heartbeat(lock) is True
        clock.now += 50
        assert not store.is_stale(store.read(5))

    def test_heartbeat_on_missing_lock(self, store):
        lock = store.try_acquire(5, "s")
        store.path_for(5).unlink()
        assert store.heartbeat(lock) is False

    def test_list_locks_reports_age(self, store, clock):
        store.try_acquire(8, "s")
        store.try_acquire(2, "s")
        clock.now += 90
        infos = store.list_locks()
        assert [i.lock.issue_number for i in infos] == [2, 8]
        assert infos[0].is_stale
        assert infos[0].heartbeat_age_seconds == pytest.approx(90)
        assert infos[0].process_alive is True
        assert infos[0].to_dict()["locked_seconds"] == 90

    def test_clear_stale_only_removes_stale(self, store, clock):
        store.try_acquire(1, "s")
        clock.now += 61
        store.try_acquire(2, "s")
        removed = store.clear_stale()
        assert [lock.issue_number for lock in removed] == [1]
        assert store.is_locked(2)

    def test_clear_stale_single_issue(self, store, clock):
        store.try_acquire(1, "s")
        store.try_acquire(2, "s")
        clock.now += 61
        assert [lock.issue_number for lock in store.clear_stale(issue_number=2)] == [2]
        assert store.is_locked(1)

    def test_clear_stale_rechecks_before_deleting(self, store, clock, monkeypatch):
        """A lock refreshed after it was listed as stale survives."""
        lock = store.try_acquire(4, "s")
        clock.now += 120
        listed = store.list_locks()
        assert listed[0].is_stale
        store.heartbeat(lock)
        monkeypatch.setattr(store, "list_locks", lambda: listed)
        assert store.clear_stale() == []
        assert store.is_locked(4)

    def test_corrupt_lock_counts_as_held(self, store, clock):
        store.locks_dir.mkdir(parents=True)
        store.path_for(6).write_text("{not json")
        lock = store.read(6)
        assert lock.issue_number == 6
        assert store.is_locked(6)
        assert store.list_locks()[0].corrupt is True
        assert store.try_acquire(6, "s") is None

        clock.now = store.path_for(6).stat().st_mtime + 61
        assert [lock.issue_number for lock in store.clear_stale()] == [6]
        assert not store.is_locked(6)


class TestLockHeartbeat:
    """Tests for the background heartbeat thread."""

    def test_stops_when_lock_removed(self, store):
        lock = store.try_acquire(7, "s")
        beat = LockHeartbeat(store, lock, interval=0.01)
        store.path_for(7).unlink()
        beat.start()
        beat.join(timeout=5)
        assert beat.lost is True

    def test_stop(self, store):
        lock = store.try_acquire(7, "s")
        beats = []
        beat = LockHeartbeat(store, lock, interval=0.01, on_beat=beats.append)
        beat.start()
        while not beats:
            beat.join(timeout=0.01)
        beat.stop()
        assert not beat.is_alive()
        assert beat.lost is False


class TestHelpers:
    """Tests for session ids and process liveness."""

    def test_session_ids_unique(self):
        assert generate_session_id() != generate_session_id()

    def test_process_running(self):
        assert is_process_running(os.getpid()) is True
        assert is_process_running(0) is False
