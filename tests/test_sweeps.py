"""Sweep lock and worker job wiring."""
import pytest
from sqlalchemy.orm import sessionmaker

from apps.backend.services import sweeps
from apps.worker import jobs


class LockStore:
    def __init__(self, held=False, broken=False):
        self.keys = {"messaging_sweep:due-reminders:lock": "1"} if held else {}
        self.broken = broken
        self.set_calls = []

    def set(self, key, value, nx=False, ex=None):
        if self.broken:
            raise ConnectionError("redis down")
        self.set_calls.append((key, nx, ex))
        if nx and key in self.keys:
            return None
        self.keys[key] = value
        return True

    def eval(self, script, numkeys, key, token):
        if self.keys.get(key) != token:
            return 0
        del self.keys[key]
        return 1


@pytest.mark.timeout(10)
def test_guarded_sweep_takes_and_releases_lock(settings, test_db_session):
    store = LockStore()
    seen = []
    result = sweeps.run_guarded_sweep(
        "due-reminders", lambda db: seen.append(db) or {"processed": 0},
        settings=settings, redis_client=store, db=test_db_session,
    )
    assert result == {"processed": 0}
    assert seen == [test_db_session]
    assert store.set_calls == [("messaging_sweep:due-reminders:lock", True, settings.sweep_lock_ttl_seconds)]
    assert store.keys == {}


@pytest.mark.timeout(10)
def test_guarded_sweep_skips_when_lock_held(settings, test_db_session):
    store = LockStore(held=True)
    result = sweeps.run_guarded_sweep(
        "due-reminders", lambda db: pytest.fail("must not run"),
        settings=settings, redis_client=store, db=test_db_session,
    )
    assert result == {"skipped": "lock_not_acquired"}
    assert "messaging_sweep:due-reminders:lock" in store.keys


@pytest.mark.timeout(10)
def test_guarded_sweep_keeps_lock_taken_over_by_another_run(settings, test_db_session):
    store = LockStore()
    key = "messaging_sweep:due-reminders:lock"

    def slow_sweep(db):
        # TTL ran out mid-sweep and a second run took the lock.
        store.keys[key] = "other-run"
        return {"processed": 1}

    result = sweeps.run_guarded_sweep(
        "due-reminders", slow_sweep, settings=settings, redis_client=store, db=test_db_session,
    )
    assert result == {"processed": 1}
    assert store.keys == {key: "other-run"}


@pytest.mark.timeout(10)
def test_guarded_sweep_runs_without_redis_and_contains_errors(settings, test_db_session):
    result = sweeps.run_guarded_sweep(
        "retry-messages", lambda db: {"processed": 2},
        settings=settings, redis_client=LockStore(broken=True), db=test_db_session,
    )
    assert result == {"processed": 2}

    def boom(db):
        raise RuntimeError("query failed")

    store = LockStore()
    result = sweeps.run_guarded_sweep("retry-messages", boom, settings=settings, redis_client=store, db=test_db_session)
    assert result == {"error": "sweep_failed"}
    assert store.keys == {}


@pytest.mark.timeout(10)
def test_guarded_sweep_opens_its_own_session(settings, test_db_session):
    factory = sessionmaker(bind=test_db_session.bind)
    result = sweeps.run_guarded_sweep(
        "scheduled-messages", lambda db: {"bound": db.bind is test_db_session.bind},
        settings=settings, session_factory=factory, redis_client=LockStore(),
    )
    assert result == {"bound": True}


@pytest.mark.timeout(10)
def test_sweep_callable_table(messaging, reminders):
    assert sweeps.sweep_callable("scheduled-messages", messaging, reminders) == messaging.process_scheduled_messages
    assert sweeps.sweep_callable("retry-reminders", messaging, reminders) == reminders.retry_failed_reminders
    with pytest.raises(KeyError):
        sweeps.sweep_callable("vacuum", messaging, reminders)


@pytest.mark.timeout(10)
def test_run_all_sweeps_order(monkeypatch):
    calls = []
    monkeypatch.setattr(jobs, "_run", lambda name: calls.append(name) or {"ok": name})
    out = jobs.run_all_sweeps()
    assert calls == ["scheduled-messages", "due-reminders", "retry-messages", "retry-reminders"]
    assert out["retry-reminders"] == {"ok": "retry-reminders"}
