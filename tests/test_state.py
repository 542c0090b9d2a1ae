from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from buildwatch.state import BuildInFlightError, BuildStatus, StateStore


COMMIT_TIME = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def test_state_is_created_lazily(clock):
    store = StateStore(clock=clock)
    assert store.get("web") is None
    store.begin_check("web")
    state = store.get("web")
    assert state is not None
    assert state.last_check == clock.now
    assert state.build_history == []


def test_begin_check_clears_last_error(clock):
    store = StateStore(clock=clock)
    store.record_error("web", "boom")
    assert store.get("web").last_error == "boom"
    store.begin_check("web")
    assert store.get("web").last_error is None


def test_first_observation_is_a_change(clock):
    store = StateStore(clock=clock)
    assert store.observe_commit("web", "a" * 40, COMMIT_TIME) is True
    state = store.get("web")
    # Stamped with observation time, not the commit's own timestamp
    assert state.last_change == clock.now
    assert state.last_commit == "a" * 40


def test_same_commit_is_not_a_change(clock):
    store = StateStore(clock=clock)
    store.observe_commit("web", "a" * 40, COMMIT_TIME)
    clock.advance(60)
    assert store.observe_commit("web", "a" * 40, COMMIT_TIME) is False
    assert store.get("web").last_change == datetime(2020, 1, 1, tzinfo=timezone.utc)


def test_newer_commit_is_a_change_and_last_change_advances(clock):
    store = StateStore(clock=clock)
    store.observe_commit("web", "a" * 40, COMMIT_TIME)
    before = store.get("web").last_change
    clock.advance(60)
    assert store.observe_commit("web", "b" * 40, COMMIT_TIME + timedelta(hours=1)) is True
    assert store.get("web").last_change >= before
    assert store.get("web").last_commit == "b" * 40


def test_different_commit_older_than_last_change_is_ignored():
    clock_time = datetime(2025, 1, 1, tzinfo=timezone.utc)
    store = StateStore(clock=lambda: clock_time)
    store.observe_commit("web", "a" * 40, COMMIT_TIME)
    assert store.observe_commit("web", "b" * 40, COMMIT_TIME + timedelta(hours=1)) is False
    assert store.get("web").last_commit == "a" * 40


def test_begin_build_prepends_and_stamps_last_build(clock):
    store = StateStore(clock=clock)
    first = store.begin_build("web", "reg/ns/web:1")
    store.finish_build("web", first.id, BuildStatus.SUCCESS)
    clock.advance(5)
    second = store.begin_build("web", "reg/ns/web:2")

    state = store.get("web")
    assert [r.image for r in state.build_history] == ["reg/ns/web:2", "reg/ns/web:1"]
    assert state.build_history[0].status is BuildStatus.BUILDING
    assert state.last_build == clock.now
    assert second.id == int(clock.now.timestamp() * 1000)


def test_second_build_rejected_while_one_is_building(clock):
    store = StateStore(clock=clock)
    store.begin_build("web", "reg/ns/web:1")
    with pytest.raises(BuildInFlightError):
        store.begin_build("web", "reg/ns/web:2")
    assert len(store.get("web").build_history) == 1
    assert store.has_build_in_flight("web") is True
    # Other repositories are unaffected
    store.begin_build("api", "reg/ns/api:1")


def test_record_transitions_exactly_once(clock):
    store = StateStore(clock=clock)
    record = store.begin_build("web", "reg/ns/web:1")
    done = store.finish_build("web", record.id, BuildStatus.FAILURE, "docker failed")
    assert done.status is BuildStatus.FAILURE
    assert done.error == "docker failed"
    with pytest.raises(KeyError):
        store.finish_build("web", record.id, BuildStatus.SUCCESS)
    assert store.get("web").build_history[0].status is BuildStatus.FAILURE


def test_finish_build_requires_terminal_status(clock):
    store = StateStore(clock=clock)
    record = store.begin_build("web", "reg/ns/web:1")
    with pytest.raises(ValueError):
        store.finish_build("web", record.id, BuildStatus.BUILDING)


def test_snapshot_is_a_copy(clock):
    store = StateStore(clock=clock)
    store.begin_build("web", "reg/ns/web:1")
    snap = store.snapshot()
    snap["web"].build_history.clear()
    assert len(store.get("web").build_history) == 1


def test_to_dict_uses_status_surface_keys(clock):
    store = StateStore(clock=clock)
    store.begin_check("web")
    store.begin_build("web", "reg/ns/web:1")
    data = store.get("web").to_dict()
    assert set(data) == {"lastCheck", "lastChange", "lastCommit", "lastBuild", "buildHistory", "lastError"}
    assert data["buildHistory"][0]["status"] == "building"
    assert data["lastCheck"] == clock.now.isoformat()
