"""
Tests for the session store: transitions, caching and throttled notification.
"""

import json

import pytest

from recordmerge.core.errors import ErrorLevel, handle_error
from recordmerge.core.models import DraftJob, DuplicateGroup, MatchConfiguration, MergeJob, MergeLog
from recordmerge.state import ActionType, SessionStore
from recordmerge.state.drafts import DRAFT_KEY, JsonFileDraftStorage, MemoryDraftStorage
from recordmerge.state.throttle import AsyncioScheduler, ManualScheduler, TrailingThrottle
from recordmerge.utils.config import EngineConfig


def configuration(config_id, label=None):
    return MatchConfiguration(config_id, label or config_id, "Account", ("Name",))


@pytest.fixture
def store(engine_config, scheduler):
    return SessionStore(config=engine_config, scheduler=scheduler)


class TestTransitions:
    """Tests for dispatch and the reducers."""

    def test_dispatch_returns_new_state(self, store):
        """Test dispatch returns the new state."""
        before = store.get_state()
        after = store.dispatch(ActionType.SET_CONFIGURATIONS, [configuration("A")])

        assert after is store.get_state()
        assert before.configurations.items == ()
        assert after.configurations.items[0].id == "A"

    def test_select_tracks_recent(self, store):
        """Test recent configurations are capped."""
        for config_id in ["A", "B", "A", "C", "D", "E", "F"]:
            store.dispatch(ActionType.SELECT_CONFIGURATION, configuration(config_id))

        state = store.get_state().configurations
        assert state.selected.id == "F"
        assert [c.id for c in state.recent] == ["F", "E", "D", "C", "B"]

        store.dispatch(ActionType.SELECT_CONFIGURATION, None)
        assert store.get_state().selected_configuration is None
        assert len(store.get_state().configurations.recent) == 5

    def test_upsert_job(self, store):
        """Test upserting a job replaces it."""
        job = MergeJob("job-1", "A", True, 200)
        store.dispatch(ActionType.UPSERT_JOB, job)
        store.dispatch(ActionType.UPSERT_JOB, MergeJob("job-1", "A", True, 200, records_processed=5))

        assert len(store.get_state().active_jobs) == 1
        assert store.get_state().active_jobs[0].records_processed == 5

    def test_groups_progress(self, store):
        """Test group processing and results."""
        groups = [
            DuplicateGroup("g1", "Account", {"a", "b"}, master_record_id="a"),
            DuplicateGroup("g2", "Account", {"c", "d"}, master_record_id="c"),
        ]
        store.dispatch(ActionType.SET_DUPLICATE_GROUPS, groups)
        store.dispatch(ActionType.SET_GROUP_PROCESSING, {'group_id': "g1"})
        assert store.get_state().groups.processing == {"g1"}

        store.dispatch(ActionType.SET_GROUP_RESULT, {'group_id': "g1", 'success': True})
        store.dispatch(ActionType.SET_GROUP_RESULT, {'group_id': "g2", 'success': False, 'error': "locked"})

        state = store.get_state().groups
        assert state.processing == frozenset()
        assert state.merged == {"g1"}
        assert state.failed == {"g2": "locked"}

        store.dispatch(ActionType.SET_DUPLICATE_GROUPS, groups)
        assert store.get_state().groups.merged == frozenset()

    def test_error_list_bounded(self, store):
        """Test the error list keeps the newest entries."""
        records = [handle_error("test", f"op {i}", ValueError(f"bad {i}")) for i in range(12)]
        for record in records:
            store.dispatch(ActionType.ADD_ERROR, record)

        errors = store.get_state().errors
        assert len(errors) == 10
        assert errors[0] == records[2]
        assert errors[-1] == records[11]

    def test_clear_one_error(self, store):
        """Test clearing one error and then all."""
        first = store.report_error("test", "op", ValueError("first"))
        store.report_error("test", "op", ValueError("second"))

        store.dispatch(ActionType.CLEAR_ERRORS, first.id)
        assert [e.message for e in store.get_state().errors] == ["second"]

        store.dispatch(ActionType.CLEAR_ERRORS)
        assert store.get_state().errors == ()

    def test_recent_merges_bounded(self, store):
        """Test recent merges are capped."""
        for i in range(12):
            store.dispatch(ActionType.ADD_MERGE_RESULT, MergeLog(f"m{i}", (f"d{i}", f"e{i}"), "Account"))

        statistics = store.get_state().statistics
        assert statistics.records_merged == 24
        assert statistics.by_object["Account"].total_merged == 24
        assert len(statistics.recent_merges) == 10
        assert statistics.recent_merges[0]['master_id'] == "m11"

    def test_failing_transition_resets_state(self, store):
        """Test a failing transition resets the state."""
        store.dispatch(ActionType.SET_CONFIGURATIONS, [configuration("A")])

        state = store.dispatch(ActionType.SET_GROUP_PROCESSING, None)

        assert state.configurations.items == ()
        assert len(state.errors) == 1
        assert state.errors[0].level == ErrorLevel.CRITICAL

    def test_reset_state(self, store):
        """Test resetting the state."""
        store.dispatch(ActionType.SET_LOADING, True)
        store.dispatch(ActionType.RESET_STATE)
        assert store.get_state().is_loading is False

    def test_get_section(self, store):
        """Test reading one section."""
        assert store.get_section("errors") == ()
        with pytest.raises(KeyError):
            store.get_section("nope")

    def test_pagination(self, store):
        """Test updating pagination."""
        store.dispatch(ActionType.UPDATE_PAGINATION, {'current_page': 3, 'total_records': 42})
        pagination = store.get_state().pagination
        assert pagination.current_page == 3
        assert pagination.page_size == 10


class TestCache:
    """Tests for cache freshness bookkeeping."""

    def test_fresh_after_write(self, store, scheduler):
        """Test a section is fresh until its timeout."""
        assert not store.peek_cache("configurations")

        store.dispatch(ActionType.SET_CONFIGURATIONS, [])
        assert store.is_cache_valid("configurations")

        scheduler.advance(899)
        assert store.peek_cache("configurations")
        scheduler.advance(1)
        assert not store.peek_cache("configurations")

    def test_invalidate(self, store):
        """Test invalidating one section and then all."""
        store.dispatch(ActionType.SET_CONFIGURATIONS, [])
        store.dispatch(ActionType.UPDATE_STATISTICS, store.get_state().statistics)

        store.invalidate("configurations")
        assert not store.peek_cache("configurations")
        assert store.peek_cache("statistics")

        store.invalidate()
        assert not store.peek_cache("statistics")

    def test_pending_flag(self, store):
        """Test the pending flag clears on update."""
        store.dispatch(ActionType.SET_CACHE_PENDING, {'section': 'jobs', 'pending': True})
        assert store.get_state().cache_section("jobs").pending

        store.dispatch(ActionType.UPDATE_SCHEDULED_JOBS, ())
        assert not store.get_state().cache_section("jobs").pending

    def test_base_timeout_until_enough_lookups(self, store):
        """Test the base timeout applies until enough lookups."""
        for _ in range(9):
            store.is_cache_valid("jobs")
        assert store.cache_timeout("jobs") == 120

    def test_timeout_grows_with_hits(self, store):
        """Test cache hits lengthen the timeout."""
        store.dispatch(ActionType.UPDATE_ACTIVE_JOBS, ())
        for _ in range(10):
            assert store.is_cache_valid("jobs")
        assert store.cache_timeout("jobs") == pytest.approx(240)

    def test_timeout_shrinks_with_misses(self, store):
        """Test cache misses shorten the timeout."""
        for _ in range(10):
            assert not store.is_cache_valid("statistics")
        assert store.cache_timeout("statistics") == pytest.approx(150)

    def test_lookups_do_not_notify(self, store, scheduler):
        """Test cache lookups do not notify listeners."""
        calls = []
        store.subscribe(lambda state, previous: calls.append(state))
        store.is_cache_valid("groups")
        scheduler.advance(5)
        assert calls == []


class TestNotification:
    """Tests for throttled listener notification."""

    def test_burst_collapses(self, store, scheduler):
        """Test a burst of dispatches notifies once."""
        calls = []
        store.subscribe(lambda state, previous: calls.append((state, previous)))

        for loading in (True, False, True):
            store.dispatch(ActionType.SET_LOADING, loading)
        assert calls == []

        scheduler.advance(0.5)
        assert len(calls) == 1
        state, previous = calls[0]
        assert state.is_loading is True
        assert previous.is_loading is False

    def test_flush(self, store):
        """Test flushing delivers pending notifications."""
        calls = []
        store.subscribe(lambda state, previous: calls.append(state))
        store.dispatch(ActionType.SET_LOADING, True)

        store.flush()
        assert len(calls) == 1

    def test_section_filter(self, store, scheduler):
        """Test listeners filtered by section."""
        jobs_calls, all_calls = [], []
        store.subscribe(lambda s, p: jobs_calls.append(s), sections=["jobs"])
        store.subscribe(lambda s, p: all_calls.append(s))

        store.dispatch(ActionType.SET_CONFIGURATIONS, [configuration("A")])
        scheduler.advance(1)
        assert jobs_calls == []
        assert len(all_calls) == 1

        store.dispatch(ActionType.UPSERT_JOB, MergeJob("job-1", "A", True, 200))
        scheduler.advance(1)
        assert len(jobs_calls) == 1

    def test_reset_notifies_every_listener(self, store, scheduler):
        """Test a failure reset notifies every listener."""
        calls = []
        store.subscribe(lambda s, p: calls.append(s), sections=["jobs"])
        store.dispatch(ActionType.RESET_STATE)
        store.flush()
        assert len(calls) == 0

        store.dispatch(ActionType.SET_GROUP_PROCESSING, None)
        store.flush()
        assert len(calls) == 1

    def test_unchanged_state_not_notified(self, store, scheduler):
        """Test an unchanged state notifies nobody."""
        calls = []
        store.subscribe(lambda s, p: calls.append(s))
        store.dispatch(ActionType.CLEAR_ERRORS)
        scheduler.advance(1)
        assert calls == []

    def test_failing_listener_isolated(self, store):
        """Test a failing listener does not stop the others."""
        calls = []

        def broken(state, previous):
            raise RuntimeError("listener bug")

        store.subscribe(broken)
        store.subscribe(lambda s, p: calls.append(s))
        store.dispatch(ActionType.SET_LOADING, True)
        store.flush()
        assert len(calls) == 1

    def test_unsubscribe(self, store):
        """Test removing a listener."""
        calls = []
        unsubscribe = store.subscribe(lambda s, p: calls.append(s))
        unsubscribe()
        store.dispatch(ActionType.SET_LOADING, True)
        store.flush()
        assert calls == []

    def test_unknown_section(self, store):
        """Test subscribing to an unknown section."""
        with pytest.raises(KeyError):
            store.subscribe(lambda s, p: None, sections=["bogus"])

    def test_zero_window_delivers_immediately(self, tmp_path):
        """Test a zero window delivers at once."""
        store = SessionStore(config=EngineConfig(data_dir=tmp_path, throttle_window=0), scheduler=ManualScheduler())
        calls = []
        store.subscribe(lambda s, p: calls.append(s))
        store.dispatch(ActionType.SET_LOADING, True)
        assert len(calls) == 1

    def test_dispatch_outside_event_loop(self, tmp_path):
        """Test the default scheduler delivers synchronously when no loop runs."""
        store = SessionStore(config=EngineConfig(data_dir=tmp_path))
        calls = []
        store.subscribe(lambda s, p: calls.append(s.is_loading))

        state = store.dispatch(ActionType.SET_LOADING, True)
        store.dispatch(ActionType.SET_LOADING, False)

        assert state.is_loading is True
        assert calls == [True, False]

    def test_unschedulable_notification_resets_state(self, tmp_path):
        """Test a scheduler failure resets the store instead of raising."""
        class BrokenScheduler(ManualScheduler):
            def call_later(self, delay, callback):
                raise RuntimeError("timer unavailable")

        store = SessionStore(config=EngineConfig(data_dir=tmp_path), scheduler=BrokenScheduler())

        state = store.dispatch(ActionType.SET_LOADING, True)

        assert state.is_loading is False
        assert state.errors[0].operation == "dispatch SET_LOADING"


class TestTrailingThrottle:
    """Tests for TrailingThrottle."""

    def test_window(self):
        """Test triggers inside a window fire once."""
        scheduler = ManualScheduler()
        calls = []
        throttle = TrailingThrottle(scheduler, 0.5, lambda: calls.append(scheduler.now()))

        throttle.trigger()
        scheduler.advance(0.2)
        throttle.trigger()
        assert throttle.pending
        scheduler.advance(0.3)

        assert calls == [0.5]
        assert not throttle.pending

    def test_cancel(self):
        """Test cancelling a pending window."""
        scheduler = ManualScheduler()
        calls = []
        throttle = TrailingThrottle(scheduler, 0.5, lambda: calls.append(1))
        throttle.trigger()
        throttle.cancel()
        scheduler.advance(1)
        assert calls == []
        assert scheduler.pending == 0

    def test_synchronous_delivery_reopens(self):
        """Test a window fired synchronously leaves nothing pending."""
        calls = []
        throttle = TrailingThrottle(AsyncioScheduler(), 0.5, lambda: calls.append(1))

        throttle.trigger()
        throttle.trigger()

        assert calls == [1, 1]
        assert not throttle.pending


class TestDraftStorage:
    """Tests for draft persistence."""

    def test_file_round_trip(self, tmp_path):
        """Test writing, reading and clearing a draft file."""
        storage = JsonFileDraftStorage(tmp_path / "nested" / "draft.json")
        draft = DraftJob("Account_Name", "Account", 150, ("Name",), timestamp="t0", last_modified="t1")

        storage.write(draft)
        data = json.loads((tmp_path / "nested" / "draft.json").read_text(encoding="utf-8"))
        assert data[DRAFT_KEY]['config_id'] == "Account_Name"
        assert storage.read() == draft

        storage.clear()
        assert storage.read() is None

    def test_corrupt_file_reads_none(self, tmp_path):
        """Test a corrupt draft file reads as no draft."""
        path = tmp_path / "draft.json"
        path.write_text("{broken", encoding="utf-8")
        assert JsonFileDraftStorage(path).read() is None

    def test_store_persists_draft(self, engine_config, scheduler):
        """Test the store writes and clears the draft."""
        storage = MemoryDraftStorage()
        store = SessionStore(config=engine_config, scheduler=scheduler, draft_storage=storage)
        draft = DraftJob("A", "Account")

        store.dispatch(ActionType.SAVE_DRAFT_JOB, draft)
        assert storage.read() == draft

        store.dispatch(ActionType.CLEAR_DRAFT_JOB)
        assert storage.read() is None

    def test_storage_failure_does_not_break_dispatch(self, engine_config, scheduler):
        """Test a storage failure does not break dispatch."""
        class BrokenStorage(MemoryDraftStorage):
            def write(self, draft):
                raise OSError("disk full")

        store = SessionStore(config=engine_config, scheduler=scheduler, draft_storage=BrokenStorage())
        state = store.dispatch(ActionType.SAVE_DRAFT_JOB, DraftJob("A", "Account"))
        assert state.draft_job.config_id == "A"


class TestEngineConfig:
    """Tests for EngineConfig."""

    def test_derived_paths(self, tmp_path):
        """Test paths derived from the data directory."""
        config = EngineConfig(data_dir=tmp_path)
        assert config.draft_path == tmp_path / "draft_job.json"
        assert config.audit_db_path == tmp_path / "merge_audit.db"
        assert config.schedules_path == tmp_path / "schedules.json"

    def test_from_file(self, tmp_path):
        """Test loading overrides from a file."""
        path = tmp_path / "engine.json"
        path.write_text(json.dumps({"throttle_window": 0.1, "max_errors": 3, "unknown": 1}), encoding="utf-8")

        config = EngineConfig.from_file(path)

        assert config.throttle_window == 0.1
        assert config.max_errors == 3
        assert config.base_timeout("configurations") == 900
        assert config.base_timeout("other") == 300
