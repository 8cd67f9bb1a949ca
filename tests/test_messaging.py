"""
Tests for the message bus and cross-store synchronization.
"""

import pytest

from recordmerge.core.models import MatchConfiguration, MergeJob
from recordmerge.messaging import (
    JobStarted,
    Message,
    MessageBus,
    MessageRecorder,
    StoreSectionUpdated,
    StoreUpdated,
    new_correlation_id,
)
from recordmerge.state import ActionType, ManualScheduler, SessionStore
from recordmerge.utils.config import EngineConfig


@pytest.fixture
def bus():
    return MessageBus()


def make_store(bus, tmp_path, window=0):
    config = EngineConfig(data_dir=tmp_path, throttle_window=window)
    return SessionStore(config=config, scheduler=ManualScheduler(), bus=bus)


class TestMessageBus:
    """Tests for MessageBus."""

    def test_routes_by_payload_type(self, bus):
        """Test subscribers receive only their message types."""
        started, everything = [], []
        bus.subscribe(started.append, [JobStarted])
        bus.subscribe(everything.append)

        bus.publish(JobStarted("job-1", "A", True), source="test")
        bus.publish(StoreSectionUpdated("errors", ()), source="test")

        assert len(started) == 1
        assert len(everything) == 2
        assert bus.published_count == 2

    def test_failing_handler_isolated(self, bus):
        """Test a failing handler does not stop delivery."""
        received = []

        def broken(message):
            raise RuntimeError("handler bug")

        bus.subscribe(broken)
        bus.subscribe(received.append)
        bus.publish(JobStarted("job-1", "A", True), source="test")

        assert len(received) == 1

    def test_unsubscribe(self, bus):
        """Test unsubscribing a handler."""
        received = []
        unsubscribe = bus.subscribe(received.append)
        unsubscribe()
        bus.publish(JobStarted("job-1", "A", True), source="test")

        assert received == []
        assert bus.subscriber_count == 0

    def test_envelope(self, bus):
        """Test the message envelope."""
        correlation_id = new_correlation_id()
        message = bus.publish(JobStarted("job-1", "A", False), source="orchestrator",
                              correlation_id=correlation_id)

        assert isinstance(message, Message)
        data = message.to_dict()
        assert data['type'] == "job.started"
        assert data['payload'] == {'job_id': "job-1", 'config_id': "A", 'is_dry_run': False}
        assert data['source'] == "orchestrator"
        assert data['correlation_id'].startswith("op_")

    def test_recorder(self, bus):
        """Test recording messages by correlation id."""
        recorder = MessageRecorder(bus, [JobStarted])
        bus.publish(JobStarted("job-1", "A", True), source="a", correlation_id="op_1")
        bus.publish(JobStarted("job-2", "A", True), source="a", correlation_id="op_1")
        recorder.close()
        bus.publish(JobStarted("job-3", "A", True), source="a")

        assert [p.job_id for p in recorder.payloads()] == ["job-1", "job-2"]
        assert len(recorder.by_correlation()["op_1"]) == 2


class TestStoreSync:
    """Tests for stores sharing a bus."""

    def test_own_messages_dropped(self, bus, tmp_path):
        """Test a store ignores its own broadcasts."""
        store = make_store(bus, tmp_path)
        store.dispatch(ActionType.SET_LOADING, True)

        assert store.dropped_messages == 1
        assert store.get_state().is_loading is True

    def test_section_update_reaches_other_store(self, bus, tmp_path):
        """Test a section update reaches another store."""
        first = make_store(bus, tmp_path / "a")
        second = make_store(bus, tmp_path / "b")
        seen = []
        second.subscribe(lambda state, previous: seen.append(state), sections=["configurations"])

        configuration = MatchConfiguration("A", "A", "Account", ("Name",))
        first.dispatch(ActionType.SET_CONFIGURATIONS, [configuration])

        assert second.get_state().configurations.items == (configuration,)
        assert len(seen) == 1
        # The receiving store does not rebroadcast
        assert bus.published_count == 1

    def test_whole_state_update(self, bus, tmp_path):
        """Test a reset state reaches another store."""
        first = make_store(bus, tmp_path / "a")
        second = make_store(bus, tmp_path / "b")
        second.dispatch(ActionType.UPSERT_JOB, MergeJob("job-1", "A", True, 200))
        assert first.get_state().active_jobs[0].id == "job-1"

        recorder = MessageRecorder(bus, [StoreUpdated])
        first.dispatch(ActionType.SET_GROUP_PROCESSING, None)

        assert len(recorder.messages) == 1
        assert second.get_state().active_jobs == ()
        assert len(second.get_state().errors) == 1

    def test_throttled_broadcast(self, bus, tmp_path):
        """Test broadcasts wait for the throttle window."""
        first = make_store(bus, tmp_path / "a", window=0.5)
        second = make_store(bus, tmp_path / "b")

        first.dispatch(ActionType.SET_LOADING, True)
        first.dispatch(ActionType.UPDATE_PAGINATION, {'current_page': 2})
        assert second.get_state().is_loading is False

        first.flush()
        assert second.get_state().is_loading is True
        assert second.get_state().pagination.current_page == 2
        assert bus.published_count == 2

    def test_dispose_detaches(self, bus, tmp_path):
        """Test a disposed store stops following the bus."""
        first = make_store(bus, tmp_path / "a")
        second = make_store(bus, tmp_path / "b")
        second.dispose()

        first.dispatch(ActionType.SET_LOADING, True)
        assert second.get_state().is_loading is False
