"""
Tests for merge execution and sequential bulk merging.
"""

import asyncio

import pytest

from recordmerge.backends.interfaces import MergeResponse
from recordmerge.core.errors import RemoteExecutionError, ValidationError
from recordmerge.core.models import DuplicateGroup, MatchConfiguration, MasterStrategy
from recordmerge.merge import BulkMergeCoordinator, MergeExecutor, MergePreview
from recordmerge.merge.merger import default_idempotency_key
from recordmerge.messaging.bus import MessageBus, MessageRecorder
from recordmerge.messaging.messages import (
    BulkMergeCompleted,
    DuplicatesMerged,
    GroupMergeError,
    MergeOperation,
    MergeStatus,
)
from recordmerge.utils.audit_trail import MergeAuditTrail


class FailingRecordStore:
    """Record store whose merge call raises."""

    def __init__(self, exc):
        self.exc = exc
        self.calls = 0

    async def load_records(self, object_type, record_ids, fields=None):
        return {}

    async def merge_records(self, master_id, duplicate_ids, object_type):
        self.calls += 1
        raise self.exc


class OrderedRecordStore:
    """Records the interleaving of merge calls."""

    def __init__(self):
        self.events = []

    async def load_records(self, object_type, record_ids, fields=None):
        return {}

    async def merge_records(self, master_id, duplicate_ids, object_type):
        self.events.append(("start", master_id))
        await asyncio.sleep(0)
        self.events.append(("end", master_id))
        return MergeResponse(success=True, merged_id=master_id)


class GatedRecordStore:
    """Blocks merges until released."""

    def __init__(self):
        self.gate = asyncio.Event()
        self.calls = 0

    async def load_records(self, object_type, record_ids, fields=None):
        return {}

    async def merge_records(self, master_id, duplicate_ids, object_type):
        self.calls += 1
        await self.gate.wait()
        return MergeResponse(success=True, merged_id=master_id)


@pytest.fixture
def group():
    return DuplicateGroup("Account-001A", "Account", {"001A", "001B", "001C"},
                          match_score=100, master_record_id="001A")


@pytest.fixture
def errors():
    return []


@pytest.fixture
def bus():
    return MessageBus()


@pytest.fixture
def executor(record_store, audit, bus, errors):
    return MergeExecutor(
        record_store, audit, bus=bus,
        error_sink=lambda source, operation, exc: errors.append(exc),
        initiator="tester",
    )


class TestMergeExecutor:
    """Tests for MergeExecutor."""

    async def test_merge_three_member_group(self, executor, record_store, audit, group):
        """Test merging a three-record group writes one log."""
        result = await executor.submit_merge("001A", group.duplicate_ids(), object_type="Account")

        assert result.success
        assert result.merged_id == "001A"
        assert result.merged_ids == ["001B", "001C"]
        assert len(record_store.merge_calls) == 1

        page = audit.list_merge_logs()
        assert page.total_records == 1
        log = page.records[0]
        assert log.master_id == "001A"
        assert log.merged_ids == ("001B", "001C")
        assert log.initiator == "tester"
        assert log.records_merged == 2

    async def test_preview_snapshot_and_note_logged(self, executor, record_store, audit, group):
        """Test the preview snapshot and note are logged."""
        snapshots = await record_store.load_records("Account", group.sorted_members())
        preview = MergePreview.build(group, "001A", ["Phone", "Website"], snapshots)

        result = await executor.submit_merge("001A", group.duplicate_ids(), preview, object_type="Account")

        assert "Phone: 555-2222" in result.log.note
        stored = audit.get_merge_log(result.log.id)
        assert [r['field_name'] for r in stored.field_resolution_snapshot] == ["Phone", "Website"]

    @pytest.mark.parametrize("master_id,duplicate_ids,object_type,missing", [
        (None, ["001B"], "Account", 'master_id'),
        ("001A", [], "Account", 'duplicate_ids'),
        ("001A", ["001A", "001B"], "Account", 'duplicate_ids'),
        ("001A", ["001B", "001B"], "Account", 'duplicate_ids'),
        ("001A", ["001B"], None, 'object_type'),
    ])
    async def test_validation_before_any_call(
        self, executor, record_store, master_id, duplicate_ids, object_type, missing
    ):
        """Test invalid requests never reach the store."""
        with pytest.raises(ValidationError) as excinfo:
            await executor.submit_merge(master_id, duplicate_ids, object_type=object_type)

        assert missing in excinfo.value.missing_fields
        assert record_store.merge_calls == []

    async def test_required_conflict_needs_explicit_choice(self, executor, record_store, group):
        """Test a conflicting required field needs a selection."""
        configuration = MatchConfiguration(
            "Account_Name", "Account Name Match", "Account", ("Name",),
            MasterStrategy.OLDEST_CREATED, required_fields=("Phone",),
        )
        snapshots = await record_store.load_records("Account", group.sorted_members())
        preview = MergePreview.build(group, "001A", ["Phone"], snapshots)

        with pytest.raises(ValidationError) as excinfo:
            await executor.submit_merge("001A", group.duplicate_ids(), preview, configuration=configuration)
        assert excinfo.value.missing_fields == ['Phone']
        assert record_store.merge_calls == []

        chosen = preview.with_selection("Phone", "555-1111")
        result = await executor.submit_merge("001A", group.duplicate_ids(), chosen, configuration=configuration)
        assert result.success
        assert result.log.config_id == "Account_Name"

    async def test_repeated_merge_rejected(self, executor, record_store, group):
        """Test the same merge cannot run twice."""
        await executor.submit_merge("001A", group.duplicate_ids(), object_type="Account")

        with pytest.raises(ValidationError) as excinfo:
            await executor.submit_merge("001A", list(reversed(group.duplicate_ids())), object_type="Account")
        assert excinfo.value.missing_fields == ['idempotency_key']
        assert len(record_store.merge_calls) == 1

    async def test_refused_merge_writes_no_log(self, executor, audit, errors):
        """Test a refused merge writes no log."""
        result = await executor.submit_merge("001A", ["999"], object_type="Account")

        assert not result.success
        assert "Records not found: 999" in result.errors[0]
        assert audit.list_merge_logs().total_records == 0
        assert isinstance(errors[0], RemoteExecutionError)

    async def test_store_exception_is_a_failed_result(self, audit, errors, group):
        """Test a store exception becomes a failed result."""
        store = FailingRecordStore(ConnectionError("connection reset"))
        executor = MergeExecutor(store, audit, error_sink=lambda s, o, e: errors.append(e))

        result = await executor.submit_merge("001A", group.duplicate_ids(), object_type="Account")

        assert not result.success
        assert result.errors == ["connection reset"]
        assert store.calls == 1
        assert isinstance(errors[0], ConnectionError)
        assert audit.list_merge_logs().total_records == 0

    async def test_failed_merge_releases_claim(self, audit, record_store, group):
        """Test a merge refused by the store can be retried."""
        failing = MergeExecutor(FailingRecordStore(ConnectionError("timeout")), audit)
        assert not (await failing.submit_merge("001A", group.duplicate_ids(), object_type="Account")).success

        retry = MergeExecutor(record_store, audit)
        result = await retry.submit_merge("001A", group.duplicate_ids(), object_type="Account")

        assert result.success
        assert audit.list_merge_logs().total_records == 1

    async def test_concurrent_merges_share_one_database(self, tmp_path, bus, group):
        """Test only one of two executors on one audit file reaches the store."""
        store = GatedRecordStore()
        recorder = MessageRecorder(bus)
        first_audit = MergeAuditTrail(tmp_path / "audit.db")
        second_audit = MergeAuditTrail(tmp_path / "audit.db")
        first = MergeExecutor(store, first_audit, bus=bus)
        second = MergeExecutor(store, second_audit, bus=bus)

        try:
            task = asyncio.create_task(
                first.submit_merge("001A", group.duplicate_ids(), object_type="Account")
            )
            await asyncio.sleep(0)
            await asyncio.sleep(0)

            with pytest.raises(ValidationError) as excinfo:
                await second.submit_merge("001A", group.duplicate_ids(), object_type="Account")
            assert excinfo.value.missing_fields == ['idempotency_key']

            store.gate.set()
            result = await task

            assert result.success
            assert store.calls == 1
            assert second_audit.list_merge_logs().total_records == 1
            statuses = [op.status for op in recorder.payloads(MergeOperation)]
            assert statuses == [MergeStatus.STARTING, MergeStatus.COMPLETED]

            with pytest.raises(ValidationError):
                await second.submit_merge("001A", group.duplicate_ids(), object_type="Account")
        finally:
            first_audit.close()
            second_audit.close()

    async def test_cancelled_merge_ends_with_error(self, audit, bus, group):
        """Test a merge cancelled mid-call publishes an error and frees its key."""
        store = GatedRecordStore()
        recorder = MessageRecorder(bus)
        executor = MergeExecutor(store, audit, bus=bus)

        task = asyncio.create_task(
            executor.submit_merge("001A", group.duplicate_ids(), object_type="Account")
        )
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        statuses = [op.status for op in recorder.payloads(MergeOperation)]
        assert statuses == [MergeStatus.STARTING, MergeStatus.ERROR]

        store.gate.set()
        result = await executor.submit_merge("001A", group.duplicate_ids(), object_type="Account")
        assert result.success

    async def test_messages_share_correlation_id(self, executor, bus, group):
        """Test merge messages share one correlation id."""
        recorder = MessageRecorder(bus)
        result = await executor.submit_merge("001A", group.duplicate_ids(), object_type="Account")

        operations = recorder.payloads(MergeOperation)
        assert [op.status for op in operations] == [MergeStatus.STARTING, MergeStatus.COMPLETED]
        correlated = recorder.by_correlation()[result.correlation_id]
        assert len(correlated) == 3
        assert isinstance(correlated[-1].payload, DuplicatesMerged)

    def test_idempotency_key_ignores_duplicate_order(self):
        """Test the key ignores the order of duplicates."""
        assert default_idempotency_key("A", ["C", "B"]) == default_idempotency_key("A", ["B", "C"])
        assert default_idempotency_key("A", ["B"]) != default_idempotency_key("B", ["A"])


class TestBulkMergeCoordinator:
    """Tests for BulkMergeCoordinator."""

    async def test_groups_merged_one_after_another(self, audit):
        """Test groups are merged strictly in sequence."""
        store = OrderedRecordStore()
        coordinator = BulkMergeCoordinator(MergeExecutor(store, audit))
        groups = [
            DuplicateGroup(f"g{i}", "Account", {f"{i}a", f"{i}b"}, master_record_id=f"{i}a")
            for i in range(3)
        ]

        outcome = await coordinator.merge_groups(groups)

        assert outcome.succeeded == ["g0", "g1", "g2"]
        assert store.events == [
            ("start", "0a"), ("end", "0a"),
            ("start", "1a"), ("end", "1a"),
            ("start", "2a"), ("end", "2a"),
        ]

    async def test_excluded_skipped_and_failures_continue(self, executor, bus, group):
        """Test excluded groups are skipped and failures do not stop the run."""
        recorder = MessageRecorder(bus)
        coordinator = BulkMergeCoordinator(executor, bus=bus)
        excluded = DuplicateGroup("Account-001D", "Account", {"001D", "001E"},
                                  master_record_id="001D", excluded=True)
        no_master = DuplicateGroup("Account-x", "Account", {"x1", "x2"})

        outcome = await coordinator.merge_groups([no_master, excluded, group])

        assert outcome.skipped == ["Account-001D"]
        assert outcome.failed == ["Account-x"]
        assert outcome.succeeded == ["Account-001A"]
        completed = recorder.payloads(BulkMergeCompleted)[0]
        assert completed.skipped == ("Account-001D",)

    async def test_group_in_flight_rejected(self, audit):
        """Test a group being merged cannot be submitted again."""
        store = GatedRecordStore()
        coordinator = BulkMergeCoordinator(MergeExecutor(store, audit))
        group = DuplicateGroup("g", "Account", {"a", "b"}, master_record_id="a")

        first = asyncio.ensure_future(coordinator.merge_group(group))
        await asyncio.sleep(0)
        assert coordinator.is_processing("g")

        with pytest.raises(ValidationError):
            await coordinator.merge_group(group)

        store.gate.set()
        result = await first
        assert result.success
        assert not coordinator.is_processing("g")

    async def test_preview_for_other_master_rejected(self, executor, record_store, group):
        """Test a preview built for another master is rejected."""
        coordinator = BulkMergeCoordinator(executor)
        snapshots = await record_store.load_records("Account", group.sorted_members())
        preview = MergePreview.build(group.with_master("001B"), "001B", ["Phone"], snapshots)

        with pytest.raises(ValidationError):
            await coordinator.merge_group(group, preview)
        assert record_store.merge_calls == []

    async def test_failed_group_message(self, audit, bus):
        """Test a failed group publishes an error message."""
        coordinator = BulkMergeCoordinator(
            MergeExecutor(FailingRecordStore(RuntimeError("down")), audit, bus=bus), bus=bus
        )
        recorder = MessageRecorder(bus, [GroupMergeError])
        group = DuplicateGroup("g", "Account", {"a", "b"}, master_record_id="a")

        result = await coordinator.merge_group(group)

        assert not result.success
        assert recorder.payloads()[0].group_id == "g"
