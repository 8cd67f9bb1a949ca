"""
Shared fixtures: a small Account dataset with one duplicate cluster and
a session over the in-process backends driven by a manual clock.
"""

import json
from datetime import datetime

import pytest

from recordmerge.backends.local import LocalRecordStore
from recordmerge.core.models import RecordSnapshot
from recordmerge.session import MergeSession
from recordmerge.state.drafts import MemoryDraftStorage
from recordmerge.state.throttle import ManualScheduler
from recordmerge.utils.audit_trail import MergeAuditTrail
from recordmerge.utils.config import EngineConfig


CONFIGURATION_RECORDS = [
    {
        "label": "Account Name Match",
        "developerName": "Account_Name",
        "objectType": "Account",
        "matchFields": "Name,BillingCity",
        "masterStrategy": "OldestCreated",
        "batchSize": 200,
        "active": True,
    },
    {
        "label": "contact email match",
        "developerName": "Contact_Email",
        "objectType": "Contact",
        "matchFields": "Email",
        "masterStrategy": "MostRecent",
        "batchSize": 100,
        "active": True,
    },
    {
        "label": "Retired Lead Match",
        "developerName": "Lead_Retired",
        "objectType": "Lead",
        "matchFields": "Email",
        "active": False,
    },
]


def account_snapshots():
    """Five accounts; 001A, 001B and 001C describe the same company."""
    return [
        RecordSnapshot("001A", {"Name": "Acme Corporation", "BillingCity": "Springfield",
                                "Phone": "555-1111", "Website": None},
                       created_at=datetime(2020, 1, 1), modified_at=datetime(2023, 1, 1)),
        RecordSnapshot("001B", {"Name": "ACME Corporation", "BillingCity": "Springfield",
                                "Phone": "555-2222", "Website": "acme.com"},
                       created_at=datetime(2021, 1, 1), modified_at=datetime(2024, 6, 1)),
        RecordSnapshot("001C", {"Name": "Acme  Corporation", "BillingCity": "springfield",
                                "Phone": "", "Website": None},
                       created_at=datetime(2022, 1, 1), modified_at=datetime(2022, 1, 1)),
        RecordSnapshot("001D", {"Name": "Globex", "BillingCity": "Shelbyville", "Phone": "555-9999"},
                       created_at=datetime(2019, 5, 5)),
        RecordSnapshot("001E", {"Name": "Initech", "BillingCity": "Austin", "Phone": "555-0000"},
                       created_at=datetime(2018, 3, 3)),
    ]


@pytest.fixture
def configuration_records():
    return [dict(r) for r in CONFIGURATION_RECORDS]


@pytest.fixture
def configurations_file(tmp_path):
    path = tmp_path / "configurations.json"
    path.write_text(json.dumps({"configurations": CONFIGURATION_RECORDS}), encoding="utf-8")
    return path


@pytest.fixture
def records_file(tmp_path):
    rows = []
    for snapshot in account_snapshots():
        row = {"Id": snapshot.record_id, **snapshot.fields}
        if snapshot.created_at:
            row["CreatedDate"] = snapshot.created_at.isoformat()
        if snapshot.modified_at:
            row["LastModifiedDate"] = snapshot.modified_at.isoformat()
        rows.append(row)
    path = tmp_path / "records.json"
    path.write_text(json.dumps({"Account": rows}), encoding="utf-8")
    return path


@pytest.fixture
def accounts():
    return account_snapshots()


@pytest.fixture
def record_store():
    return LocalRecordStore({"Account": account_snapshots()})


@pytest.fixture
def engine_config(tmp_path):
    return EngineConfig(data_dir=tmp_path / "data")


@pytest.fixture
def scheduler():
    return ManualScheduler(start=1000.0)


@pytest.fixture
def audit():
    trail = MergeAuditTrail(":memory:")
    yield trail
    trail.close()


@pytest.fixture
def session(configuration_records, record_store, engine_config, scheduler):
    merge_session = MergeSession.local(
        configuration_records,
        record_store,
        config=engine_config,
        scheduler=scheduler,
        draft_storage=MemoryDraftStorage(),
        initiator="tester",
    )
    yield merge_session
    merge_session.close()
