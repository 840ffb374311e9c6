import pytest

from async_crm_sync.audit import AuditLog
from async_crm_sync.models import AuditOperation, AuditStatus, ErrorCategory
from async_crm_sync.persistence import Persistence


class ListSink:
    def __init__(self):
        self.entries = []

    async def append(self, entry):
        self.entries.append(entry)


class BrokenSink:
    async def append(self, entry):
        raise RuntimeError("disk full")


@pytest.mark.asyncio
async def test_record_appends_entry():
    sink = ListSink()
    audit = AuditLog(sink)
    entry = await audit.record(
        "sub-1",
        "crm_push",
        "failed",
        {"target_module": "Leads"},
        error_message="timeout",
        duration_ms=12,
        error_classification=ErrorCategory.NETWORK,
    )
    assert entry is not None
    assert sink.entries == [entry]
    assert entry.operation is AuditOperation.CRM_PUSH
    assert entry.status is AuditStatus.FAILED
    assert entry.created_at is not None
    assert entry.id is None


@pytest.mark.asyncio
async def test_sink_failure_is_swallowed(caplog):
    audit = AuditLog(BrokenSink())
    assert await audit.record("sub-1", AuditOperation.RECEIVED, AuditStatus.SUCCESS) is None
    assert "Failed to write audit entry for submission sub-1" in caplog.text


@pytest.mark.asyncio
async def test_entries_without_listing_support():
    assert await AuditLog(ListSink()).entries("sub-1") == []


@pytest.mark.asyncio
async def test_persistent_trail_in_order(tmp_path):
    persistence = Persistence(str(tmp_path / "audit.db"))
    await persistence.init_db()
    audit = AuditLog(persistence)

    first = await audit.record("sub-1", AuditOperation.RECEIVED, AuditStatus.SUCCESS, {"field_count": 2})
    await audit.record("sub-1", AuditOperation.CRM_PUSH, AuditStatus.FAILED, error_message="429")
    await audit.record("sub-2", AuditOperation.RECEIVED, AuditStatus.SUCCESS)

    assert isinstance(first.id, int)
    trail = await audit.entries("sub-1")
    assert [(e.operation, e.status) for e in trail] == [
        (AuditOperation.RECEIVED, AuditStatus.SUCCESS),
        (AuditOperation.CRM_PUSH, AuditStatus.FAILED),
    ]
    assert trail[0].details == {"field_count": 2}
    assert trail[1].error_message == "429"
