"""Unit tests for PersistedFileStore and ConversationFileStore."""
import sys
sys.path.insert(0, 'backend')

from datetime import datetime, timedelta, timezone

import pytest
from unittest.mock import MagicMock, Mock
from models.files import PersistedFile
from services.errors import TransportError
from services.file_store import ConversationFileStore, PersistedFileStore, parse_timestamp
from services.transport import TransportPolicy

ROW = {
    "external_handle": "file-csv",
    "storage_key": "conversations/thread_1/file-csv/report.csv",
    "public_url": "https://cdn.test/report.csv",
    "filename": "report.csv",
    "content_type": "text/csv",
    "size_bytes": 42,
    "conversation_id": "thread_1",
    "created_at": "2026-02-21T02:08:26.18976+00:00",
    "last_accessed_at": "2026-02-21T02:08:26Z",
    "usage_count": 3,
}


@pytest.fixture
def transport():
    return TransportPolicy("Supabase", sleep=Mock())


@pytest.fixture
def client():
    return MagicMock()


def persisted_file():
    now = datetime(2026, 2, 21, 2, 8, 26, tzinfo=timezone.utc)
    return PersistedFile(
        external_handle="file-csv",
        storage_key="conversations/thread_1/file-csv/report.csv",
        public_url="https://cdn.test/report.csv",
        filename="report.csv",
        content_type="text/csv",
        size_bytes=42,
        conversation_id="thread_1",
        created_at=now,
        last_accessed_at=now,
    )


class TestParseTimestamp:
    """Test suite for parse_timestamp."""

    def test_short_fraction(self):
        """Test five-digit microseconds are padded."""
        parsed = parse_timestamp("2026-02-21T02:08:26.18976+00:00")
        assert parsed.microsecond == 189760
        assert parsed.tzinfo is not None

    def test_zulu(self):
        """Test a trailing Z is read as UTC."""
        assert parse_timestamp("2026-02-21T02:08:26Z").utcoffset() == timedelta(0)

    def test_naive_assumed_utc(self):
        """Test timestamps without offset are made UTC-aware."""
        assert parse_timestamp("2026-02-21T02:08:26.1").tzinfo == timezone.utc

    def test_long_fraction_truncated(self):
        """Test nanosecond precision is cut to microseconds."""
        assert parse_timestamp("2026-02-21T02:08:26.123456789+00:00").microsecond == 123456


class TestPersistedFileStore:
    """Test suite for PersistedFileStore."""

    def test_get_found(self, client, transport):
        """Test a row is mapped to a PersistedFile."""
        table = client.table.return_value
        table.select.return_value.eq.return_value.limit.return_value.execute.return_value = Mock(data=[ROW])

        persisted = PersistedFileStore(client, transport).get("file-csv")

        client.table.assert_called_with("persisted_files")
        table.select.return_value.eq.assert_called_with("external_handle", "file-csv")
        assert persisted.public_url == "https://cdn.test/report.csv"
        assert persisted.usage_count == 3
        assert persisted.created_at.microsecond == 189760

    def test_get_missing(self, client, transport):
        """Test an unknown handle returns None."""
        table = client.table.return_value
        table.select.return_value.eq.return_value.limit.return_value.execute.return_value = Mock(data=[])

        assert PersistedFileStore(client, transport).get("file-none") is None

    def test_upsert_conflicts_on_handle(self, client, transport):
        """Test upserts are keyed on external_handle."""
        PersistedFileStore(client, transport).upsert(persisted_file())

        args, kwargs = client.table.return_value.upsert.call_args
        assert args[0]["external_handle"] == "file-csv"
        assert args[0]["created_at"] == "2026-02-21T02:08:26+00:00"
        assert kwargs == {"on_conflict": "external_handle"}

    def test_touch_bumps_usage(self, client, transport):
        """Test touch increments usage and refreshes the access time."""
        persisted = persisted_file()
        before = persisted.last_accessed_at

        PersistedFileStore(client, transport).touch(persisted)

        update = client.table.return_value.update.call_args.args[0]
        assert update["usage_count"] == 2
        assert persisted.usage_count == 2
        assert persisted.last_accessed_at > before

    def test_list_stale(self, client, transport):
        """Test stale files are listed oldest first."""
        table = client.table.return_value
        table.select.return_value.lt.return_value.order.return_value.execute.return_value = Mock(data=[ROW])
        cutoff = datetime(2026, 3, 1, tzinfo=timezone.utc)

        stale = PersistedFileStore(client, transport).list_stale(cutoff)

        table.select.return_value.lt.assert_called_with("last_accessed_at", cutoff.isoformat())
        table.select.return_value.lt.return_value.order.assert_called_with("last_accessed_at", desc=False)
        assert [f.external_handle for f in stale] == ["file-csv"]

    def test_database_errors_become_transport_errors(self, client, transport):
        """Test SDK exceptions are wrapped."""
        client.table.side_effect = RuntimeError("connection refused")

        with pytest.raises(TransportError):
            PersistedFileStore(client, transport).get("file-csv")


class TestConversationFileStore:
    """Test suite for ConversationFileStore."""

    def test_list_active_handles(self, client, transport):
        """Test active handles are returned in attach order."""
        chain = client.table.return_value.select.return_value.eq.return_value.eq.return_value.order.return_value
        chain.execute.return_value = Mock(data=[{"external_handle": "file-a"}, {"external_handle": "file-b"}])

        handles = ConversationFileStore(client, transport).list_active_handles("thread_1")

        assert handles == ["file-a", "file-b"]

    def test_record_usage_bumps_known_and_adds_new(self, client, transport):
        """Test known handles are incremented and new ones start at one."""
        chain = client.table.return_value.select.return_value.eq.return_value.in_.return_value
        chain.execute.return_value = Mock(data=[{"external_handle": "file-a", "usage_count": 4}])

        ConversationFileStore(client, transport).record_usage("thread_1", ["file-a", "file-b"])

        args, kwargs = client.table.return_value.upsert.call_args
        rows = {row["external_handle"]: row for row in args[0]}
        assert rows["file-a"]["usage_count"] == 5
        assert rows["file-b"]["usage_count"] == 1
        assert all(row["is_active"] for row in args[0])
        assert kwargs == {"on_conflict": "conversation_id,external_handle"}

    def test_record_usage_no_handles(self, client, transport):
        """Test nothing is written without handles."""
        ConversationFileStore(client, transport).record_usage("thread_1", [])
        client.table.assert_not_called()
