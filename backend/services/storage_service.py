"""Storage usage tracking and retention cleanup."""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from supabase import Client

from services.errors import TransportError
from services.file_store import PersistedFileStore
from services.storage_client import StorageClient
from services.transport import TransportPolicy

logger = logging.getLogger(__name__)


@dataclass
class StorageUsage:
    """Aggregate size of everything the pipeline has persisted."""
    total_bytes: int
    file_count: int
    storage_limit: int
    last_cleanup: Optional[str] = None

    @property
    def percent_used(self) -> float:
        if not self.storage_limit:
            return 0.0
        return round(self.total_bytes / self.storage_limit * 100, 2)


@dataclass
class CleanupResult:
    deleted_count: int
    freed_bytes: int


class StorageService:
    """
    Maintain the storage-usage aggregate and free space when it grows too large.

    The aggregate is an eventually consistent counter shared by all turns:
    updates are read-then-write without a transaction, and a lost increment
    only delays the next cleanup.
    """

    USAGE_ROW_ID = 1

    def __init__(
        self,
        client: Client,
        transport: TransportPolicy,
        storage_client: StorageClient,
        file_store: PersistedFileStore,
        max_storage_bytes: int = 500 * 1024 * 1024,
        cleanup_threshold_bytes: int = 400 * 1024 * 1024,
        retention_days: int = 7,
        usage_table: str = "storage_usage",
        cleanup_log_table: str = "storage_cleanup_log",
    ):
        self.client = client
        self.transport = transport
        self.storage_client = storage_client
        self.file_store = file_store
        self.max_storage_bytes = max_storage_bytes
        self.cleanup_threshold_bytes = cleanup_threshold_bytes
        self.retention_days = retention_days
        self.usage_table = usage_table
        self.cleanup_log_table = cleanup_log_table
        logger.info(
            f"Initialized StorageService (threshold={cleanup_threshold_bytes} bytes, "
            f"retention={retention_days} days)"
        )

    def record_upload(self, size_bytes: int) -> bool:
        """
        Add a new file to the aggregate.

        Returns:
            True when the total is at or above the cleanup threshold. Failures
            are logged and reported as False; they never fail the caller.
        """
        try:
            usage = self._read_usage()
            total = usage.total_bytes + size_bytes
            self._write_usage(total, usage.file_count + 1)
        except TransportError as e:
            logger.warning(f"Could not update storage usage: {e}")
            return False

        if total >= self.cleanup_threshold_bytes:
            logger.info(f"Storage usage {total} bytes reached cleanup threshold")
            return True
        return False

    def get_stats(self) -> StorageUsage:
        usage = self._read_usage()
        try:
            result = self.transport.execute(
                lambda: self.client.table(self.cleanup_log_table)
                .select("executed_at")
                .order("executed_at", desc=True)
                .limit(1)
                .execute(),
                "read last cleanup",
            )
            if result.data:
                usage.last_cleanup = result.data[0]["executed_at"]
        except TransportError as e:
            logger.warning(f"Could not read cleanup log: {e}")
        return usage

    def cleanup_old_files(
        self,
        retention_days: Optional[int] = None,
        target_bytes: Optional[int] = None,
    ) -> CleanupResult:
        """
        Delete files not accessed within the retention window, oldest first,
        until usage drops below target_bytes.

        Individual delete failures are logged and skipped. Meant to run in the
        background after a turn has already replied.
        """
        retention_days = self.retention_days if retention_days is None else retention_days
        target_bytes = self.cleanup_threshold_bytes if target_bytes is None else target_bytes
        cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)

        try:
            usage = self._read_usage()
            stale = self.file_store.list_stale(cutoff)
        except TransportError as e:
            logger.error(f"Storage cleanup aborted: {e}")
            return CleanupResult(deleted_count=0, freed_bytes=0)

        total = usage.total_bytes
        file_count = usage.file_count
        deleted_count = 0
        freed_bytes = 0

        for persisted in stale:
            if total < target_bytes:
                break
            try:
                self.storage_client.delete(persisted.storage_key)
                self.file_store.delete(persisted.external_handle)
            except TransportError as e:
                logger.error(f"Error deleting file {persisted.filename}: {e}")
                continue
            deleted_count += 1
            freed_bytes += persisted.size_bytes
            total = max(total - persisted.size_bytes, 0)
            file_count = max(file_count - 1, 0)

        try:
            self._write_usage(total, file_count)
            self.transport.execute(
                lambda: self.client.table(self.cleanup_log_table)
                .insert({
                    "files_deleted": deleted_count,
                    "space_freed": freed_bytes,
                    "executed_at": datetime.now(timezone.utc).isoformat(),
                })
                .execute(),
                "log cleanup",
            )
        except TransportError as e:
            logger.warning(f"Could not record cleanup result: {e}")

        logger.info(f"Storage cleanup deleted {deleted_count} files, freed {freed_bytes} bytes")
        return CleanupResult(deleted_count=deleted_count, freed_bytes=freed_bytes)

    def _read_usage(self) -> StorageUsage:
        result = self.transport.execute(
            lambda: self.client.table(self.usage_table)
            .select("total_bytes, file_count")
            .eq("id", self.USAGE_ROW_ID)
            .limit(1)
            .execute(),
            "read storage usage",
        )
        row = result.data[0] if result.data else {}
        return StorageUsage(
            total_bytes=row.get("total_bytes") or 0,
            file_count=row.get("file_count") or 0,
            storage_limit=self.max_storage_bytes,
        )

    def _write_usage(self, total_bytes: int, file_count: int) -> None:
        self.transport.execute(
            lambda: self.client.table(self.usage_table)
            .upsert({
                "id": self.USAGE_ROW_ID,
                "total_bytes": total_bytes,
                "file_count": file_count,
                "updated_at": datetime.now(timezone.utc).isoformat(),
            })
            .execute(),
            "write storage usage",
        )
