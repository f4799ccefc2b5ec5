"""Metadata store for persisted files and per-conversation file context (Supabase PostgreSQL)."""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from supabase import Client

from models.files import PersistedFile
from services.transport import TransportPolicy

logger = logging.getLogger(__name__)


def parse_timestamp(timestamp_str: str) -> datetime:
    """
    Parse timestamp string from Supabase, handling various formats.

    Supabase can return timestamps with varying microsecond precision,
    which Python's fromisoformat() can't always handle. This normalizes
    the fractional part to six digits.

    Args:
        timestamp_str: Timestamp string from Supabase

    Returns:
        Timezone-aware datetime (UTC assumed when no offset is present)
    """
    timestamp_str = timestamp_str.replace("Z", "+00:00")

    # Format: 2026-02-21T02:08:26.18976+00:00
    if "." in timestamp_str:
        head, tail = timestamp_str.split(".", 1)
        for sign in ("+", "-"):
            if sign in tail:
                fraction, tz = tail.split(sign, 1)
                timestamp_str = f"{head}.{fraction[:6].ljust(6, '0')}{sign}{tz}"
                break
        else:
            timestamp_str = f"{head}.{tail[:6].ljust(6, '0')}"

    parsed = datetime.fromisoformat(timestamp_str)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _now() -> datetime:
    return datetime.now(timezone.utc)


class PersistedFileStore:
    """Rows of the persisted_files table, one per external file handle."""

    def __init__(self, client: Client, transport: TransportPolicy, table_name: str = "persisted_files"):
        self.client = client
        self.transport = transport
        self.table_name = table_name
        logger.info(f"Initialized PersistedFileStore with table: {table_name}")

    def get(self, external_handle: str) -> Optional[PersistedFile]:
        """Return the persisted file for a handle, or None."""
        result = self.transport.execute(
            lambda: self.client.table(self.table_name)
            .select("*")
            .eq("external_handle", external_handle)
            .limit(1)
            .execute(),
            f"get {external_handle}",
        )
        if not result.data:
            return None
        return self._from_row(result.data[0])

    def upsert(self, persisted: PersistedFile) -> PersistedFile:
        """
        Insert the row, or overwrite its metadata if the handle already exists.

        Conflicts on external_handle update in place instead of failing, so two
        turns resolving the same file end with a single row (last writer wins).
        """
        record = self._to_row(persisted)
        self.transport.execute(
            lambda: self.client.table(self.table_name)
            .upsert(record, on_conflict="external_handle")
            .execute(),
            f"upsert {persisted.external_handle}",
        )
        logger.debug(f"Upserted persisted file {persisted.external_handle}")
        return persisted

    def touch(self, persisted: PersistedFile) -> PersistedFile:
        """Record another reference: usage_count + 1 and a fresh last_accessed_at."""
        persisted.usage_count += 1
        persisted.last_accessed_at = _now()
        self.transport.execute(
            lambda: self.client.table(self.table_name)
            .update({
                "usage_count": persisted.usage_count,
                "last_accessed_at": persisted.last_accessed_at.isoformat(),
            })
            .eq("external_handle", persisted.external_handle)
            .execute(),
            f"touch {persisted.external_handle}",
        )
        return persisted

    def list_stale(self, cutoff: datetime) -> List[PersistedFile]:
        """Files not accessed since cutoff, least recently used first."""
        result = self.transport.execute(
            lambda: self.client.table(self.table_name)
            .select("*")
            .lt("last_accessed_at", cutoff.isoformat())
            .order("last_accessed_at", desc=False)
            .execute(),
            "list stale files",
        )
        return [self._from_row(row) for row in result.data or []]

    def delete(self, external_handle: str) -> None:
        self.transport.execute(
            lambda: self.client.table(self.table_name)
            .delete()
            .eq("external_handle", external_handle)
            .execute(),
            f"delete {external_handle}",
        )

    @staticmethod
    def _to_row(persisted: PersistedFile) -> Dict[str, Any]:
        return {
            "external_handle": persisted.external_handle,
            "storage_key": persisted.storage_key,
            "public_url": persisted.public_url,
            "filename": persisted.filename,
            "content_type": persisted.content_type,
            "size_bytes": persisted.size_bytes,
            "conversation_id": persisted.conversation_id,
            "created_at": persisted.created_at.isoformat(),
            "last_accessed_at": persisted.last_accessed_at.isoformat(),
            "usage_count": persisted.usage_count,
        }

    @staticmethod
    def _from_row(row: Dict[str, Any]) -> PersistedFile:
        return PersistedFile(
            external_handle=row["external_handle"],
            storage_key=row["storage_key"],
            public_url=row["public_url"],
            filename=row["filename"],
            content_type=row.get("content_type") or "application/octet-stream",
            size_bytes=row.get("size_bytes") or 0,
            conversation_id=row.get("conversation_id") or "",
            created_at=parse_timestamp(row["created_at"]),
            last_accessed_at=parse_timestamp(row["last_accessed_at"]),
            usage_count=row.get("usage_count") or 0,
        )


class ConversationFileStore:
    """Files a conversation has attached, carried into every later turn."""

    def __init__(self, client: Client, transport: TransportPolicy, table_name: str = "conversation_files"):
        self.client = client
        self.transport = transport
        self.table_name = table_name
        logger.info(f"Initialized ConversationFileStore with table: {table_name}")

    def list_active_handles(self, conversation_id: str) -> List[str]:
        """Active file handles of a conversation, in attach order."""
        result = self.transport.execute(
            lambda: self.client.table(self.table_name)
            .select("external_handle")
            .eq("conversation_id", conversation_id)
            .eq("is_active", True)
            .order("created_at", desc=False)
            .execute(),
            f"list files of {conversation_id}",
        )
        return [row["external_handle"] for row in result.data or []]

    def record_usage(self, conversation_id: str, handles: List[str]) -> None:
        """Attach new handles to the conversation and bump usage of known ones."""
        if not handles:
            return

        result = self.transport.execute(
            lambda: self.client.table(self.table_name)
            .select("external_handle, usage_count")
            .eq("conversation_id", conversation_id)
            .in_("external_handle", handles)
            .execute(),
            f"read file usage of {conversation_id}",
        )
        known = {row["external_handle"]: row.get("usage_count") or 0 for row in result.data or []}
        now = _now().isoformat()

        rows = [
            {
                "conversation_id": conversation_id,
                "external_handle": handle,
                "is_active": True,
                "usage_count": known.get(handle, 0) + 1,
                "last_used": now,
            }
            for handle in handles
        ]
        self.transport.execute(
            lambda: self.client.table(self.table_name)
            .upsert(rows, on_conflict="conversation_id,external_handle")
            .execute(),
            f"record file usage of {conversation_id}",
        )
        logger.info(
            f"Recorded usage of {len(handles)} files in {conversation_id} "
            f"({len(handles) - len(known)} new)"
        )
