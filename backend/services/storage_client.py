"""Storage backend client using a public Supabase Storage bucket."""
import logging
from typing import Any, Dict, List

from supabase import Client

from models.files import StoredObject
from services.transport import TransportPolicy

logger = logging.getLogger(__name__)


class StorageClient:
    """Upload, delete and list objects in one Supabase Storage bucket."""

    def __init__(self, client: Client, transport: TransportPolicy, bucket: str = "assistant-files"):
        """
        Initialize the storage client.

        Args:
            client: Supabase client built by the composition root
            transport: Retry/timeout policy for every call
            bucket: Public bucket that holds persisted files
        """
        self.client = client
        self.transport = transport
        self.bucket = bucket
        logger.info(f"Initialized StorageClient with bucket: {bucket}")

    def upload(self, data: bytes, key: str, content_type: str) -> StoredObject:
        """
        Upload bytes under a key, overwriting any object already stored there.

        Overwriting keeps the key and public URL stable when the same file
        is persisted twice.
        """
        bucket = self.client.storage.from_(self.bucket)
        self.transport.execute(
            lambda: bucket.upload(
                path=key,
                file=data,
                file_options={"content-type": content_type, "upsert": "true"},
            ),
            f"upload {key}",
        )
        url = bucket.get_public_url(key).rstrip("?")
        logger.info(f"Uploaded {len(data)} bytes to {self.bucket}/{key}")
        return StoredObject(url=url, key=key, size=len(data), content_type=content_type)

    def delete(self, key: str) -> None:
        bucket = self.client.storage.from_(self.bucket)
        self.transport.execute(lambda: bucket.remove([key]), f"delete {key}")
        logger.info(f"Deleted {self.bucket}/{key}")

    def list(self, prefix: str) -> List[Dict[str, Any]]:
        bucket = self.client.storage.from_(self.bucket)
        entries = self.transport.execute(lambda: bucket.list(prefix), f"list {prefix}")
        return entries or []
