"""
File reference resolution.

Turns the job-scoped file handles an assistant reply references into
persisted, publicly fetchable files, and rewrites the sandbox paths the model
wrote into the reply so they point at the persisted copies.
"""
import logging
import posixpath
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from models.conversation import AssistantMessage
from models.files import EphemeralFileHandle, PersistedFile
from services.assistant_client import AssistantClient
from services.errors import FileResolutionError, TransportError
from services.file_store import PersistedFileStore
from services.storage_client import StorageClient
from services.storage_service import StorageService

logger = logging.getLogger(__name__)

SANDBOX_PATH_PATTERN = re.compile(r"sandbox:/{1,2}mnt/data/[^\s)\]\"'`<>]*[^\s)\]\"'`<>.,;:!?]")

# Served by GET /api/files/{handle}, so an unresolved link never dangles
FALLBACK_URL_TEMPLATE = "/api/files/{handle}"

DEFAULT_CONTENT_TYPE = "application/octet-stream"

CONTENT_TYPES = {
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "xls": "application/vnd.ms-excel",
    "csv": "text/csv",
    "pdf": "application/pdf",
    "doc": "application/msword",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "gif": "image/gif",
    "svg": "image/svg+xml",
    "txt": "text/plain",
    "md": "text/markdown",
    "json": "application/json",
    "js": "application/javascript",
    "ts": "application/typescript",
    "py": "text/x-python",
    "html": "text/html",
    "css": "text/css",
    "xml": "application/xml",
    "yaml": "application/x-yaml",
    "yml": "application/x-yaml",
    "zip": "application/zip",
    "rar": "application/x-rar-compressed",
    "7z": "application/x-7z-compressed",
    "tar": "application/x-tar",
    "gz": "application/gzip",
}


def content_type_for(filename: str) -> str:
    """Guess a MIME type from a filename extension."""
    head, dot, ext = filename.rpartition(".")
    if not dot or not head:
        return DEFAULT_CONTENT_TYPE
    return CONTENT_TYPES.get(ext.lower(), DEFAULT_CONTENT_TYPE)


def safe_filename(name: str, fallback: str) -> str:
    """Basename of name with anything outside [A-Za-z0-9._-] replaced."""
    base = posixpath.basename((name or "").replace("\\", "/")).strip()
    cleaned = re.sub(r"[^A-Za-z0-9._-]", "_", base).strip("._")
    return cleaned or fallback


def collect_references(messages: Iterable[AssistantMessage]) -> List[EphemeralFileHandle]:
    """
    Every file reference in the messages, in reading order, duplicates included.

    Attachments, image/file parts and in-text file-path annotations all count.
    """
    refs: List[EphemeralFileHandle] = []
    for message in messages:
        for part in message.parts:
            if part.kind == "text":
                for annotation in part.annotations:
                    refs.append(EphemeralFileHandle(
                        external_handle=annotation.file_handle,
                        sandbox_path=annotation.text,
                        filename=posixpath.basename(annotation.text),
                    ))
            elif part.file_handle:
                refs.append(EphemeralFileHandle(external_handle=part.file_handle))
        for handle in message.attachments:
            refs.append(EphemeralFileHandle(external_handle=handle))
    return refs


@dataclass
class ResolutionResult:
    """Persisted files of one turn, one per distinct handle."""
    files: List[PersistedFile] = field(default_factory=list)
    url_map: Dict[str, str] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)
    cleanup_requested: bool = False


class FileReferenceResolver:
    """Persist referenced files and rewrite the reply text to point at them."""

    def __init__(
        self,
        assistant_client: AssistantClient,
        storage_client: StorageClient,
        file_store: PersistedFileStore,
        storage_service: Optional[StorageService] = None,
        key_prefix: str = "conversations",
    ):
        self.assistant_client = assistant_client
        self.storage_client = storage_client
        self.file_store = file_store
        self.storage_service = storage_service
        self.key_prefix = key_prefix
        logger.info("Initialized FileReferenceResolver")

    def resolve(self, refs: List[EphemeralFileHandle], conversation_id: str) -> ResolutionResult:
        """
        Persist every distinct referenced file.

        Handles are de-duplicated before any network call. A file that fails
        is recorded in `failures` and skipped; the others still resolve.

        Args:
            refs: File references collected from the reply, duplicates allowed
            conversation_id: Conversation the files belong to

        Returns:
            ResolutionResult with one PersistedFile per resolved handle
        """
        result = ResolutionResult()
        unique = self._dedupe(refs)
        if not unique:
            return result

        logger.info(f"Resolving {len(unique)} file references for {conversation_id}")

        for ref in unique:
            handle = ref.external_handle
            try:
                persisted, uploaded_size = self._resolve_one(ref, conversation_id)
            except (TransportError, FileResolutionError) as e:
                logger.warning(
                    f"Could not persist file {handle}: {e}",
                    extra={"conversation_id": conversation_id, "error_code": e.error.code},
                )
                result.failures[handle] = e.error.code
                continue

            result.files.append(persisted)
            result.url_map[handle] = persisted.public_url
            if uploaded_size is not None and self.storage_service is not None:
                if self.storage_service.record_upload(uploaded_size):
                    result.cleanup_requested = True

        logger.info(
            f"Resolved {len(result.files)}/{len(unique)} files for {conversation_id}"
            + (f", {len(result.failures)} failed" if result.failures else "")
        )
        return result

    def rewrite_text(self, text: str, refs: List[EphemeralFileHandle], result: ResolutionResult) -> str:
        """
        Replace sandbox paths in text with persisted URLs.

        Annotated paths map to their handle's public URL, or to the fallback
        URL when that handle did not resolve. Paths without an annotation are
        matched to a resolved file by filename and left alone otherwise.
        """
        if not text:
            return text

        targets: Dict[str, str] = {}
        for ref in refs:
            if ref.sandbox_path and ref.sandbox_path not in targets:
                targets[ref.sandbox_path] = result.url_map.get(
                    ref.external_handle,
                    FALLBACK_URL_TEMPLATE.format(handle=ref.external_handle),
                )

        # Longest first so a path never clobbers a longer path it prefixes
        for path in sorted(targets, key=len, reverse=True):
            text = text.replace(path, targets[path])

        by_filename = {f.filename: f.public_url for f in result.files}

        def _by_name(match: re.Match) -> str:
            path = match.group(0)
            url = by_filename.get(safe_filename(path, ""))
            if url is None:
                logger.warning(f"No persisted file for sandbox path {path}")
                return path
            return url

        return SANDBOX_PATH_PATTERN.sub(_by_name, text)

    def _resolve_one(
        self, ref: EphemeralFileHandle, conversation_id: str
    ) -> Tuple[PersistedFile, Optional[int]]:
        """Persist one file. Returns the row and the uploaded size (None when already persisted)."""
        handle = ref.external_handle

        existing = self.file_store.get(handle)
        if existing is not None:
            logger.debug(f"File {handle} already persisted, touching usage")
            try:
                return self.file_store.touch(existing), None
            except TransportError as e:
                logger.warning(f"Could not update usage of persisted file {handle}: {e}")
                return existing, None

        metadata = self.assistant_client.get_file_metadata(handle)
        content = self.assistant_client.get_file_content(handle)
        if not content:
            raise FileResolutionError(f"File {handle} has no content", details={"file_handle": handle})

        filename = safe_filename(metadata.filename or ref.filename or "", fallback=handle)
        content_type = metadata.content_type or content_type_for(filename)
        key = f"{self.key_prefix}/{conversation_id}/{handle}/{filename}"

        stored = self.storage_client.upload(content, key, content_type)

        now = datetime.now(timezone.utc)
        persisted = PersistedFile(
            external_handle=handle,
            storage_key=stored.key,
            public_url=stored.url,
            filename=filename,
            content_type=content_type,
            size_bytes=stored.size,
            conversation_id=conversation_id,
            created_at=now,
            last_accessed_at=now,
            usage_count=1,
        )
        self.file_store.upsert(persisted)
        return persisted, stored.size

    @staticmethod
    def _dedupe(refs: List[EphemeralFileHandle]) -> List[EphemeralFileHandle]:
        """First reference per handle, keeping any filename a later reference adds."""
        unique: Dict[str, EphemeralFileHandle] = {}
        for ref in refs:
            first = unique.get(ref.external_handle)
            if first is None:
                unique[ref.external_handle] = EphemeralFileHandle(
                    external_handle=ref.external_handle,
                    sandbox_path=ref.sandbox_path,
                    filename=ref.filename,
                )
            elif not first.filename and ref.filename:
                first.filename = ref.filename
                first.sandbox_path = first.sandbox_path or ref.sandbox_path
        return list(unique.values())
