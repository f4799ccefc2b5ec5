"""Main entry point for the Assistant Turn Pipeline API."""
import logging
from typing import Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import RedirectResponse, Response
from supabase import create_client

import config
from logger import setup_logging
from models.api import (
    CleanupSummary,
    FileOutput,
    Source,
    StorageStats,
    TurnRequest,
    TurnResponse,
)
from models.conversation import TurnInput
from models.reply import TurnResult
from services.assistant_client import AssistantClient
from services.content_sanitizer import ContentSanitizer
from services.errors import ConfigurationError, TransportError, TurnPipelineError
from services.file_resolver import FileReferenceResolver, content_type_for, safe_filename
from services.file_store import ConversationFileStore, PersistedFileStore
from services.run_poller import PollBudget, RunPoller
from services.search_augmenter import SearchAugmenter
from services.search_client import SearchClient
from services.storage_client import StorageClient
from services.storage_service import StorageService
from services.transport import TransportPolicy
from services.turn_coordinator import TurnCoordinator

if config.LOG_FORMAT == "json":
    setup_logging(config.LOG_LEVEL)

# Initialize logging
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="Assistant Turn Pipeline",
    description="Conversation turns against a hosted assistant with file persistence and web search",
    version="1.0.0"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Initialize services (will be done on startup)
turn_coordinator: TurnCoordinator = None
assistant_client: AssistantClient = None
file_store: PersistedFileStore = None
storage_service: StorageService = None


def _transport(name: str, timeout: float) -> TransportPolicy:
    return TransportPolicy(
        name,
        timeout=timeout,
        max_attempts=config.TRANSPORT_MAX_ATTEMPTS,
        initial_delay=config.TRANSPORT_INITIAL_DELAY_S,
        max_delay=config.TRANSPORT_MAX_DELAY_S,
    )


def build_services() -> dict:
    """
    Build every collaborator from configuration.

    Search is optional: without a Tavily key, search-enabled turns degrade
    to an inline note.

    Raises:
        ConfigurationError: If OpenAI or Supabase credentials are missing
    """
    if not config.SUPABASE_URL or not config.SUPABASE_KEY:
        raise ConfigurationError("SUPABASE_URL and SUPABASE_KEY must be provided or set in environment")

    openai_transport = _transport("OpenAI", config.OPENAI_TIMEOUT_S)
    storage_transport = _transport("Supabase", config.STORAGE_TIMEOUT_S)

    assistant = AssistantClient(
        api_key=config.OPENAI_API_KEY,
        assistant_id=config.OPENAI_ASSISTANT_ID,
        transport=openai_transport,
        base_url=config.OPENAI_BASE_URL,
        organization=config.OPENAI_ORGANIZATION,
    )

    search_client: Optional[SearchClient] = None
    if config.TAVILY_API_KEY:
        search_client = SearchClient(
            api_key=config.TAVILY_API_KEY,
            transport=_transport("Tavily", config.SEARCH_TIMEOUT_S),
            base_url=config.TAVILY_BASE_URL,
            cache_ttl=config.SEARCH_CACHE_TTL_S,
            max_query_length=config.SEARCH_MAX_QUERY_LENGTH,
        )
    else:
        logger.warning("TAVILY_API_KEY not set, web search will be unavailable")

    supabase = create_client(config.SUPABASE_URL, config.SUPABASE_KEY)
    storage_client = StorageClient(supabase, storage_transport, bucket=config.SUPABASE_STORAGE_BUCKET)
    persisted_files = PersistedFileStore(supabase, storage_transport)
    storage = StorageService(
        supabase,
        storage_transport,
        storage_client,
        persisted_files,
        max_storage_bytes=config.MAX_STORAGE_BYTES,
        cleanup_threshold_bytes=config.CLEANUP_THRESHOLD_BYTES,
        retention_days=config.RETENTION_DAYS,
    )

    coordinator = TurnCoordinator(
        assistant_client=assistant,
        poller=RunPoller(assistant),
        resolver=FileReferenceResolver(assistant, storage_client, persisted_files, storage),
        sanitizer=ContentSanitizer(),
        augmenter=SearchAugmenter(search_client, max_results=config.SEARCH_MAX_RESULTS),
        conversation_files=ConversationFileStore(supabase, storage_transport),
        standard_budget=PollBudget(config.POLL_INTERVAL_MS, config.MAX_POLL_ATTEMPTS),
        search_budget=PollBudget(config.SEARCH_POLL_INTERVAL_MS, config.SEARCH_MAX_POLL_ATTEMPTS),
        timestamp_tolerance_s=config.MESSAGE_TIMESTAMP_TOLERANCE_S,
    )

    return {
        "turn_coordinator": coordinator,
        "assistant_client": assistant,
        "file_store": persisted_files,
        "storage_service": storage,
    }


@app.on_event("startup")
async def startup_event():
    """Initialize services on startup."""
    global turn_coordinator, assistant_client, file_store, storage_service

    logger.info("Initializing Assistant Turn Pipeline services...")

    try:
        services = build_services()
        turn_coordinator = services["turn_coordinator"]
        assistant_client = services["assistant_client"]
        file_store = services["file_store"]
        storage_service = services["storage_service"]
        logger.info("All services initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize services: {e}", exc_info=True)
        raise


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "message": "Assistant Turn Pipeline API"}


@app.get("/health")
async def health():
    """Detailed health check."""
    return {
        "status": "healthy",
        "service": "assistant-turn-pipeline",
        "version": "1.0.0"
    }


@app.post("/turn", response_model=TurnResponse)
def turn_endpoint(request: TurnRequest, background_tasks: BackgroundTasks) -> TurnResponse:
    """
    Run one conversation turn.

    Blocks while the assistant job runs, so it is a plain function and
    FastAPI serves it from the threadpool.

    Args:
        request: TurnRequest with the message and turn options
        background_tasks: Used to schedule storage cleanup after the reply

    Returns:
        TurnResponse with the sanitized reply, persisted files and sources

    Raises:
        HTTPException: For validation, configuration, upstream-create and
            concurrent-turn errors
    """
    try:
        logger.info(
            f"Processing turn: {request.message[:100]}...",
            extra={"conversation_id": request.conversation_id},
        )

        result = turn_coordinator.run_turn(TurnInput(
            text=request.message,
            conversation_id=request.conversation_id,
            file_handles=request.file_handles,
            search_enabled=request.search_enabled,
            json_mode_requested=request.json_mode_requested,
        ))

        if result.cleanup_requested:
            logger.info("Scheduling storage cleanup")
            background_tasks.add_task(storage_service.cleanup_old_files)

        return _to_response(result)

    except TurnPipelineError as e:
        logger.error(f"Turn failed: {e.error.code}: {e.error.message}")
        raise HTTPException(status_code=e.error.status_code, detail={"error": e.to_dict()})
    except Exception as e:
        # Handle unexpected errors
        logger.error(f"Unexpected error processing turn: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


def _to_response(result: TurnResult) -> TurnResponse:
    reply = result.reply
    files = [
        FileOutput(
            file_handle=f.external_handle,
            filename=f.filename,
            url=f.public_url,
            content_type=f.content_type,
            size_bytes=f.size_bytes,
        )
        for f in reply.files
    ]
    sources = None
    if reply.search_sources:
        sources = [
            Source(title=s.title, url=s.url, relevance_score=s.relevance_score, snippet=s.snippet)
            for s in reply.search_sources
        ]
    return TurnResponse(
        reply=reply.text,
        conversation_id=result.conversation_id,
        status=result.status,
        message_id=result.job_id,
        files=files or None,
        search_sources=sources,
        structured_reply=reply.structured,
    )


@app.get("/api/files/{handle}")
def file_endpoint(handle: str):
    """
    Stable link for a file the assistant referenced.

    Redirects to the persisted copy when there is one, otherwise streams
    the bytes from the assistant backend.
    """
    try:
        persisted = file_store.get(handle)
        if persisted is not None:
            return RedirectResponse(persisted.public_url)

        metadata = assistant_client.get_file_metadata(handle)
        content = assistant_client.get_file_content(handle)
    except TransportError as e:
        logger.error(f"Could not serve file {handle}: {e}")
        status = 404 if e.upstream_status == 404 else 502
        raise HTTPException(status_code=status, detail={"error": e.to_dict()})

    filename = safe_filename(metadata.filename, fallback=handle)
    return Response(
        content=content,
        media_type=content_type_for(filename),
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/storage/stats", response_model=StorageStats)
def storage_stats_endpoint() -> StorageStats:
    """Aggregate storage usage."""
    try:
        usage = storage_service.get_stats()
    except TransportError as e:
        logger.error(f"Could not read storage stats: {e}")
        raise HTTPException(status_code=502, detail={"error": e.to_dict()})
    return StorageStats(
        total_bytes=usage.total_bytes,
        file_count=usage.file_count,
        storage_limit=usage.storage_limit,
        percent_used=usage.percent_used,
        last_cleanup=usage.last_cleanup,
    )


@app.post("/storage/cleanup", response_model=CleanupSummary)
def storage_cleanup_endpoint(retention_days: Optional[int] = None) -> CleanupSummary:
    """Delete files not accessed within the retention window."""
    result = storage_service.cleanup_old_files(retention_days=retention_days)
    return CleanupSummary(deleted_count=result.deleted_count, freed_bytes=result.freed_bytes)


if __name__ == "__main__":
    import uvicorn
    logger.info(f"Starting Assistant Turn Pipeline API on port {config.PORT}")
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
