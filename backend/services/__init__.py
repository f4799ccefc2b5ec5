"""Services for the Assistant Turn Pipeline."""
from .errors import (
    TurnPipelineError,
    ConfigurationError,
    ValidationError,
    UpstreamCreateError,
    ConcurrentTurnError,
    TransportError,
)
from .transport import TransportPolicy
from .assistant_client import AssistantClient
from .search_client import SearchClient
from .storage_client import StorageClient
from .file_store import PersistedFileStore, ConversationFileStore
from .storage_service import StorageService
from .file_resolver import FileReferenceResolver
from .content_sanitizer import ContentSanitizer
from .search_augmenter import SearchAugmenter
from .run_poller import RunPoller, PollBudget
from .turn_coordinator import TurnCoordinator

__all__ = ['TurnPipelineError', 'ConfigurationError', 'ValidationError', 'UpstreamCreateError', 'ConcurrentTurnError', 'TransportError', 'TransportPolicy', 'AssistantClient', 'SearchClient', 'StorageClient', 'PersistedFileStore', 'ConversationFileStore', 'StorageService', 'FileReferenceResolver', 'ContentSanitizer', 'SearchAugmenter', 'RunPoller', 'PollBudget', 'TurnCoordinator']
