"""Optional web-search augmentation of the outbound message."""
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from models.reply import SourceCitation
from services.errors import SearchError
from services.search_client import SearchClient, SearchResponse

logger = logging.getLogger(__name__)

CONTEXT_START = "[INTERNAL SEARCH CONTEXT - DO NOT DISPLAY]:"
CONTEXT_END = "[END SEARCH CONTEXT]"

NATURAL_INSTRUCTION = (
    "IMPORTANT: Please provide a natural response that answers the question using the "
    "search results above where relevant. Cite sources naturally by title but do not "
    "mention the internal search context."
)

JSON_INSTRUCTION = (
    "Please format your response as a valid JSON object with an \"answer\" string and a "
    "\"sources\" array of {\"title\", \"url\"} objects for the results you used.\n"
    "DO NOT include any text outside the JSON object."
)

JSON_ONLY_INSTRUCTION = (
    "Please format your response as a valid JSON object.\n"
    "DO NOT include any text outside the JSON object."
)

UNAVAILABLE_NOTE = (
    "[Note: Web search was requested but is currently unavailable. "
    "Answer from existing knowledge.]"
)

SNIPPET_LENGTH = 200


@dataclass
class Augmentation:
    """
    Outbound message text after augmentation.

    Attributes:
        text: Message to send to the assistant
        sources: Citations for the search results embedded in text
        degraded: Search was requested but could not be used
        error: The recovered search error, if any
    """
    text: str
    sources: List[SourceCitation] = field(default_factory=list)
    degraded: bool = False
    error: Optional[SearchError] = None


class SearchAugmenter:
    """Embed a bounded summary of live search results in the outbound message."""

    def __init__(self, search_client: Optional[SearchClient], max_results: int = 5):
        """
        Initialize the augmenter.

        Args:
            search_client: Search collaborator; None when search is not configured
            max_results: How many results to embed
        """
        self.search_client = search_client
        self.max_results = max_results

    def augment(self, query: str, json_mode_requested: bool = False) -> Augmentation:
        """
        Search for the query and build the augmented message.

        Never raises: a failed or empty search returns the original text plus
        a short note and degraded=True.
        """
        if self.search_client is None:
            logger.warning("Search requested but no search client is configured")
            return self._degraded(
                query, json_mode_requested, SearchError("Search is not configured", code="SEARCH_NOT_CONFIGURED")
            )

        try:
            response = self.search_client.search(query, max_results=self.max_results)
        except SearchError as e:
            logger.warning(f"Search failed, continuing without results: {e}")
            return self._degraded(query, json_mode_requested, e)
        except Exception as e:
            logger.error(f"Unexpected search failure, continuing without results: {e}", exc_info=True)
            return self._degraded(
                query, json_mode_requested, SearchError("Web search failed", details={"original_error": str(e)})
            )

        if not response.results:
            logger.info("Search returned no results, continuing without results")
            return self._degraded(
                query, json_mode_requested, SearchError("Search returned no results", code="NO_RESULTS")
            )

        sources = [
            SourceCitation(
                title=result.title,
                url=result.url,
                relevance_score=result.score,
                snippet=result.content[:SNIPPET_LENGTH],
            )
            for result in response.results
        ]
        text = self.build_message(query, response, json_mode_requested)
        logger.info(f"Augmented message with {len(sources)} search results")
        return Augmentation(text=text, sources=sources)

    @staticmethod
    def build_message(query: str, response: SearchResponse, json_mode_requested: bool) -> str:
        """Compose query, delimited search context and the response instruction."""
        lines = [query, "", CONTEXT_START]
        if response.answer:
            lines.append(f"Web Summary: {response.answer}")
        lines.append("Top Search Results:")
        for index, result in enumerate(response.results, start=1):
            snippet = result.content[:SNIPPET_LENGTH]
            lines.append(f"{index}. {result.title}: {snippet}... Source: {result.url}")
        lines.append(CONTEXT_END)
        lines.append("")
        lines.append(JSON_INSTRUCTION if json_mode_requested else NATURAL_INSTRUCTION)
        return "\n".join(lines)

    @staticmethod
    def _degraded(query: str, json_mode_requested: bool, error: SearchError) -> Augmentation:
        text = f"{query}\n\n{UNAVAILABLE_NOTE}"
        if json_mode_requested:
            text = f"{text}\n\n{JSON_ONLY_INSTRUCTION}"
        return Augmentation(text=text, degraded=True, error=error)
