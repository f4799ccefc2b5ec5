"""
Content Sanitizer for assistant replies.

Removes prompt scaffolding (internal search context, injected instructions,
echoed search listings) from model output while keeping every file and
citation link exactly as the model wrote it.

Cleaning runs in four steps:
1. Protect: every link match is swapped for a placeholder unique to the call
2. Transform: ordered scaffolding rules delete their spans; placeholders
   inside a deleted span are kept
3. Normalize: runs of blank lines collapse to one, outer blank lines go;
   code fences are left untouched
4. Restore: one pass puts every original link back
"""
import logging
import re
import uuid
from dataclasses import dataclass
from typing import Dict, List, Pattern, Tuple

logger = logging.getLogger(__name__)

# Characters a bare URL/path may contain; excludes placeholder delimiters
_URL_CHAR = r"[^\s)\]\"'`<>\ue000\ue001]"
_URL_END = r"[^\s)\]\"'`<>\ue000\ue001.,;:!?]"

_PLACEHOLDER_OPEN = "\ue000"
_PLACEHOLDER_CLOSE = "\ue001"


@dataclass(frozen=True)
class LinkPattern:
    """A class of link that must survive cleaning byte for byte."""
    name: str
    pattern: Pattern[str]


@dataclass(frozen=True)
class ScaffoldingRule:
    """
    A named removal rule.

    Attributes:
        name: Identifier used in logs and tests
        pattern: What to remove
        replacement: Text left in place of the match
        search_artifact: Only applied when search citations are not preserved
    """
    name: str
    pattern: Pattern[str]
    replacement: str = ""
    search_artifact: bool = False


# Order matters: a markdown link is protected whole before its target could
# be matched on its own.
LINK_PATTERNS: Tuple[LinkPattern, ...] = (
    LinkPattern(
        "markdown_file_link",
        re.compile(
            r"!?\[[^\]\n]*\]\("
            r"(?:sandbox:|/api/files/|https?://[^)\s]*(?:\.supabase\.co/storage/|vercel-storage\.com/))"
            r"[^)\s]*\)"
        ),
    ),
    LinkPattern("api_file_path", re.compile(r"/api/files/[A-Za-z0-9_-]+(?:\.[A-Za-z0-9_-]+)*")),
    LinkPattern("sandbox_path", re.compile(rf"sandbox:/{{1,2}}{_URL_CHAR}*{_URL_END}")),
    LinkPattern(
        "storage_url",
        re.compile(
            rf"https?://(?:[A-Za-z0-9-]+\.supabase\.co/storage/"
            rf"|[A-Za-z0-9.-]*vercel-storage\.com/){_URL_CHAR}*{_URL_END}"
        ),
    ),
    LinkPattern("file_handle", re.compile(r"\bfile-[A-Za-z0-9]{16,}\b")),
)

SCAFFOLDING_RULES: Tuple[ScaffoldingRule, ...] = (
    ScaffoldingRule(
        "internal_search_context",
        re.compile(r"\[INTERNAL SEARCH CONTEXT[^\]]*\]:?.*?\[END SEARCH CONTEXT\]", re.IGNORECASE | re.DOTALL),
    ),
    ScaffoldingRule(
        "internal_context",
        re.compile(r"\[BEGIN INTERNAL CONTEXT\].*?\[END INTERNAL CONTEXT\]", re.IGNORECASE | re.DOTALL),
    ),
    ScaffoldingRule(
        "natural_response_instruction",
        re.compile(r"IMPORTANT:\s*Please provide a natural response[^.]*\.", re.IGNORECASE),
    ),
    ScaffoldingRule(
        "cite_sources_instruction",
        re.compile(r"Cite sources naturally[^.]*but do not mention[^.]*\.", re.IGNORECASE),
    ),
    ScaffoldingRule(
        "respond_naturally_instruction",
        re.compile(r"Please respond naturally using the search results[^\n]*\n?", re.IGNORECASE),
    ),
    ScaffoldingRule(
        "focus_instruction",
        re.compile(r"Focus on being helpful and accurate\.", re.IGNORECASE),
    ),
    ScaffoldingRule(
        "incorporate_instruction",
        re.compile(r"Instructions: Please incorporate[^\n]*\n?", re.IGNORECASE),
    ),
    ScaffoldingRule(
        "search_unavailable_note",
        re.compile(r"\[Note: Web search was requested[^\]]*\]", re.IGNORECASE),
    ),
    ScaffoldingRule(
        "search_access_notice",
        re.compile(r"You have access to current web search results[^\n]*\n?", re.IGNORECASE),
    ),
    ScaffoldingRule(
        "json_format_instruction",
        re.compile(r"Please format your response as a valid JSON[^\n]*\n?", re.IGNORECASE),
    ),
    ScaffoldingRule(
        "json_only_instruction",
        re.compile(r"DO NOT include any text outside[^\n]*\n?", re.IGNORECASE),
    ),
    ScaffoldingRule(
        "web_summary",
        re.compile(r"Web Summary:[ \t]*[^\n]*\n?", re.IGNORECASE),
        search_artifact=True,
    ),
    ScaffoldingRule(
        "current_web_information",
        re.compile(r"Current Web Information:[ \t]*\n.*?(?=\n\n|\n[A-Z]|\Z)", re.IGNORECASE | re.DOTALL),
        search_artifact=True,
    ),
    ScaffoldingRule(
        "top_search_results",
        re.compile(r"Top Search Results:[ \t]*\n.*?(?=\n\n|\n[A-Z]|\Z)", re.IGNORECASE | re.DOTALL),
        search_artifact=True,
    ),
    ScaffoldingRule(
        "search_result_markers",
        re.compile(r"【\d+(?::\d+)?†[^】]*】"),
        search_artifact=True,
    ),
    ScaffoldingRule(
        "search_timestamp",
        re.compile(r"Search performed on:[ \t]*[^\n]*\n?", re.IGNORECASE),
        search_artifact=True,
    ),
)

_FENCE = re.compile(r"^\s*(```|~~~)")


class ContentSanitizer:
    """Strip scaffolding from assistant replies without touching file links."""

    def __init__(
        self,
        link_patterns: Tuple[LinkPattern, ...] = LINK_PATTERNS,
        rules: Tuple[ScaffoldingRule, ...] = SCAFFOLDING_RULES,
    ):
        self.link_patterns = link_patterns
        self.rules = rules

    def clean(self, text: str, preserve_search_citations: bool = False) -> str:
        """
        Clean a reply for display.

        Args:
            text: Raw reply text
            preserve_search_citations: Keep echoed search listings and
                source markers instead of removing them

        Returns:
            Cleaned text in which every protected link appears unchanged and
            in its original order
        """
        if not text:
            return text

        protected, originals, placeholder_re = self._protect(text)
        if originals:
            logger.debug(f"Protected {len(originals)} links before cleaning")

        for rule in self.rules:
            if rule.search_artifact and preserve_search_citations:
                continue
            protected = self._apply_rule(rule, protected, placeholder_re)

        protected = normalize_whitespace(protected)

        restored = placeholder_re.sub(lambda m: originals[int(m.group(1))], protected)
        return restored

    def detect_file_links(self, text: str) -> bool:
        """True if text contains any protected link."""
        return bool(text) and any(p.pattern.search(text) for p in self.link_patterns)

    def find_links(self, text: str) -> List[str]:
        """Protected link substrings of text, in order of appearance."""
        protected, originals, placeholder_re = self._protect(text or "")
        return [originals[int(m.group(1))] for m in placeholder_re.finditer(protected)]

    def has_scaffolding(self, text: str) -> bool:
        """True if any non-search scaffolding rule would remove something."""
        return bool(text) and any(
            rule.pattern.search(text) for rule in self.rules if not rule.search_artifact
        )

    def _protect(self, text: str) -> Tuple[str, Dict[int, str], Pattern[str]]:
        """Swap every link match for a placeholder; returns (text, originals, placeholder regex)."""
        nonce = uuid.uuid4().hex[:12]
        while nonce in text:
            nonce = uuid.uuid4().hex[:12]

        placeholder_re = re.compile(rf"{_PLACEHOLDER_OPEN}(\d+):{nonce}{_PLACEHOLDER_CLOSE}")
        originals: Dict[int, str] = {}

        def _swap(match: re.Match) -> str:
            index = len(originals)
            originals[index] = match.group(0)
            return f"{_PLACEHOLDER_OPEN}{index}:{nonce}{_PLACEHOLDER_CLOSE}"

        for link in self.link_patterns:
            text = link.pattern.sub(_swap, text)

        return text, originals, placeholder_re

    @staticmethod
    def _apply_rule(rule: ScaffoldingRule, text: str, placeholder_re: Pattern[str]) -> str:
        def _remove(match: re.Match) -> str:
            # Deleted prose may surround a link; the link itself stays
            kept = [m.group(0) for m in placeholder_re.finditer(match.group(0))]
            return rule.replacement + " ".join(kept)

        return rule.pattern.sub(_remove, text)


def normalize_whitespace(text: str) -> str:
    """
    Collapse runs of blank lines to one and trim outer blank lines.

    Lines inside code fences are copied as they are; no line's content
    is reflowed or trimmed.
    """
    out: List[str] = []
    in_fence = False
    blank_run = 0

    for line in text.split("\n"):
        if _FENCE.match(line):
            in_fence = not in_fence
            blank_run = 0
            out.append(line)
            continue
        if in_fence:
            out.append(line)
            continue
        if not line.strip():
            blank_run += 1
            if blank_run == 1:
                out.append("")
            continue
        blank_run = 0
        out.append(line)

    while out and not out[0].strip():
        out.pop(0)
    while out and not out[-1].strip():
        out.pop()
    return "\n".join(out)
