"""
Exception hierarchy for the research assistant.

Only ``ModelProviderError`` and request validation errors abort a turn. Tool
and crawl failures are converted into model-visible results, cache failures
fall through to uncached execution.
"""

from __future__ import annotations

from typing import Any


class DeepSearchError(Exception):
    """Base exception for all research assistant errors"""


# --- Tools ---


class ToolError(DeepSearchError):
    """Raised when a tool call cannot produce a result"""

    def __init__(self, tool_name: str, message: str):
        super().__init__(message)
        self.tool_name = tool_name
        self.message = message


class ToolArgumentError(ToolError):
    """Raised when tool arguments do not match the tool's schema"""


class ToolExecutionError(ToolError):
    """Raised when a tool's executor fails (network, provider, bug)"""


class SearchProviderError(DeepSearchError):
    """Raised when the search provider fails; no partial results are kept"""


# --- Crawl (never escapes the bulk extractor) ---


class CrawlOutcomeFailure(DeepSearchError):
    """Base class for per-URL crawl failures"""

    kind = "crawl_failure"
    transient = False


class FetchTimeout(CrawlOutcomeFailure):
    kind = "fetch_timeout"
    transient = True


class FetchError(CrawlOutcomeFailure):
    kind = "fetch_error"

    def __init__(self, message: str, *, transient: bool = False, status_code: int | None = None):
        super().__init__(message)
        self.transient = transient
        self.status_code = status_code


class ExtractionError(CrawlOutcomeFailure):
    kind = "extraction_error"


# --- Model / loop ---


class ModelProviderError(DeepSearchError):
    """Raised when the language model provider fails; fatal to the turn"""


class AgentAborted(DeepSearchError):
    """Raised when the agent loop is cancelled by an external signal"""

    def __init__(self, message: str = "Agent loop aborted", *, partial_turn: Any = None):
        super().__init__(message)
        self.partial_turn = partial_turn


# --- Infrastructure ---


class CacheBackingUnavailable(DeepSearchError):
    """Raised by cache stores when the backing service cannot be reached"""


class PersistenceError(DeepSearchError):
    """Raised when the conversation store fails to save or load"""


class ChatOwnershipError(PersistenceError):
    """Raised when a chat is saved by a user other than its owner"""


class ChatNotFound(DeepSearchError):
    """Raised when a chat does not exist or belongs to another user"""
