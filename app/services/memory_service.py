"""
MEMORY SERVICE MODULE
=====================

Thin client for the Supermemory REST API, which hosts the knowledge base the
assistant searches (guides, manuals, uploaded documents).

LIFECYCLE:
  - add_memory(): store a piece of text in a container tag (POST /memories).
  - upload_file(): store a file; Supermemory extracts the text (POST /memories/upload).
  - list_memories(): paginated listing for the memories page (POST /memories/list).
  - search(): semantic search used by the assistant's `searchMemories` tool.

Failures raise MemoryServiceError. The HTTP layer turns that into a 4xx/5xx;
the search tool turns it into an {"error": ...} tool result so the assistant
can still answer.
"""

import logging
from typing import Any, Dict, List, Optional

import requests
from langchain_core.tools import BaseTool, tool
from pydantic import BaseModel, Field

from app.utils.retry import with_retry
from config import (
    DEFAULT_CONTAINER_TAG,
    SEARCH_CONTAINER_TAGS,
    SEARCH_RESULT_LIMIT,
    SUPERMEMORY_API_BASE,
    SUPERMEMORY_TIMEOUT_SECONDS,
)


logger = logging.getLogger("PocketSenpai")

SORT_FIELDS = ("createdAt", "updatedAt")
SORT_ORDERS = ("asc", "desc")


class MemoryServiceError(Exception):
    """Raised when the Supermemory API rejects a request or cannot be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def transient(self) -> bool:
        """Worth retrying: unreachable, rate limited or a 5xx. Other 4xx are final."""
        return self.status_code is None or self.status_code == 429 or self.status_code >= 500


# ==============================================================================
# MEMORY SERVICE CLASS
# ==============================================================================

class MemoryService:
    """
    Wraps the Supermemory endpoints this app uses. One instance is created at
    startup and shared by the route handlers and the search tool.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = SUPERMEMORY_API_BASE,
        timeout: float = SUPERMEMORY_TIMEOUT_SECONDS,
    ):
        if not api_key:
            raise ValueError("SUPERMEMORY_API_KEY is not set")
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    # ------------------------------------------------------------------------------
    # LOW-LEVEL REQUEST
    # ------------------------------------------------------------------------------

    def _post(self, path: str, **kwargs) -> Dict[str, Any]:
        """POST to {base_url}{path} with bearer auth and return the decoded JSON body."""
        url = f"{self.base_url}{path}"
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            response = requests.post(url, headers=headers, timeout=self.timeout, **kwargs)
        except requests.exceptions.RequestException as e:
            raise MemoryServiceError(f"Supermemory request to {path} failed: {e}") from e

        if not response.ok:
            logger.error("Supermemory API error %s on %s: %s", response.status_code, path, response.text)
            raise MemoryServiceError(
                f"Supermemory API error ({response.status_code}): {response.text}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise MemoryServiceError(f"Supermemory returned invalid JSON for {path}: {e}") from e

    # ------------------------------------------------------------------------------
    # WRITE
    # ------------------------------------------------------------------------------

    def add_memory(
        self,
        content: str,
        container_tag: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Store a text memory. Returns Supermemory's {id, status} record."""
        if not content or not content.strip():
            raise ValueError("Content is required")
        tag = container_tag or DEFAULT_CONTAINER_TAG
        result = self._post(
            "/documents",
            json={
                "content": content,
                "containerTags": [tag],
                "metadata": metadata or {},
            },
        )
        logger.info("Added memory to '%s' (id=%s)", tag, result.get("id"))
        return result

    def upload_file(
        self,
        filename: str,
        data: bytes,
        content_type: Optional[str] = None,
        container_tag: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Upload a file as a memory; Supermemory extracts and indexes its text."""
        tag = container_tag or DEFAULT_CONTAINER_TAG
        result = self._post(
            "/documents/file",
            files={"file": (filename, data, content_type or "application/octet-stream")},
            data={"containerTags": tag},
        )
        logger.info("Uploaded file '%s' (%d bytes) to '%s'", filename, len(data), tag)
        return result

    # ------------------------------------------------------------------------------
    # READ
    # ------------------------------------------------------------------------------

    def list_memories(
        self,
        limit: int = 10,
        page: int = 1,
        container_tag: Optional[str] = None,
        sort: str = "createdAt",
        order: str = "desc",
    ) -> Dict[str, Any]:
        """Return one page of memories: {"memories": [...], "pagination": {...}}."""
        if sort not in SORT_FIELDS:
            raise ValueError(f"sort must be one of {', '.join(SORT_FIELDS)}")
        if order not in SORT_ORDERS:
            raise ValueError(f"order must be one of {', '.join(SORT_ORDERS)}")

        body: Dict[str, Any] = {"limit": limit, "page": page, "sort": sort, "order": order}
        if container_tag:
            body["containerTags"] = [container_tag]
        return self._post("/documents/list", json=body)

    def search(
        self,
        query: str,
        container_tags: Optional[List[str]] = None,
        limit: int = SEARCH_RESULT_LIMIT,
    ) -> List[Dict[str, Any]]:
        """Semantic search over the knowledge base; returns the raw result entries."""
        body = {
            "q": query,
            "containerTags": container_tags or SEARCH_CONTAINER_TAGS,
            "limit": limit,
        }
        response = self._post("/search", json=body)
        return response.get("results", [])


# ==============================================================================
# SEARCH TOOL
# ==============================================================================

class SearchInput(BaseModel):
    informationToGet: str = Field(
        ...,
        min_length=1,
        description="What to look up in the documentation, phrased as a search query.",
    )


def _format_result(entry: Dict[str, Any]) -> Dict[str, Any]:
    """Keep only what the model needs from one search hit."""
    chunks = [c.get("content", "") for c in entry.get("chunks", []) if c.get("content")]
    return {
        "title": entry.get("title"),
        "score": entry.get("score"),
        "content": "\n".join(chunks) or entry.get("summary") or "",
    }


def memory_tools(service: MemoryService) -> Dict[str, BaseTool]:
    """Build the documentation search tool bound to a MemoryService."""

    @tool("searchMemories", args_schema=SearchInput)
    def search_memories(informationToGet: str) -> Dict[str, Any]:
        """Search the knowledge base of documentation, guides and manuals. Use this only when the user asks something that needs looking up."""
        try:
            results = with_retry(
                lambda: service.search(informationToGet),
                max_retries=3,
                initial_delay=1.0,
                retry_on=(MemoryServiceError,),
                retry_if=lambda e: e.transient,
            )
        except MemoryServiceError as e:
            logger.error("Memory search failed for '%s': %s", informationToGet, e)
            return {"error": f"Memory search failed: {e}"}

        logger.info("Memory search for '%s' returned %d results", informationToGet, len(results))
        return {"results": [_format_result(r) for r in results], "count": len(results)}

    return {search_memories.name: search_memories}
