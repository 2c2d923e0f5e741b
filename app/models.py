"""
DATA MODELS MODULE
==================

Pydantic models for API request bodies. FastAPI uses these to validate
incoming JSON; the chat and memory services receive already-validated data.

MODELS:
  ChatMessage       - One message in the conversation (role + text + optional image).
  ChatRequest       - Body of POST /chat: the full conversation so far.
  NormalizedBox     - Bounding box as fractions of image width/height.
  NormalizedPoint   - Point as fractions of image width/height.
  AnnotateRequest   - Body of POST /annotate.
  MemoryAddRequest  - Body of POST /memories.
  MemoryListRequest - Body of POST /memories/list.
"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from config import MAX_MESSAGE_LENGTH

# ==============================================================================
# CHAT
# ==============================================================================

class ChatMessage(BaseModel):
    """
    A single message in a conversation. The client sends the whole conversation
    on every turn; nothing is stored server-side.
    """
    role: Literal["user", "assistant"]
    content: str = Field("", max_length=MAX_MESSAGE_LENGTH)
    # Remote URL or data:image/...;base64,... attached to a user message.
    imageUrl: Optional[str] = None


class ChatRequest(BaseModel):
    # Empty is accepted here and rejected by the route with a 400.
    messages: List[ChatMessage] = Field(default_factory=list)


# ==============================================================================
# ANNOTATIONS
# ==============================================================================

class NormalizedBox(BaseModel):
    # Not range-checked: the renderer skips boxes outside [0, 1].
    xMin: float
    yMin: float
    xMax: float
    yMax: float


class NormalizedPoint(BaseModel):
    x: float
    y: float


class AnnotateRequest(BaseModel):
    """
    Body of POST /annotate. displayWidth/displayHeight are the size the image
    is shown at; when omitted the image's own size is used.
    """
    imageUrl: str = Field(..., min_length=1)
    boundingBoxes: List[NormalizedBox] = Field(default_factory=list)
    points: List[NormalizedPoint] = Field(default_factory=list)
    objectLabel: str = "object"
    displayWidth: Optional[int] = Field(None, gt=0, le=8192)
    displayHeight: Optional[int] = Field(None, gt=0, le=8192)


# ==============================================================================
# MEMORIES
# ==============================================================================

class MemoryAddRequest(BaseModel):
    content: str = ""
    containerTag: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class MemoryListRequest(BaseModel):
    limit: int = Field(10, ge=1, le=100)
    page: int = Field(1, ge=1)
    containerTag: Optional[str] = None
    sort: Literal["createdAt", "updatedAt"] = "createdAt"
    order: Literal["asc", "desc"] = "desc"
