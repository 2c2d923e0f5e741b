"""
POCKET SENPAI MAIN API
======================

This module defines the FastAPI application and all HTTP endpoints.

ENDPOINTS:
  GET  /                - Returns API name and list of endpoints.
  GET  /health          - Returns which services are configured.
  POST /chat            - Streams one assistant turn as newline-delimited JSON
                          events (text deltas, tool calls, tool results).
  POST /annotate        - Renders detect/point results over an image, returns PNG.
  POST /memories        - Adds a text memory to the knowledge base.
  POST /memories/upload - Uploads a file (multipart) to the knowledge base.
  POST /memories/list   - Lists memories, paginated.

STATELESS:
  The client sends the whole conversation on every /chat call. Nothing about
  a chat, a tool call or an overlay is stored on the server.

STARTUP:
  The lifespan function builds the memory service (if SUPERMEMORY_API_KEY is
  set) and the chat service (if at least one GROQ_API_KEY is set). Endpoints
  whose service is missing answer 503.
"""

import io
import json
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response, StreamingResponse

from app.models import AnnotateRequest, ChatRequest, MemoryAddRequest, MemoryListRequest
from app.services.chat_service import ChatService
from app.services.memory_service import MemoryService, MemoryServiceError
from app.utils.annotations import annotate_image, load_image
from config import GROQ_API_KEYS, MOONDREAM_API_KEY, SUPERMEMORY_API_KEY


# -----------------------------------------------------------------------------
# LOGGING
# -----------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s | %(levelname)-8s | %(name)-20s | %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger("PocketSenpai")


# -----------------------------------------------------------------------------
# GLOBAL SERVICE REFERENCES
# -----------------------------------------------------------------------------
# Set during startup (lifespan) and used by all route handlers.
memory_service: Optional[MemoryService] = None
chat_service: Optional[ChatService] = None

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}


# -------------------------------------------------------------------------
# LIFESPAN (STARTUP / SHUTDOWN)
# -------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Build the services once at startup.

    MemoryService comes first because ChatService hands it to the
    searchMemories tool. Missing keys are not fatal: the server still starts
    and the affected endpoints report 503.
    """
    global memory_service, chat_service

    logger.info("=" * 60)
    logger.info("Pocket Senpai - Starting Up...")
    logger.info("=" * 60)

    if SUPERMEMORY_API_KEY:
        memory_service = MemoryService(SUPERMEMORY_API_KEY)
        logger.info("Memory service initialized")
    else:
        logger.warning("SUPERMEMORY_API_KEY not set. Memories and documentation search are unavailable.")

    if not MOONDREAM_API_KEY:
        logger.warning("MOONDREAM_API_KEY not set. Image analysis tools are unavailable.")

    if GROQ_API_KEYS:
        chat_service = ChatService(
            GROQ_API_KEYS,
            memory_service=memory_service,
            moondream_api_key=MOONDREAM_API_KEY,
        )
    else:
        logger.error("GROQ_API_KEY not set. /chat will answer 503.")

    logger.info("Pocket Senpai is online. Docs: http://localhost:8000/docs")

    yield

    logger.info("Shutting down Pocket Senpai. Goodbye!")
    memory_service = None
    chat_service = None


# -------------------------------------------------------------------------
# FASTAPI APP, CORS AND SECURITY HEADERS
# -------------------------------------------------------------------------
app = FastAPI(
    title="Pocket Senpai API",
    description="Chat assistant with documentation search and image analysis",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    for header, value in SECURITY_HEADERS.items():
        response.headers.setdefault(header, value)
    return response


def _require_memory_service() -> MemoryService:
    if not memory_service:
        raise HTTPException(status_code=503, detail="Memory service not configured")
    return memory_service


# =========================================================================
# API ENDPOINTS
# =========================================================================

@app.get("/")
async def root():
    """Return the API name and a short description of each endpoint (for discovery)."""
    return {
        "message": "Pocket Senpai API",
        "endpoints": {
            "/chat": "Streamed chat with documentation search and image tools",
            "/annotate": "Draw bounding boxes / points over an image (PNG)",
            "/memories": "Add a text memory",
            "/memories/upload": "Upload a file as a memory",
            "/memories/list": "List memories (paginated)",
            "/health": "System health check",
        }
    }


@app.get("/health")
async def health():
    """Return 'healthy' and whether each service is configured."""
    return {
        "status": "healthy",
        "chat_service": chat_service is not None,
        "memory_service": memory_service is not None,
        "vision_tools": bool(MOONDREAM_API_KEY),
    }


@app.post("/chat")
def chat(request: ChatRequest):
    """
    Stream one assistant turn.

    REQUEST BODY:
    {
        "messages": [
            {"role": "user", "content": "Where is the cat?", "imageUrl": "data:image/jpeg;base64,..."}
        ]
    }

    RESPONSE (application/x-ndjson), one JSON object per line:
        {"type": "tool-call", "name": "moondreamDetect", ...}
        {"type": "tool-result", "name": "moondreamDetect", "output": {...}}
        {"type": "text", "delta": "I found one cat..."}
        {"type": "finish", "steps": 2}
    """
    if not request.messages:
        raise HTTPException(status_code=400, detail="Messages are required")
    if not chat_service:
        raise HTTPException(status_code=503, detail="Chat service not initialized")

    service = chat_service

    def events():
        for event in service.stream_reply(request.messages):
            yield json.dumps(event) + "\n"

    return StreamingResponse(events(), media_type="application/x-ndjson")


@app.post("/annotate")
def annotate(request: AnnotateRequest):
    """
    Render a detect/point result over its image and return a PNG.

    Coordinates are normalized; they are scaled to displayWidth x displayHeight
    when given, otherwise to the image's own size.
    """
    try:
        image = load_image(request.imageUrl)
    except ValueError as e:
        logger.warning("Could not load image for annotation: %s", e)
        raise HTTPException(status_code=400, detail=str(e))

    display_size = None
    if request.displayWidth and request.displayHeight:
        display_size = (request.displayWidth, request.displayHeight)

    annotated = annotate_image(
        image,
        boxes=[b.model_dump() for b in request.boundingBoxes],
        points=[p.model_dump() for p in request.points],
        label=request.objectLabel,
        display_size=display_size,
    )
    buffer = io.BytesIO()
    annotated.save(buffer, format="PNG")
    return Response(content=buffer.getvalue(), media_type="image/png")


@app.post("/memories")
def add_memory(request: MemoryAddRequest):
    """Add a text memory. Returns Supermemory's {id, status} record."""
    service = _require_memory_service()
    if not request.content.strip():
        raise HTTPException(status_code=400, detail="Content is required")
    try:
        return service.add_memory(request.content, request.containerTag, request.metadata)
    except MemoryServiceError as e:
        logger.error("Error adding memory: %s", e)
        raise HTTPException(status_code=500, detail="Failed to add memory")


@app.post("/memories/upload")
def upload_memory(
    file: Optional[UploadFile] = File(None),
    containerTag: Optional[str] = Form(None),
):
    """Upload a file (multipart field 'file') into the knowledge base."""
    service = _require_memory_service()
    if file is None or not file.filename:
        raise HTTPException(status_code=400, detail="File is required")
    try:
        return service.upload_file(
            file.filename,
            file.file.read(),
            content_type=file.content_type,
            container_tag=containerTag,
        )
    except MemoryServiceError as e:
        logger.error("Error uploading file: %s", e)
        raise HTTPException(status_code=500, detail=f"Failed to upload file: {e}")


@app.post("/memories/list")
def list_memories(request: MemoryListRequest):
    """Return one page of memories with pagination info."""
    service = _require_memory_service()
    try:
        return service.list_memories(
            limit=request.limit,
            page=request.page,
            container_tag=request.containerTag,
            sort=request.sort,
            order=request.order,
        )
    except MemoryServiceError as e:
        logger.error("Error listing memories: %s", e)
        raise HTTPException(status_code=500, detail="Failed to list memories")


# -------------------------------------------------------------------------
# STANDALONE RUN (python -m app.main)
# -------------------------------------------------------------------------
def run():
    """Start the uvicorn server (same as run.py)."""
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )

if __name__ == "__main__":
    run()
