"""
CONFIGURATION MODULE
====================

PURPOSE:
  Central place for all Pocket Senpai settings: API keys, endpoints, model
  names, timeouts, and the assistant system prompt.

WHAT THIS FILE DOES:
  - Loads environment variables from .env (so API keys stay out of code).
  - Exposes GROQ_API_KEYS / GROQ_MODEL for the chat LLM.
  - Exposes MOONDREAM_* settings for the image-understanding tools.
  - Exposes SUPERMEMORY_* settings for the documentation search / memories.
  - Holds the system prompt that tells the assistant when to use each toolset.

USAGE:
  Import what you need: `from config import GROQ_API_KEYS, MOONDREAM_API_KEY`
  All services import from here so behaviour is consistent.
"""

import os
import logging
from dotenv import load_dotenv


logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# ENVIRONMENT
# -----------------------------------------------------------------------------
# Load environment variables from .env file (if it exists).
load_dotenv()


def _env_float(name: str, default: float) -> float:
    """Read a float from the environment, falling back to default on a bad value."""
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r, using %s", name, raw, default)
        return default


# ============================================================================
# GROQ API CONFIGURATION
# ============================================================================
# Groq is the LLM provider that drives the conversation and decides which
# tools to call. Set GROQ_API_KEY, and optionally GROQ_API_KEY_2, _3, ...;
# requests rotate through the keys one-by-one, and a failing key is skipped.
# The model must support tool calling.

def _load_groq_api_keys() -> list:
    """
    Load all GROQ API keys from the environment.
    Reads GROQ_API_KEY first, then GROQ_API_KEY_2, GROQ_API_KEY_3, ... until
    a number has no value. Returns a list of non-empty key strings.
    """
    keys = []
    first = os.getenv("GROQ_API_KEY", "").strip()
    if first:
        keys.append(first)
    i = 2
    while True:
        k = os.getenv(f"GROQ_API_KEY_{i}", "").strip()
        if not k:
            break
        keys.append(k)
        i += 1
    return keys


GROQ_API_KEYS = _load_groq_api_keys()
GROQ_MODEL = os.getenv("GROQ_MODEL", "meta-llama/llama-4-scout-17b-16e-instruct")

# ============================================================================
# MOONDREAM (VISION) CONFIGURATION
# ============================================================================
# Moondream answers questions about images, detects objects (bounding boxes),
# points at objects and writes captions. The tools are only offered to the
# model when MOONDREAM_API_KEY is set. The key is read once at import time.
# Every call gets exactly one attempt with a hard deadline; no retries.

MOONDREAM_API_KEY = os.getenv("MOONDREAM_API_KEY", "").strip()
MOONDREAM_API_BASE = os.getenv("MOONDREAM_API_BASE", "https://api.moondream.ai/v1").rstrip("/")
MOONDREAM_TIMEOUT_SECONDS = _env_float("MOONDREAM_TIMEOUT_SECONDS", 25.0)

# ============================================================================
# SUPERMEMORY (DOCUMENTATION SEARCH) CONFIGURATION
# ============================================================================
# Supermemory hosts the knowledge base (guides, manuals, uploaded files).
# DEFAULT_CONTAINER_TAG is where the /memories endpoints store new content;
# SEARCH_CONTAINER_TAGS is what the assistant's search tool looks through.

SUPERMEMORY_API_KEY = os.getenv("SUPERMEMORY_API_KEY", "").strip()
SUPERMEMORY_API_BASE = os.getenv("SUPERMEMORY_API_BASE", "https://api.supermemory.ai/v3").rstrip("/")
SUPERMEMORY_TIMEOUT_SECONDS = _env_float("SUPERMEMORY_TIMEOUT_SECONDS", 30.0)
DEFAULT_CONTAINER_TAG = os.getenv("DEFAULT_CONTAINER_TAG", "pocket-senpai").strip() or "pocket-senpai"
SEARCH_CONTAINER_TAGS = [
    tag.strip()
    for tag in os.getenv("SEARCH_CONTAINER_TAGS", "imported").split(",")
    if tag.strip()
]
SEARCH_RESULT_LIMIT = 5

# ============================================================================
# ANNOTATION IMAGES
# ============================================================================
# /annotate accepts a data URI or a public http(s) URL. Downloads and decoded
# data URIs are capped at MAX_IMAGE_BYTES; URLs that resolve to private,
# loopback or link-local addresses are refused.

MAX_IMAGE_BYTES = int(_env_float("MAX_IMAGE_BYTES", 10 * 1024 * 1024))
IMAGE_FETCH_TIMEOUT_SECONDS = _env_float("IMAGE_FETCH_TIMEOUT_SECONDS", 25.0)

# ============================================================================
# CHAT LIMITS
# ============================================================================
# MAX_TOOL_STEPS bounds the model -> tools -> model loop for a single turn, so
# the model always gets a chance to answer after its tools ran.

MAX_TOOL_STEPS = 5
MAX_MESSAGE_LENGTH = 32_000

# ============================================================================
# POCKET SENPAI PERSONALITY
# ============================================================================

ASSISTANT_NAME = (os.getenv("ASSISTANT_NAME", "").strip() or "Pocket Senpai")

_SYSTEM_PROMPT_BASE = """You are **{assistant_name}**, a helpful and knowledgeable AI assistant. Your purpose is to guide users by answering their questions and analyzing information.

You have access to two specialized sets of tools:
1.  **Supermemory (Documentation Search):** A tool for searching a knowledge base.
2.  **Moondream (Image Analysis):** A set of tools for understanding and annotating images.

Follow these rules for using your tools:

### 1. Supermemory: Documentation Search

* **Purpose:** `searchMemories` is **only** for searching and retrieving information from the existing knowledge base, which contains documentation, guides, and manuals.
* **Trigger:** Use it **only when the user asks a question that requires looking up information**, such as "How do I...", "What is [feature]?", "Explain [concept]".
* **Constraint:** Its sole function is to search the existing guides. Do not use it for general conversation.

### 2. Moondream: Image Annotation & Analysis

* **Purpose:** `moondreamQuery`, `moondreamDetect`, `moondreamPoint` and `moondreamCaption` analyze, describe and annotate images.
* **Trigger:** You **must only** use the moondream tools **if the user has provided an image** in their current message.
* **Images:** Attached images are listed as references like `attachment://1`. Pass that reference as `imageUrl`.
* **Specifics:**
    * For a general question about the image ("What is this?", "Describe this picture"), use `moondreamCaption` or `moondreamQuery`.
    * To **find, locate, or annotate** specific objects ("Where is the cat?", "Find all the people"), use `moondreamDetect` for bounding boxes or `moondreamPoint` for center points.

### General Directives

* The two toolsets are **independent**. You can search documentation without an image, and analyze an image without searching documentation.
* If a user asks a general question ("Hello", "How are you?"), just respond naturally without using any tools.
* When a tool provides a result, use that information to construct your answer.
* If a tool returns an error or finds nothing relevant, tell the user plainly (e.g. "I couldn't find that in the documentation" or "I couldn't analyze that image right now").
"""

SYSTEM_PROMPT = _SYSTEM_PROMPT_BASE.format(assistant_name=ASSISTANT_NAME)
