"""
SERVICES PACKAGE
================

Business logic lives here. The API layer (app.main) calls these services;
they don't handle HTTP routing, only chat flow, LLM calls and external APIs.

MODULES:
    chat_service    - One assistant turn: Groq LLM + tool loop, streamed as events
    moondream_tools - Vision gateway: query / detect / point / caption tools
    memory_service  - Supermemory client and the searchMemories tool
"""
