"""
POCKET SENPAI APPLICATION PACKAGE
=================================

Main Python package for the Pocket Senpai backend:

  from app.main import app
  from app.models import ChatRequest
  from app.services.chat_service import ChatService

FILE STRUCTURE:
  app/
    __init__.py   - This file; marks 'app' as a package.
    main.py       - FastAPI app and all HTTP endpoints (/chat, /annotate, /memories, /health).
    models.py     - Pydantic models for API request bodies.
    services/     - Business logic: chat orchestration, Moondream vision tools, Supermemory.
    utils/        - Helpers: retry with backoff, annotation rendering.
"""
