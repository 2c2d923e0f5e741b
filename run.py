"""
RUN SCRIPT - Start the Pocket Senpai server
===========================================

USAGE:
  python run.py

  Then open http://localhost:8000/docs for the API docs.

NOTE:
  Set GROQ_API_KEY, and optionally MOONDREAM_API_KEY (image tools) and
  SUPERMEMORY_API_KEY (documentation search, memories) in .env first.
  Set RELOAD=1 to restart on code changes while developing.
"""

import os

import uvicorn

if __name__ == "__main__":
    uvicorn.run(
        "app.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        reload=os.getenv("RELOAD", "") == "1",
    )
