"""
S.A.G.E APPLICATION PACKAGE
===========================

Main Python package for the S.A.G.E backend.

  from app.main import app
  from app.models import ChatRequest
  from app.services.chat_service import ChatService

FILE STRUCTURE:
  app/
    __init__.py   - This file; marks 'app' as a package.
    main.py       - FastAPI app and all HTTP endpoints (/chat, /chat/history, /health).
    models.py     - Pydantic models for API requests, responses, and stored conversations.
    errors.py     - Exceptions carrying the HTTP status the API answers with.
    state.py      - Process-wide conversation store and caches.
    services/     - Business logic: chat turns, orchestration loop, tools, content/quota/LLM clients.
    utils/        - Helpers: retry with backoff, token masking.
"""
