"""
S.A.G.E MAIN API
================

This module defines the FastAPI application and all HTTP endpoints. S.A.G.E is a
chat assistant for a content service of subjects, problems and ideas: the model can
search, create and edit content through tools, with creation and edits confirmed by
the user first.

ENDPOINTS:
  GET  /                        - Returns API name and list of endpoints.
  GET  /health                  - Returns status of all services (for monitoring).
  POST /chat                    - Run one turn: {messages, conversationId?, userToken}.
  POST /chat/history            - Messages of a conversation: {conversationId}.
  GET  /chat/history/{id}       - Same, with the id in the path.

ERRORS:
  Failures are returned as {"error": "..."} with status 400 (malformed input),
  401 (missing user token), 402 (insufficient quota) or 500 (upstream/internal failure).
  Upstream 429/503/504 are passed through so clients know to retry later.

STARTUP:
  The lifespan function creates the process state (conversation store + caches) and the
  services. On shutdown it saves all in-memory conversations to disk and closes the
  HTTP clients.
"""


from contextlib import asynccontextmanager
from typing import Optional
import logging

from fastapi import FastAPI, Header, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
import uvicorn

from app.errors import AssistantError, UpstreamError
from app.models import ChatRequest, ChatResponse, HistoryRequest, HistoryResponse
from app.services.access_gate import AccessGate
from app.services.chat_service import ChatService
from app.services.content_client import ContentClient
from app.services.groq_service import GroqService
from app.services.orchestrator import Orchestrator
from app.services.tools import ToolRegistry
from app.state import create_state
from config import missing_credentials


# -----------------------------------------------------------------------------
# LOGGING
# -----------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s | %(levelname)-8s | %(name)-20s | %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger("SAGE")


# -----------------------------------------------------------------------------
# GLOBAL SERVICE REFERENCES
# -----------------------------------------------------------------------------
# Set during startup (lifespan) and used by all route handlers.
content_client: ContentClient = None
access_gate: AccessGate = None
groq_service: GroqService = None
chat_service: ChatService = None


def print_title():
    """Print the S.A.G.E banner to the console when the server starts."""
    CYAN = "\033[96m"
    BOLD = "\033[1m"
    DIM = "\033[2m"
    RESET = "\033[0m"
    print(f"\n{BOLD}{CYAN}  S . A . G . E{RESET}\n  {DIM}Subjects, problems and ideas, one conversation at a time{RESET}\n")


# -------------------------------------------------------------------------
# LIFESPAN (STARTUP / SHUTDOWN)
# -------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager - handles startup and shutdown.

    STARTUP, in dependency order:
      1. Process state: conversation store (with disk persistence) and the two caches
      2. ContentClient + ToolRegistry: the tools the model can call
      3. GroqService: the completion backend
      4. Orchestrator: the model <-> tool loop
      5. AccessGate: quota checks and usage decrements
      6. ChatService: one turn end to end
    SHUTDOWN: saves every conversation to disk, waits for pending decrements and
    closes the HTTP clients.

    Missing credentials do not stop startup; they are reported by /health and reject
    chat turns with a configuration error.
    """
    global content_client, access_gate, groq_service, chat_service

    print_title()
    logger.info("=" * 60)
    logger.info("S.A.G.E - Starting Up...")
    logger.info("=" * 60)

    try:
        state = create_state()

        content_client = ContentClient()
        tool_registry = ToolRegistry(content_client)
        logger.info("Tools registered: %s", ", ".join(tool_registry.tool_names))

        groq_service = GroqService()
        orchestrator = Orchestrator(groq_service, tool_registry.declarations, state.tool_cache)
        access_gate = AccessGate(token_cache=state.token_cache)

        chat_service = ChatService(state, orchestrator, tool_registry, access_gate)

        missing = missing_credentials()
        if missing:
            logger.warning("Missing configuration: %s. Chat turns will be rejected.", ", ".join(missing))
        logger.info("S.A.G.E is online and ready!")
        logger.info("Docs: http://localhost:8000/docs")
        logger.info("=" * 60)
    except Exception as e:
        logger.error(f"Fatal error during startup: {e}", exc_info=True)
        raise

    yield

    logger.info("Shutting down S.A.G.E...")
    if chat_service:
        await chat_service.save_all()
    if access_gate:
        await access_gate.aclose()
    if content_client:
        await content_client.aclose()
    logger.info("All conversations saved. Goodbye!")


# -------------------------------------------------------------------------
# FASTAPI APP, CORS AND ERROR PAYLOADS
# -------------------------------------------------------------------------
app = FastAPI(
    title="S.A.G.E API",
    description="Content assistant with tool calling",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request, exc: StarletteHTTPException):
    """Every error leaves the API as {"error": "..."}."""
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request, exc: RequestValidationError):
    """Malformed request bodies are a 400, not FastAPI's default 422."""
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()) if p != 'body')}: {err.get('msg')}"
        for err in exc.errors()
    )
    return JSONResponse(status_code=400, content={"error": f"Invalid request: {problems}"})


def _http_error(e: AssistantError) -> HTTPException:
    status = e.client_status if isinstance(e, UpstreamError) else e.status_code
    return HTTPException(status_code=status, detail=e.message)


# =========================================================================
# API ENDPOINTS
# =========================================================================

@app.get("/")
async def root():
    """Return the API name and a short description of each endpoint (for discovery)."""
    return {
        "message": "S.A.G.E API",
        "endpoints": {
            "/chat": "Send a message; the assistant may search, create or edit content",
            "/chat/history": "Get conversation history (POST {conversationId})",
            "/chat/history/{conversation_id}": "Get conversation history",
            "/health": "System health check"
        }
    }


@app.get("/health")
async def health():
    """Return 'healthy' and whether each service is initialized and credentials are configured."""
    return {
        "status": "healthy",
        "content_client": content_client is not None,
        "groq_service": groq_service is not None,
        "access_gate": access_gate is not None,
        "chat_service": chat_service is not None,
        "credentials_configured": not missing_credentials(),
    }


@app.post("/chat", response_model=ChatResponse, response_model_exclude_none=True)
async def chat(request: ChatRequest, x_user_token: Optional[str] = Header(None)):
    """
    Run one conversational turn.

    REQUEST BODY:
    {
        "messages": [{"role": "user", "content": "What's in Physics?"}],
        "conversationId": "optional-conversation-id",
        "userToken": "the caller's access token (or send the X-User-Token header)"
    }

    RESPONSE:
    {
        "conversationId": "...",
        "choices": [{"index": 0, "message": {"role": "assistant", "content": "..."}, "finish_reason": "stop"}],
        "usedTokens": 1234
    }
    """
    if not chat_service:
        raise HTTPException(status_code=503, detail="Chat service not initialized")

    try:
        return await chat_service.process_turn(request, user_token=request.user_token or x_user_token)
    except AssistantError as e:
        if e.status_code >= 500:
            logger.error(f"Turn failed: {e}")
        else:
            logger.warning(f"Turn rejected ({e.status_code}): {e}")
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Error processing chat: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Error processing chat: {str(e)}")


async def _history(conversation_id: Optional[str]) -> HistoryResponse:
    if not chat_service:
        raise HTTPException(status_code=503, detail="Chat service not initialized")
    if not conversation_id:
        raise HTTPException(status_code=400, detail="Conversation ID is required")

    try:
        messages = await chat_service.get_chat_history(conversation_id)
        return HistoryResponse(conversation_id=conversation_id, messages=messages)
    except AssistantError as e:
        logger.warning(f"History request rejected: {e}")
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Error retrieving history: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Error retrieving history: {str(e)}")


@app.post("/chat/history", response_model=HistoryResponse, response_model_exclude_none=True)
async def post_chat_history(request: HistoryRequest):
    """Return the messages of a conversation (system messages filtered out); empty list if unknown."""
    return await _history(request.conversation_id)


@app.get("/chat/history/{conversation_id}", response_model=HistoryResponse, response_model_exclude_none=True)
async def get_chat_history(conversation_id: str):
    """Path form of POST /chat/history."""
    return await _history(conversation_id)


# -------------------------------------------------------------------------
# STANDALONE RUN (python -m app.main)
# -------------------------------------------------------------------------
def run():
    """Start the uvicorn server (same as run.py); used if someone does python -m app.main"""
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )

if __name__ == "__main__":
    run()
