"""
CONFIGURATION MODULE
====================

PURPOSE:
  Central place for all S.A.G.E settings: API keys, service URLs, model names,
  cache lifetimes, context limits and the assistant system prompt.

WHAT THIS FILE DOES:
  - Loads environment variables from .env (so API keys stay out of code).
  - Defines the path to database/chats_data where conversation transcripts are saved.
  - Exposes GROQ_API_KEYS / GROQ_MODEL for the completion backend.
  - Exposes CONTENT_API_URL / CONTENT_API_TOKEN for the content service and
    QUOTA_API_URL for the token quota service.
  - Defines the round limit, context window and cache TTLs used by the chat flow.
  - Holds the system prompt that tells the model how to use the content tools.

USAGE:
  Import what you need: `from config import GROQ_API_KEYS, CHATS_DATA_DIR, SYSTEM_PROMPT`
  All services import from here so behaviour is consistent.
"""

import os
import logging
from pathlib import Path
from typing import List
from dotenv import load_dotenv


logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# ENVIRONMENT
# -----------------------------------------------------------------------------
# Load environment variables from .env file (if it exists).
load_dotenv()


def _env_int(name: str, default: int) -> int:
    """Read an integer setting; fall back to the default (with a warning) if it is not a number."""
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid integer for %s=%r, using default %s", name, raw, default)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid number for %s=%r, using default %s", name, raw, default)
        return default


# -----------------------------------------------------------------------------
# BASE PATH
# -----------------------------------------------------------------------------
BASE_DIR = Path(__file__).parent

# ============================================================================
# DATABASE PATHS
# ============================================================================
# chats_data: one JSON file per conversation ({conversationId, messages, updatedAt}).
# The directory is created by the persistence layer on first save.

CHATS_DATA_DIR = BASE_DIR / "database" / "chats_data"

# ============================================================================
# GROQ API CONFIGURATION (COMPLETION BACKEND)
# ============================================================================
# You can set one key (GROQ_API_KEY) or multiple keys:
#   GROQ_API_KEY, GROQ_API_KEY_2, GROQ_API_KEY_3, ... (no upper limit).
# Requests rotate through the keys; a key hitting its rate limit (429) is skipped
# and the same request is retried with the next one.

def _load_groq_api_keys() -> List[str]:
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
GROQ_MODEL = os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile")

# Seconds before an outbound completion request is abandoned. A timeout ends the turn.
COMPLETION_TIMEOUT = _env_float("COMPLETION_TIMEOUT", 60.0)

# ============================================================================
# CONTENT AND QUOTA SERVICES
# ============================================================================
# The content service stores subjects, problems and ideas. Every call carries the
# service bearer token; the user's own token is forwarded as X-User-Token.
# The quota service tracks how many completion tokens a user may still spend.
# It usually lives on the same host, so QUOTA_API_URL defaults to CONTENT_API_URL.

CONTENT_API_URL = os.getenv("CONTENT_API_URL", "").strip().rstrip("/")
CONTENT_API_TOKEN = os.getenv("CONTENT_API_TOKEN", "").strip()
QUOTA_API_URL = (os.getenv("QUOTA_API_URL", "").strip().rstrip("/") or CONTENT_API_URL)

HTTP_TIMEOUT = _env_float("HTTP_TIMEOUT", 15.0)

# ============================================================================
# CHAT FLOW LIMITS
# ============================================================================
# MAX_TOOL_ROUNDS: safety bound on model <-> tool exchanges in a single user turn.
# MAX_CONTEXT_MESSAGES: messages sent to the model per request (system prompt always kept).
# MAX_STORED_MESSAGES: messages kept per conversation in memory and on disk.

MAX_TOOL_ROUNDS = 5
MAX_CONTEXT_MESSAGES = _env_int("MAX_CONTEXT_MESSAGES", 30)
MAX_STORED_MESSAGES = _env_int("MAX_STORED_MESSAGES", 100)

# Maximum length (characters) for a single inbound message.
MAX_MESSAGE_LENGTH = 32_000

# ============================================================================
# CACHES
# ============================================================================
# TOOL_CACHE_TTL collapses bursts of identical tool calls (model retries); keep it short
# so an edit is never hidden behind a stale search result.
# QUOTA_CACHE_TTL avoids a quota round-trip on every message from the same user.

TOOL_CACHE_TTL = _env_float("TOOL_CACHE_TTL", 5.0)
QUOTA_CACHE_TTL = _env_float("QUOTA_CACHE_TTL", 60.0)

# ============================================================================
# ASSISTANT PERSONALITY
# ============================================================================

ASSISTANT_NAME = (os.getenv("ASSISTANT_NAME", "").strip() or "Sage")

_SYSTEM_PROMPT_BASE = """You are {assistant_name}, an assistant that helps people explore and organise a knowledge base of subjects, problems and ideas.

Tools:
- Use find_content to look things up before answering questions about existing content. Pass type "subject", "problem", "idea" or "all".
- Use create_content to add a new subject, problem or idea. A problem belongs to a subject and an idea belongs to a problem, so pass parent_id for those.
- Use edit_content to change the title or description of an existing item.

Confirmation (STRICT):
- create_content and edit_content first return a preview. Show the preview to the user and ask whether to proceed.
- Only call the tool again with confirm set to true after the user has clearly agreed in their own message. Never assume consent.

Style:
- Be concise and friendly. Summarise tool results in plain language instead of dumping raw data.
- If a tool reports an error, explain what went wrong and suggest what the user can do next.
- Descriptions you write for new content may use light markup: # headings, - bullet points, **bold** and *italics*.
"""

SYSTEM_PROMPT = _SYSTEM_PROMPT_BASE.format(assistant_name=ASSISTANT_NAME)

# Sent to the user when the model produced no text at all, even after being forced to answer.
FALLBACK_RESPONSE = "I've processed your request. Is there anything else you'd like me to help with?"


# ============================================================================
# CREDENTIAL CHECKS
# ============================================================================

def missing_credentials() -> List[str]:
    """Return the names of required settings that are not configured (empty list when all are set)."""
    missing = []
    if not GROQ_API_KEYS:
        missing.append("GROQ_API_KEY")
    if not CONTENT_API_URL:
        missing.append("CONTENT_API_URL")
    if not CONTENT_API_TOKEN:
        missing.append("CONTENT_API_TOKEN")
    return missing


def require_credentials() -> None:
    """
    Fail fast when a required credential is missing.

    Called at the start of every turn rather than at import time, so the server can
    still start (and answer /health and history requests) on a half-configured machine.
    """
    # Imported here so config stays importable without the app package.
    from app.errors import ConfigurationError

    missing = missing_credentials()
    if missing:
        raise ConfigurationError(f"Missing required configuration: {', '.join(missing)}")
