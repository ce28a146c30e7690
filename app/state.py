"""
PROCESS STATE
=============

The shared, mutable maps every turn works against, bundled in one object:

  conversations - ConversationStore (conversation id -> message history)
  tool_cache    - TTLCache of tool results (a few seconds)
  token_cache   - TTLCache of user token quota checks (about a minute)

LIFECYCLE:
  Created once in the FastAPI lifespan (app.main) and handed to ChatService. Never
  cleared while the process runs; entries only go away through TTL expiry or the
  conversation size cap. On shutdown the conversations are written to disk.

For a multi-instance deployment each member can be replaced by an object with the same
methods backed by a shared key-value store.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from app.services.cache import TTLCache
from app.services.conversation_store import ConversationStore
from app.services.persistence import ConversationPersistence
from config import CHATS_DATA_DIR, MAX_STORED_MESSAGES, QUOTA_CACHE_TTL, TOOL_CACHE_TTL


@dataclass
class AppState:
    conversations: ConversationStore
    tool_cache: TTLCache
    token_cache: TTLCache


def create_state(
    chats_dir: Optional[Path] = CHATS_DATA_DIR,
    max_messages: int = MAX_STORED_MESSAGES,
    tool_cache_ttl: float = TOOL_CACHE_TTL,
    quota_cache_ttl: float = QUOTA_CACHE_TTL,
) -> AppState:
    """Build the process state. chats_dir=None keeps conversations in memory only."""
    persistence = ConversationPersistence(chats_dir) if chats_dir is not None else None
    return AppState(
        conversations=ConversationStore(max_messages=max_messages, persistence=persistence),
        tool_cache=TTLCache(tool_cache_ttl),
        token_cache=TTLCache(quota_cache_ttl),
    )
