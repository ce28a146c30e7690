"""
CONVERSATION PERSISTENCE MODULE
===============================

Writes each conversation to database/chats_data/<conversationId>.json as a
StoredConversation ({conversationId, messages, updatedAt}) and reads it back.

Saving is best effort: a failed write is logged and never reaches the user, because
the transcript is a convenience, not part of the answer. Loading returns None when
there is no file (new conversation) or the file cannot be read.

File I/O runs in a worker thread (asyncio.to_thread) so the event loop keeps serving
other conversations.
"""

import asyncio
import logging
import uuid
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from app.models import ChatMessage, StoredConversation
from config import CHATS_DATA_DIR


logger = logging.getLogger("SAGE")


class ConversationPersistence:
    """One JSON file per conversation id. Callers must pass ids already validated as safe file names."""

    def __init__(self, directory: Path = CHATS_DATA_DIR):
        self.directory = Path(directory)

    def _path(self, conversation_id: str) -> Path:
        return self.directory / f"{conversation_id}.json"

    # ------------------------------------------------------------------------------
    # SAVE
    # ------------------------------------------------------------------------------

    def _write(self, conversation_id: str, messages: List[ChatMessage]) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        stored = StoredConversation(conversation_id=conversation_id, messages=messages)
        payload = stored.model_dump_json(by_alias=True, exclude_none=True, indent=2)
        # Unique temp file per write: a crash never leaves half a transcript, and overlapping
        # saves of one conversation never share a temp path.
        tmp_path = self.directory / f"{conversation_id}.json.{uuid.uuid4().hex}.tmp"
        try:
            tmp_path.write_text(payload, encoding="utf-8")
            tmp_path.replace(self._path(conversation_id))
        finally:
            tmp_path.unlink(missing_ok=True)

    async def save(self, conversation_id: str, messages: List[ChatMessage]) -> bool:
        """Persist the conversation. Returns False (after logging) if the write failed."""
        try:
            await asyncio.to_thread(self._write, conversation_id, list(messages))
            return True
        except Exception as e:
            logger.error("Failed to save conversation %s: %s", conversation_id, e)
            return False

    # ------------------------------------------------------------------------------
    # LOAD
    # ------------------------------------------------------------------------------

    def _read(self, conversation_id: str) -> Optional[List[ChatMessage]]:
        path = self._path(conversation_id)
        if not path.exists():
            return None
        try:
            stored = StoredConversation.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError, ValueError) as e:
            logger.warning("Could not load conversation file %s: %s", path, e)
            return None
        return stored.messages

    async def load(self, conversation_id: str) -> Optional[List[ChatMessage]]:
        return await asyncio.to_thread(self._read, conversation_id)
