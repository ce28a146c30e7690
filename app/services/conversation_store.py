"""
CONVERSATION STORE MODULE
=========================

In-memory map from conversation id to its ordered message history.

  - A conversation is created by its first user turn and only ever appended to.
  - Each history is capped at max_messages. Trimming drops the oldest messages but
    always keeps a leading system message, and never leaves a tool result whose
    assistant tool-call message was trimmed away.
  - When a persistence layer is attached, a conversation not yet in memory is loaded
    from disk on first access, so conversations survive restarts.

The same trimming rule (trim_messages) builds the context window sent to the model.
"""

import logging
import re
import uuid
from typing import Dict, Iterable, List, Optional

from app.errors import InvalidRequestError
from app.models import ChatMessage
from app.services.persistence import ConversationPersistence
from config import MAX_STORED_MESSAGES


logger = logging.getLogger("SAGE")

# Ids end up as file names: letters, digits, dash and underscore only.
_CONVERSATION_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,128}$")


def validate_conversation_id(conversation_id: str) -> str:
    if not isinstance(conversation_id, str) or not _CONVERSATION_ID_RE.match(conversation_id):
        raise InvalidRequestError(
            "Invalid conversationId: use 1-128 letters, digits, '-' or '_'"
        )
    return conversation_id


def trim_messages(messages: List[ChatMessage], limit: int) -> List[ChatMessage]:
    """
    Keep at most `limit` messages: the leading system message (if any) plus the most
    recent others. Tool results at the start of the kept tail are dropped, because the
    assistant message that requested them is gone.
    """
    if limit <= 0 or len(messages) <= limit:
        return list(messages)

    head: List[ChatMessage] = []
    rest = list(messages)
    if rest and rest[0].role == "system":
        head = [rest[0]]
        rest = rest[1:]

    keep = max(limit - len(head), 0)
    tail = rest[len(rest) - keep:] if keep else []
    while tail and tail[0].role == "tool":
        tail.pop(0)
    return head + tail


class ConversationStore:
    """Process-wide conversation histories, keyed by conversation id."""

    def __init__(
        self,
        max_messages: int = MAX_STORED_MESSAGES,
        persistence: Optional[ConversationPersistence] = None,
    ):
        self.max_messages = max_messages
        self.persistence = persistence
        self._conversations: Dict[str, List[ChatMessage]] = {}

    @staticmethod
    def new_id() -> str:
        return str(uuid.uuid4())

    def conversation_ids(self) -> List[str]:
        return list(self._conversations.keys())

    def get(self, conversation_id: str) -> List[ChatMessage]:
        """Copy of the in-memory history (empty list if unknown)."""
        return list(self._conversations.get(conversation_id, []))

    async def load(self, conversation_id: str) -> List[ChatMessage]:
        """History for the id, hydrating it from persistence if it is not in memory yet."""
        validate_conversation_id(conversation_id)
        if conversation_id not in self._conversations and self.persistence is not None:
            stored = await self.persistence.load(conversation_id)
            # Another turn may have created it while we were reading the file.
            if stored and conversation_id not in self._conversations:
                logger.info("Loaded conversation %s from disk (%d messages)", conversation_id, len(stored))
                self._conversations[conversation_id] = trim_messages(stored, self.max_messages)
        return self.get(conversation_id)

    def append(self, conversation_id: str, messages: Iterable[ChatMessage]) -> List[ChatMessage]:
        """Append messages in order, apply the size cap, and return the new history."""
        history = self._conversations.setdefault(conversation_id, [])
        history.extend(messages)
        if len(history) > self.max_messages:
            self._conversations[conversation_id] = trim_messages(history, self.max_messages)
        return self.get(conversation_id)

    def display_history(self, conversation_id: str) -> List[ChatMessage]:
        """History as shown to users: system messages removed."""
        return [m for m in self._conversations.get(conversation_id, []) if m.role != "system"]

    async def save(self, conversation_id: str) -> bool:
        """Persist one conversation (best effort; False when nothing was written)."""
        if self.persistence is None or conversation_id not in self._conversations:
            return False
        return await self.persistence.save(conversation_id, self._conversations[conversation_id])
