"""
CHAT SERVICE MODULE
===================

Ties one user turn together. Called by the API layer (app.main); knows nothing about HTTP.

TURN FLOW (process_turn):
  1. Credentials configured?                     -> ConfigurationError (500)
  2. User token present?                         -> MissingTokenError (401)
  3. Inbound messages well formed?               -> InvalidRequestError (400)
  4. Access gate: quota left for this token?     -> InsufficientQuotaError (402)
     (checked before the completion backend is ever called)
  5. Load the conversation history (memory, else disk). A brand-new conversation is
     seeded with the earlier messages the client sent along, if any.
  6. Run the orchestration loop with the tool executors bound to this user's token.
  7. Append system prompt (new conversations only), the user message(s) and everything
     the turn produced to the conversation, then persist it (best effort).
  8. Schedule the quota decrement for the tokens the turn used (fire and forget).

INBOUND MESSAGES:
  Clients may send just the new user message, or their whole transcript followed by it.
  The trailing run of user messages is this turn's input. Earlier messages are only used
  to seed a conversation the server does not know yet; the server's copy wins otherwise.
  Client-supplied system messages are ignored so the server's prompt always applies.
"""

import logging
from typing import Callable, List, Optional, Tuple

from app.errors import InsufficientQuotaError, InvalidRequestError, MissingTokenError
from app.models import ChatMessage, ChatRequest, ChatResponse, Choice
from app.services.access_gate import AccessGate
from app.services.conversation_store import validate_conversation_id
from app.services.orchestrator import Orchestrator
from app.services.tools import ToolRegistry
from app.state import AppState
from app.utils.text import mask_token, token_scope
from config import MAX_MESSAGE_LENGTH, SYSTEM_PROMPT, require_credentials


logger = logging.getLogger("SAGE")


def split_inbound(messages: List[ChatMessage]) -> Tuple[List[ChatMessage], List[ChatMessage]]:
    """
    Validate inbound messages and split them into (earlier transcript, new user messages).
    """
    if not messages:
        raise InvalidRequestError("messages must contain at least one message")

    for msg in messages:
        if msg.role == "tool" or msg.tool_calls:
            raise InvalidRequestError("Tool messages and tool calls cannot be sent by the client")
        if len(msg.text) > MAX_MESSAGE_LENGTH:
            raise InvalidRequestError(f"Message too long (max {MAX_MESSAGE_LENGTH} characters)")

    if messages[-1].role != "user":
        raise InvalidRequestError("The last message must be a user message")

    start = len(messages)
    while start > 0 and messages[start - 1].role == "user":
        start -= 1

    new_messages = [ChatMessage(role="user", content=m.text) for m in messages[start:] if m.text.strip()]
    if not new_messages:
        raise InvalidRequestError("The user message must not be empty")

    earlier = [
        ChatMessage(role=m.role, content=m.text)
        for m in messages[:start]
        if m.role != "system"
    ]
    return earlier, new_messages


class ChatService:
    """
    Runs turns and serves history. One instance per process, built in the app lifespan.
    """

    def __init__(
        self,
        state: AppState,
        orchestrator: Orchestrator,
        tool_registry: ToolRegistry,
        access_gate: AccessGate,
        system_prompt: Optional[str] = SYSTEM_PROMPT,
        credentials_check: Callable[[], None] = require_credentials,
    ):
        self.state = state
        self.orchestrator = orchestrator
        self.tool_registry = tool_registry
        self.access_gate = access_gate
        self.system_prompt = system_prompt
        self.credentials_check = credentials_check

    @property
    def conversations(self):
        return self.state.conversations

    # ------------------------------------------------------------------------------
    # TURNS
    # ------------------------------------------------------------------------------

    async def process_turn(self, request: ChatRequest, user_token: Optional[str] = None) -> ChatResponse:
        self.credentials_check()

        token = (user_token or request.user_token or "").strip()
        if not token:
            raise MissingTokenError("A user token is required")

        earlier, new_messages = split_inbound(request.messages)
        conversation_id = request.conversation_id or self.conversations.new_id()
        validate_conversation_id(conversation_id)

        decision = await self.access_gate.check(token)
        if not decision.allowed:
            raise InsufficientQuotaError("Insufficient token quota. Please top up to continue.")

        history = await self.conversations.load(conversation_id)
        is_new = not history
        if is_new:
            history = earlier

        executors = self.tool_registry.executors_for(token)
        result = await self.orchestrator.run_turn(
            history, new_messages, executors, cache_scope=token_scope(token)
        )

        to_append: List[ChatMessage] = []
        if is_new:
            if self.system_prompt:
                to_append.append(ChatMessage(role="system", content=self.system_prompt))
            to_append.extend(earlier)
        to_append.extend(new_messages)
        to_append.extend(result.new_messages)
        self.conversations.append(conversation_id, to_append)
        await self.save_chat_session(conversation_id)

        self.access_gate.decrement(token, result.used_tokens)

        logger.info(
            "Turn done: conversation=%s user=%s rounds=%d tool_calls=%d executed=%d cache_hits=%d tokens=%d%s",
            conversation_id,
            mask_token(token),
            result.rounds,
            result.tool_calls,
            result.executions,
            result.cache_hits,
            result.used_tokens,
            " (forced text)" if result.forced_text else "",
        )
        return ChatResponse(
            conversation_id=conversation_id,
            choices=[Choice(message=result.message)],
            used_tokens=result.used_tokens,
        )

    # ------------------------------------------------------------------------------
    # HISTORY AND PERSISTENCE
    # ------------------------------------------------------------------------------

    async def get_chat_history(self, conversation_id: str) -> List[ChatMessage]:
        """Messages for display (system messages removed); empty if the conversation is unknown."""
        await self.conversations.load(conversation_id)
        return self.conversations.display_history(conversation_id)

    async def save_chat_session(self, conversation_id: str) -> bool:
        saved = await self.conversations.save(conversation_id)
        if not saved and self.conversations.persistence is not None:
            logger.error("Conversation %s was not saved to disk", conversation_id)
        return saved

    async def save_all(self) -> None:
        for conversation_id in self.conversations.conversation_ids():
            await self.save_chat_session(conversation_id)
