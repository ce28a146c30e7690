"""
DATA MODELS MODULE
==================

This file defines the Pydantic models used for API requests, responses, and
internal chat storage. FastAPI uses these to validate incoming JSON and to
serialize responses; the chat service and the orchestrator pass ChatMessage
objects around internally, and the persistence layer saves StoredConversation.

Field names on the wire are camelCase (conversationId, userToken, usedTokens);
the Python attributes are snake_case. populate_by_name lets code use either.

MODELS:
  ToolFunction       - Name + raw JSON argument text of a requested tool call.
  ToolCallRequest    - One tool call requested by the model ({id, type, function}).
  ChatMessage        - One message: user / assistant / system / tool.
  ChatRequest        - Body of POST /chat.
  ChatResponse       - Body returned by POST /chat.
  HistoryRequest     - Body of POST /chat/history.
  HistoryResponse    - Body returned by the history endpoints.
  StoredConversation - What is written to disk per conversation.
"""

from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


Role = Literal["user", "assistant", "system", "tool"]


# ==============================================================================
# TOOL CALLS
# ==============================================================================

class ToolFunction(BaseModel):
    name: str
    # Raw text as produced by the model. Expected to be a JSON object but not guaranteed.
    arguments: str = ""


class ToolCallRequest(BaseModel):
    """A tool invocation requested by the model. id is unique within one round."""
    id: str
    type: Literal["function"] = "function"
    function: ToolFunction

    @property
    def function_name(self) -> str:
        return self.function.name

    @property
    def arguments(self) -> str:
        return self.function.arguments


# ==============================================================================
# MESSAGES
# ==============================================================================

class ChatMessage(BaseModel):
    """
    A single message in a conversation. Order defines chronology.

    - tool_calls: set on assistant messages that ask for tools to be run.
    - tool_call_id: set on tool messages; the id of the request they answer.
    - name: the tool name on tool messages.
    """
    model_config = ConfigDict(extra="ignore")

    role: Role
    content: Optional[str] = ""
    tool_calls: Optional[List[ToolCallRequest]] = None
    tool_call_id: Optional[str] = None
    name: Optional[str] = None

    @property
    def text(self) -> str:
        return self.content or ""


# ==============================================================================
# API REQUEST/RESPONSE MODELS
# ==============================================================================

class ChatRequest(BaseModel):
    """
    Request body for POST /chat.

    - messages: Required. The new message(s) of this turn, normally one user message.
    - conversationId: Optional. If omitted, the server creates a new conversation and
      returns its id; send it back on the next request to continue.
    - userToken: The caller's access token, checked against the quota service. May also
      be sent as the X-User-Token header.
    """
    model_config = ConfigDict(populate_by_name=True)

    messages: List[ChatMessage] = Field(..., min_length=1)
    conversation_id: Optional[str] = Field(None, alias="conversationId")
    user_token: Optional[str] = Field(None, alias="userToken")


class Choice(BaseModel):
    index: int = 0
    message: ChatMessage
    finish_reason: str = "stop"


class ChatResponse(BaseModel):
    """
    Response body for POST /chat.

    - choices: a single choice holding the assistant's final message.
    - usedTokens: completion tokens spent on this turn across every model round.
    """
    model_config = ConfigDict(populate_by_name=True)

    conversation_id: str = Field(..., alias="conversationId")
    choices: List[Choice]
    used_tokens: int = Field(0, alias="usedTokens")


class HistoryRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    conversation_id: Optional[str] = Field(None, alias="conversationId")


class HistoryResponse(BaseModel):
    """Conversation history for display: system messages are filtered out."""
    model_config = ConfigDict(populate_by_name=True)

    conversation_id: str = Field(..., alias="conversationId")
    messages: List[ChatMessage]


class StoredConversation(BaseModel):
    """
    Internal model for a full conversation as saved on disk.
    """
    model_config = ConfigDict(populate_by_name=True)

    conversation_id: str = Field(..., alias="conversationId")
    messages: List[ChatMessage]
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), alias="updatedAt")
