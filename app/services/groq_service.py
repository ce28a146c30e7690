"""
GROQ SERVICE MODULE (COMPLETION BACKEND)
========================================

Sends a conversation plus the tool declarations to the Groq chat-completions API
through langchain's ChatGroq and returns the assistant message and the tokens used.

ROUND-ROBIN API KEYS:
  - One ChatGroq client per configured key (GROQ_API_KEY, GROQ_API_KEY_2, ...).
  - Requests rotate through the keys via a class-level counter shared by every instance.
  - If a key is rate limited (429) the same request is retried with the next key,
    at most once per key. Any other failure ends the turn immediately.
  - Keys are logged masked.

MESSAGE CONVERSION:
  ChatMessage (our wire format) <-> langchain messages. The raw argument text of every
  tool call is kept as the provider sent it, so arguments that are not valid JSON reach
  the orchestrator unparsed and fail only that one tool call.

The orchestrator only needs complete(); tests replace this class with a scripted fake.
"""

import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from groq import APIConnectionError, APITimeoutError
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage, ToolMessage
from langchain_groq import ChatGroq

from app.errors import ConfigurationError, UpstreamError
from app.models import ChatMessage, ToolCallRequest, ToolFunction
from app.utils.text import mask_token
from config import COMPLETION_TIMEOUT, GROQ_API_KEYS, GROQ_MODEL


logger = logging.getLogger("SAGE")


@dataclass
class Completion:
    """One backend reply: the assistant message and the total tokens the call consumed."""
    message: ChatMessage
    usage_tokens: int = 0


def _is_rate_limit_error(exc: Exception) -> bool:
    """True if the exception is a Groq rate limit (429 / tokens per day)."""
    if getattr(exc, "status_code", None) == 429:
        return True
    msg = str(exc).lower()
    return "429" in str(exc) or "rate limit" in msg or "tokens per day" in msg


def _as_upstream_error(exc: Exception) -> UpstreamError:
    if isinstance(exc, APITimeoutError):
        return UpstreamError("Completion backend timed out", 504, service="completion")
    if isinstance(exc, APIConnectionError):
        return UpstreamError(f"Completion backend unreachable: {exc}", 502, service="completion")
    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        return UpstreamError(f"Completion backend returned HTTP {status}: {exc}", status, service="completion")
    return UpstreamError(f"Completion backend request failed: {exc}", 502, service="completion")


# ==============================================================================
# MESSAGE CONVERSION
# ==============================================================================

def to_langchain_messages(messages: List[ChatMessage]) -> List[BaseMessage]:
    """Convert our messages to the langchain types ChatGroq expects."""
    converted: List[BaseMessage] = []
    for msg in messages:
        if msg.role == "system":
            converted.append(SystemMessage(content=msg.text))
        elif msg.role == "user":
            converted.append(HumanMessage(content=msg.text))
        elif msg.role == "tool":
            converted.append(ToolMessage(content=msg.text, tool_call_id=msg.tool_call_id or "", name=msg.name))
        else:
            tool_calls = []
            invalid_tool_calls = []
            for call in msg.tool_calls or []:
                error = "arguments are not an object"
                try:
                    args = json.loads(call.arguments or "{}")
                except ValueError as e:
                    args = None
                    error = str(e)
                if isinstance(args, dict):
                    tool_calls.append({"name": call.function_name, "args": args, "id": call.id, "type": "tool_call"})
                else:
                    invalid_tool_calls.append({
                        "name": call.function_name,
                        "args": call.arguments,
                        "id": call.id,
                        "error": error,
                        "type": "invalid_tool_call",
                    })
            converted.append(AIMessage(
                content=msg.text,
                tool_calls=tool_calls,
                invalid_tool_calls=invalid_tool_calls,
            ))
    return converted


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                parts.append(part.get("text", ""))
        return "".join(parts)
    return ""


def _raw_tool_calls(response: AIMessage) -> List[ToolCallRequest]:
    # Provider payload first: it keeps the original order and the unparsed argument text.
    raw = response.additional_kwargs.get("tool_calls") if response.additional_kwargs else None
    calls: List[ToolCallRequest] = []
    if raw:
        for item in raw:
            function = item.get("function") or {}
            arguments = function.get("arguments")
            if not isinstance(arguments, str):
                arguments = json.dumps(arguments if arguments is not None else {})
            calls.append(ToolCallRequest(
                id=item.get("id") or f"call_{uuid.uuid4().hex[:12]}",
                function=ToolFunction(name=function.get("name", ""), arguments=arguments),
            ))
        return calls

    for tc in response.tool_calls or []:
        calls.append(ToolCallRequest(
            id=tc.get("id") or f"call_{uuid.uuid4().hex[:12]}",
            function=ToolFunction(name=tc.get("name", ""), arguments=json.dumps(tc.get("args") or {})),
        ))
    for tc in response.invalid_tool_calls or []:
        args = tc.get("args")
        calls.append(ToolCallRequest(
            id=tc.get("id") or f"call_{uuid.uuid4().hex[:12]}",
            function=ToolFunction(name=tc.get("name") or "", arguments=args if isinstance(args, str) else ""),
        ))
    return calls


def from_langchain_message(response: AIMessage) -> ChatMessage:
    """Convert the model's reply to an assistant ChatMessage."""
    tool_calls = _raw_tool_calls(response)
    return ChatMessage(
        role="assistant",
        content=_content_text(response.content),
        tool_calls=tool_calls or None,
    )


def usage_tokens(response: AIMessage) -> int:
    """Total tokens reported for the call; 0 if the provider reported nothing."""
    usage = getattr(response, "usage_metadata", None) or {}
    total = usage.get("total_tokens")
    if total is None:
        token_usage = (response.response_metadata or {}).get("token_usage") or {}
        total = token_usage.get("total_tokens", 0)
    try:
        return int(total or 0)
    except (TypeError, ValueError):
        return 0


# ==============================================================================
# GROQ SERVICE CLASS
# ==============================================================================

class GroqService:
    """
    Completion backend over one or more Groq API keys.
    """

    # Shared by every instance so all requests follow one rotation sequence.
    _shared_key_index = 0

    def __init__(
        self,
        api_keys: Optional[List[str]] = None,
        model: str = GROQ_MODEL,
        timeout: float = COMPLETION_TIMEOUT,
    ):
        self.api_keys = list(GROQ_API_KEYS if api_keys is None else api_keys)
        self.model = model
        # max_retries=0: a failure is either a rate limit (we rotate keys) or ends the turn.
        self.llms = [
            ChatGroq(api_key=key, model=model, temperature=0.3, timeout=timeout, max_retries=0)
            for key in self.api_keys
        ]
        if self.llms:
            logger.info("Groq service ready: model=%s, %d API key(s)", model, len(self.llms))
        else:
            logger.warning("No GROQ_API_KEY configured. Chat requests will be rejected.")

    def _next_start_index(self) -> int:
        index = GroqService._shared_key_index % len(self.llms)
        GroqService._shared_key_index = (index + 1) % len(self.llms)
        return index

    async def complete(
        self,
        messages: List[ChatMessage],
        tools: Optional[List[Dict[str, Any]]] = None,
        tool_choice: str = "auto",
    ) -> Completion:
        """
        Send one chat-completion request. tool_choice is "auto" (the model decides) or
        "none" (force a text answer). Raises UpstreamError when the request fails.
        """
        if not self.llms:
            raise ConfigurationError("Missing required configuration: GROQ_API_KEY")

        lc_messages = to_langchain_messages(messages)
        start = self._next_start_index()
        total = len(self.llms)

        for offset in range(total):
            index = (start + offset) % total
            llm = self.llms[index]
            runnable = llm.bind_tools(tools, tool_choice=tool_choice) if tools else llm
            try:
                response = await runnable.ainvoke(lc_messages)
            except Exception as e:
                if _is_rate_limit_error(e) and offset < total - 1:
                    logger.warning(
                        "Groq key %s rate limited, trying next key (%d/%d)",
                        mask_token(self.api_keys[index]), offset + 2, total,
                    )
                    continue
                logger.error("Completion request failed with key %s: %s", mask_token(self.api_keys[index]), e)
                raise _as_upstream_error(e) from e

            return Completion(message=from_langchain_message(response), usage_tokens=usage_tokens(response))

        # Unreachable: the last key either returns or raises.
        raise UpstreamError("Completion backend failed with every API key", 502, service="completion")
