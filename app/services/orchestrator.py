"""
ORCHESTRATION LOOP MODULE
=========================

Drives one user turn against the completion backend until the model gives a final
text answer.

STATES:
  AWAITING_MODEL  -> reply has tool calls         -> EXECUTING_TOOLS -> AWAITING_MODEL
  AWAITING_MODEL  -> reply has text               -> DONE
  AWAITING_MODEL  -> reply is empty, no tool calls -> FORCING_TEXT   -> DONE

FLOW:
  1. Build the context: system prompt first (added once), then the stored history, then
     the new user message(s), trimmed to the context window (system prompt always kept).
  2. Each round sends the context with the tool declarations and tool_choice "auto".
  3. Tool calls are executed in the order requested. Identical (tool, arguments) pairs in
     one batch run once (RoundMemo); identical calls within a few seconds across rounds and
     turns of the same user reuse the shared result cache (TTLCache), keyed under a hash of
     that user's token. Each call yields one tool message
     tagged with its call id, right after the assistant message that requested it.
  4. At most max_rounds rounds. Hitting the limit ends the turn with whatever text the
     model produced last.
  5. An empty reply with no tool calls gets one more request with tool_choice "none".
     If the text is still empty, a generic acknowledgement is returned instead.

FAILURES:
  - Bad tool arguments, unknown tools and executor exceptions become a tool message
    {"error": ..., "tool": ...} the model can react to. The round continues.
  - A failed backend request (UpstreamError) ends the turn and propagates to the caller.
    The one exception is the forced-text request, which is best effort.

Token usage reported by every request of the turn is summed into used_tokens.
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from app.errors import ToolArgumentError, UpstreamError
from app.models import ChatMessage, ToolCallRequest
from app.services.cache import MISS, RoundMemo, TTLCache, tool_cache_key
from app.services.conversation_store import trim_messages
from app.services.groq_service import Completion
from config import FALLBACK_RESPONSE, MAX_CONTEXT_MESSAGES, MAX_TOOL_ROUNDS, SYSTEM_PROMPT


logger = logging.getLogger("SAGE")

ToolExecutor = Callable[[Dict[str, Any]], Awaitable[Any]]


class CompletionBackend(Protocol):
    async def complete(
        self,
        messages: List[ChatMessage],
        tools: Optional[List[Dict[str, Any]]] = None,
        tool_choice: str = "auto",
    ) -> Completion:
        ...


class TurnState(str, Enum):
    AWAITING_MODEL = "awaiting_model"
    EXECUTING_TOOLS = "executing_tools"
    FORCING_TEXT = "forcing_text"
    DONE = "done"


@dataclass
class TurnResult:
    """
    Outcome of one turn.

    new_messages holds everything the turn produced, in order, ready to be appended to the
    conversation: assistant tool-call messages, their tool results, and the final answer.
    """
    message: ChatMessage
    new_messages: List[ChatMessage] = field(default_factory=list)
    used_tokens: int = 0
    rounds: int = 0
    tool_calls: int = 0
    executions: int = 0
    cache_hits: int = 0
    forced_text: bool = False
    hit_round_limit: bool = False


def build_context(
    history: List[ChatMessage],
    new_messages: List[ChatMessage],
    system_prompt: Optional[str] = SYSTEM_PROMPT,
    limit: int = MAX_CONTEXT_MESSAGES,
) -> List[ChatMessage]:
    """System prompt (unless history already starts with one) + history + new messages, trimmed."""
    messages = list(history)
    if system_prompt and not (messages and messages[0].role == "system"):
        messages.insert(0, ChatMessage(role="system", content=system_prompt))
    messages.extend(new_messages)
    return trim_messages(messages, limit)


def parse_tool_arguments(tool_name: str, raw: Optional[str]) -> Dict[str, Any]:
    """Parse the model's argument text into a dict, or raise ToolArgumentError."""
    if raw is None or not raw.strip():
        return {}
    try:
        args = json.loads(raw)
    except ValueError as e:
        raise ToolArgumentError(f"Arguments for {tool_name} are not valid JSON: {e}") from e
    if not isinstance(args, dict):
        raise ToolArgumentError(f"Arguments for {tool_name} must be a JSON object")
    return args


def _tool_error(tool_name: str, message: str) -> Dict[str, Any]:
    return {"error": message, "tool": tool_name}


class Orchestrator:
    """Runs the model <-> tool loop for one turn at a time. Stateless apart from the shared result cache."""

    def __init__(
        self,
        backend: CompletionBackend,
        tools: List[Dict[str, Any]],
        result_cache: TTLCache,
        max_rounds: int = MAX_TOOL_ROUNDS,
        context_limit: int = MAX_CONTEXT_MESSAGES,
        system_prompt: Optional[str] = SYSTEM_PROMPT,
        fallback_text: str = FALLBACK_RESPONSE,
    ):
        self.backend = backend
        self.tools = tools
        self.result_cache = result_cache
        self.max_rounds = max_rounds
        self.context_limit = context_limit
        self.system_prompt = system_prompt
        self.fallback_text = fallback_text

    async def run_turn(
        self,
        history: List[ChatMessage],
        new_messages: List[ChatMessage],
        executors: Dict[str, ToolExecutor],
        cache_scope: str = "",
    ) -> TurnResult:
        """
        Run one turn. cache_scope namespaces the shared result cache: executors are bound to
        one user, so their results must never be served to another.
        """
        context = build_context(history, new_messages, self.system_prompt, self.context_limit)
        result = TurnResult(message=ChatMessage(role="assistant", content=""))
        state = TurnState.AWAITING_MODEL
        final: Optional[ChatMessage] = None

        while state != TurnState.DONE:
            if state == TurnState.AWAITING_MODEL:
                completion = await self.backend.complete(context, self.tools, "auto")
                result.rounds += 1
                result.used_tokens += completion.usage_tokens
                reply = completion.message

                if reply.tool_calls:
                    if result.rounds >= self.max_rounds:
                        logger.warning("Round limit (%d) reached with tool calls still pending", self.max_rounds)
                        result.hit_round_limit = True
                        final = ChatMessage(role="assistant", content=reply.text)
                        state = TurnState.DONE
                    else:
                        state = TurnState.EXECUTING_TOOLS
                elif reply.text.strip():
                    final = reply
                    state = TurnState.DONE
                else:
                    state = TurnState.FORCING_TEXT

            elif state == TurnState.EXECUTING_TOOLS:
                tool_messages = await self._execute_batch(reply.tool_calls or [], executors, result, cache_scope)
                # The tool-call message must sit directly before its results.
                context.extend([reply] + tool_messages)
                result.new_messages.extend([reply] + tool_messages)
                state = TurnState.AWAITING_MODEL

            elif state == TurnState.FORCING_TEXT:
                result.forced_text = True
                final = await self._force_text(context, result)
                state = TurnState.DONE

        if final is None or not final.text.strip():
            final = ChatMessage(role="assistant", content=self.fallback_text)

        result.message = final
        result.new_messages.append(final)
        return result

    async def _force_text(self, context: List[ChatMessage], result: TurnResult) -> ChatMessage:
        """One extra request with tools disabled. Best effort: a failure falls back to the generic answer."""
        logger.info("Model returned an empty reply, requesting a text-only answer")
        try:
            completion = await self.backend.complete(context, self.tools, "none")
        except UpstreamError as e:
            logger.warning("Text-only follow-up request failed: %s", e)
            return ChatMessage(role="assistant", content="")
        result.used_tokens += completion.usage_tokens
        # Tools were disabled; ignore any tool calls the model still produced.
        return ChatMessage(role="assistant", content=completion.message.text)

    async def _execute_batch(
        self,
        calls: List[ToolCallRequest],
        executors: Dict[str, ToolExecutor],
        result: TurnResult,
        cache_scope: str = "",
    ) -> List[ChatMessage]:
        memo = RoundMemo()
        messages = []
        for call in calls:
            payload = await self._execute_one(call, executors, memo, result, cache_scope)
            messages.append(ChatMessage(
                role="tool",
                tool_call_id=call.id,
                name=call.function_name,
                content=json.dumps(payload, ensure_ascii=False, default=str),
            ))
        return messages

    async def _execute_one(
        self,
        call: ToolCallRequest,
        executors: Dict[str, ToolExecutor],
        memo: RoundMemo,
        result: TurnResult,
        cache_scope: str = "",
    ) -> Any:
        name = call.function_name
        key = tool_cache_key(name, call.arguments)
        shared_key = f"{cache_scope}|{key}"
        result.tool_calls += 1

        memoized = memo.get(key)
        if memoized is not MISS:
            logger.info("Tool %s: duplicate in this round, reusing result", name)
            return memoized

        executor = executors.get(name)
        if executor is None:
            payload = _tool_error(name, f"Unknown tool: {name}")
            memo.set(key, payload)
            return payload

        cached = self.result_cache.get(shared_key)
        if cached is not MISS:
            logger.info("Tool %s: cache hit", name)
            result.cache_hits += 1
            memo.set(key, cached)
            return cached

        try:
            args = parse_tool_arguments(name, call.arguments)
            result.executions += 1
            payload = await executor(args)
        except (ToolArgumentError, UpstreamError) as e:
            logger.warning("Tool %s failed: %s", name, e)
            payload = _tool_error(name, str(e))
        except Exception as e:
            logger.error("Tool %s raised unexpectedly: %s", name, e, exc_info=True)
            payload = _tool_error(name, f"{type(e).__name__}: {e}")
        else:
            # Only successes are shared across rounds; a failure may succeed on retry.
            self.result_cache.set(shared_key, payload)

        memo.set(key, payload)
        return payload
