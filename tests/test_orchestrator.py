"""
Tests for the orchestration loop: rounds, tool execution, de-duplication, forced text,
fallback, usage accounting and failure isolation.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List

import pytest

from app.errors import ToolArgumentError, UpstreamError
from app.models import ChatMessage
from app.services.cache import TTLCache
from app.services.orchestrator import Orchestrator, build_context, parse_tool_arguments
from app.services.tools import TOOL_DECLARATIONS
from conftest import ScriptedBackend, text_reply, tool_call, tool_reply


FALLBACK = "Done."


class CountingExecutor:
    """Async executor that records its calls and returns a canned result (or raises)."""

    def __init__(self, result: Any = None, error: Exception = None):
        self.result = result if result is not None else {"ok": True}
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    async def __call__(self, args: Dict[str, Any]) -> Any:
        self.calls.append(args)
        if self.error:
            raise self.error
        return self.result


def _orchestrator(backend, cache=None, **kwargs) -> Orchestrator:
    return Orchestrator(
        backend,
        TOOL_DECLARATIONS,
        cache if cache is not None else TTLCache(5),
        system_prompt="You are a test assistant.",
        fallback_text=FALLBACK,
        **kwargs,
    )


def _user(text: str) -> List[ChatMessage]:
    return [ChatMessage(role="user", content=text)]


# ------------------------------------------------------------------------------
# context building
# ------------------------------------------------------------------------------

def test_system_prompt_is_prepended_once() -> None:
    context = build_context([], _user("hi"), "SYS", 10)
    assert [m.role for m in context] == ["system", "user"]

    history = [ChatMessage(role="system", content="stored"), ChatMessage(role="user", content="old")]
    context = build_context(history, _user("new"), "SYS", 10)
    assert [m.content for m in context] == ["stored", "old", "new"]


def test_context_window_keeps_system_and_newest() -> None:
    history = [ChatMessage(role="user" if i % 2 == 0 else "assistant", content=f"m{i}") for i in range(40)]
    context = build_context(history, _user("latest"), "SYS", 5)
    assert context[0].content == "SYS"
    assert [m.content for m in context[1:]] == ["m37", "m38", "m39", "latest"]


def test_parse_tool_arguments() -> None:
    assert parse_tool_arguments("t", '{"a": 1}') == {"a": 1}
    assert parse_tool_arguments("t", "") == {}
    with pytest.raises(ToolArgumentError, match="not valid JSON"):
        parse_tool_arguments("t", "{oops")
    with pytest.raises(ToolArgumentError, match="JSON object"):
        parse_tool_arguments("t", "[1, 2]")


# ------------------------------------------------------------------------------
# the main scenario
# ------------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_physics_lookup_scenario() -> None:
    items = [{"title": "Mechanics", "type": "subject", "id": 1}, {"title": "Optics", "type": "subject", "id": 2}]
    find = CountingExecutor(result={"query": "Physics", "type": "subject", "count": 2, "items": items})
    backend = ScriptedBackend([
        tool_reply([tool_call("call_1", "find_content", {"query": "Physics", "type": "subject"})], tokens=120),
        text_reply("Physics has Mechanics and Optics.", tokens=80),
    ])

    result = await _orchestrator(backend).run_turn([], _user("What's in Physics?"), {"find_content": find})

    assert result.message.content == "Physics has Mechanics and Optics."
    assert result.used_tokens == 200
    assert result.rounds == 2
    assert find.calls == [{"query": "Physics", "type": "subject"}]

    # Second request: original context + assistant tool-call message + tool result, in that order.
    second = backend.calls[1]["messages"]
    assert [m.role for m in second] == ["system", "user", "assistant", "tool"]
    assert second[2].tool_calls[0].id == "call_1"
    assert second[3].tool_call_id == "call_1"
    assert json.loads(second[3].content)["items"] == items

    assert [m.role for m in result.new_messages] == ["assistant", "tool", "assistant"]
    assert backend.calls[0]["tool_choice"] == "auto"
    assert backend.calls[0]["tools"] is TOOL_DECLARATIONS


# ------------------------------------------------------------------------------
# de-duplication
# ------------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_duplicate_calls_in_one_round_execute_once() -> None:
    find = CountingExecutor(result={"items": []})
    calls = [
        tool_call("a", "find_content", {"query": "x", "type": "all"}),
        tool_call("b", "find_content", '{"type": "all", "query": "x"}'),
        tool_call("c", "find_content", {"query": "y"}),
        tool_call("d", "find_content", {"query": "x", "type": "all"}),
    ]
    backend = ScriptedBackend([tool_reply(calls), text_reply("ok")])

    result = await _orchestrator(backend).run_turn([], _user("q"), {"find_content": find})

    assert len(find.calls) == 2
    tool_messages = [m for m in result.new_messages if m.role == "tool"]
    # One result per request, in request order, each tagged with its own id.
    assert [m.tool_call_id for m in tool_messages] == ["a", "b", "c", "d"]
    assert tool_messages[0].content == tool_messages[1].content == tool_messages[3].content
    assert result.tool_calls == 4
    assert result.executions == 2


@pytest.mark.asyncio
async def test_create_content_twice_in_one_round_posts_once() -> None:
    create = CountingExecutor(result={"status": "created", "post": {"id": 42}})
    args = {"title": "T", "description": "D", "content_type": "subject", "confirm": True}
    backend = ScriptedBackend([
        tool_reply([tool_call("a", "create_content", args), tool_call("b", "create_content", args)]),
        text_reply("Created."),
    ])

    result = await _orchestrator(backend).run_turn([], _user("make it"), {"create_content": create})

    assert len(create.calls) == 1
    outputs = [m.content for m in result.new_messages if m.role == "tool"]
    assert outputs[0] == outputs[1]
    assert json.loads(outputs[0])["post"]["id"] == 42


@pytest.mark.asyncio
async def test_result_cache_is_shared_across_rounds_and_turns() -> None:
    cache = TTLCache(5)
    find = CountingExecutor(result={"items": [1]})
    same_call = tool_call("a", "find_content", {"query": "x"})
    backend = ScriptedBackend([
        tool_reply([same_call]),
        tool_reply([tool_call("b", "find_content", {"query": "x"})]),
        text_reply("first"),
        tool_reply([tool_call("c", "find_content", {"query": "x"})]),
        text_reply("second"),
    ])
    orchestrator = _orchestrator(backend, cache=cache)

    first = await orchestrator.run_turn([], _user("1"), {"find_content": find})
    second = await orchestrator.run_turn([], _user("2"), {"find_content": find})

    assert len(find.calls) == 1
    assert first.cache_hits == 1
    assert second.cache_hits == 1


@pytest.mark.asyncio
async def test_failures_are_not_cached_across_rounds() -> None:
    cache = TTLCache(5)
    flaky = CountingExecutor(error=RuntimeError("boom"))
    backend = ScriptedBackend([
        tool_reply([tool_call("a", "find_content", {"query": "x"})]),
        tool_reply([tool_call("b", "find_content", {"query": "x"})]),
        text_reply("sorry"),
    ])
    await _orchestrator(backend, cache=cache).run_turn([], _user("q"), {"find_content": flaky})
    assert len(flaky.calls) == 2
    assert len(cache) == 0


# ------------------------------------------------------------------------------
# failure isolation
# ------------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_malformed_arguments_fail_only_that_call() -> None:
    find = CountingExecutor(result={"items": []})
    backend = ScriptedBackend([
        tool_reply([
            tool_call("bad", "find_content", '{"query": "Phys'),
            tool_call("good", "find_content", {"query": "Physics"}),
        ]),
        text_reply("Here you go."),
    ])

    result = await _orchestrator(backend).run_turn([], _user("q"), {"find_content": find})

    tool_messages = [m for m in result.new_messages if m.role == "tool"]
    bad = json.loads(tool_messages[0].content)
    assert bad["tool"] == "find_content"
    assert "not valid JSON" in bad["error"]
    assert json.loads(tool_messages[1].content) == {"items": []}
    assert find.calls == [{"query": "Physics"}]
    assert result.message.content == "Here you go."


@pytest.mark.asyncio
async def test_executor_errors_and_unknown_tools_become_error_results() -> None:
    failing = CountingExecutor(error=UpstreamError("Content service failed", 503))
    backend = ScriptedBackend([
        tool_reply([
            tool_call("a", "find_content", {"query": "x"}),
            tool_call("b", "delete_everything", {}),
        ]),
        text_reply("Something went wrong."),
    ])

    result = await _orchestrator(backend).run_turn([], _user("q"), {"find_content": failing})

    payloads = [json.loads(m.content) for m in result.new_messages if m.role == "tool"]
    assert payloads[0] == {"error": "Content service failed", "tool": "find_content"}
    assert payloads[1] == {"error": "Unknown tool: delete_everything", "tool": "delete_everything"}
    assert result.message.content == "Something went wrong."


@pytest.mark.asyncio
async def test_backend_failure_aborts_the_turn() -> None:
    find = CountingExecutor()
    backend = ScriptedBackend([
        tool_reply([tool_call("a", "find_content", {"query": "x"})]),
        UpstreamError("Completion backend returned HTTP 500", 500),
    ])
    with pytest.raises(UpstreamError):
        await _orchestrator(backend).run_turn([], _user("q"), {"find_content": find})


# ------------------------------------------------------------------------------
# termination
# ------------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_round_limit_bounds_endless_tool_calls() -> None:
    find = CountingExecutor()
    endless = tool_reply([tool_call("a", "find_content", {"query": "again"})], tokens=10, text="Still looking")
    backend = ScriptedBackend([endless], repeat_last=True)

    result = await _orchestrator(backend, cache=TTLCache(0)).run_turn([], _user("q"), {"find_content": find})

    assert len(backend.calls) == 5
    assert result.rounds == 5
    assert result.hit_round_limit is True
    assert result.used_tokens == 50
    # Tools ran for the first four rounds; the fifth request is never answered.
    assert len(find.calls) == 4
    assert result.message.content == "Still looking"
    assert result.message.tool_calls is None


@pytest.mark.asyncio
async def test_round_limit_without_text_falls_back() -> None:
    backend = ScriptedBackend([tool_reply([tool_call("a", "find_content", {"query": "x"})])], repeat_last=True)
    result = await _orchestrator(backend, max_rounds=2).run_turn([], _user("q"), {"find_content": CountingExecutor()})
    assert len(backend.calls) == 2
    assert result.message.content == FALLBACK


@pytest.mark.asyncio
async def test_empty_reply_forces_a_text_answer() -> None:
    backend = ScriptedBackend([text_reply("", tokens=5), text_reply("Forced answer", tokens=7)])

    result = await _orchestrator(backend).run_turn([], _user("q"), {})

    assert [c["tool_choice"] for c in backend.calls] == ["auto", "none"]
    assert result.forced_text is True
    assert result.message.content == "Forced answer"
    assert result.used_tokens == 12


@pytest.mark.asyncio
async def test_still_empty_after_forcing_uses_fallback() -> None:
    backend = ScriptedBackend([text_reply("  "), text_reply("")])
    result = await _orchestrator(backend).run_turn([], _user("q"), {})
    assert len(backend.calls) == 2
    assert result.message.content == FALLBACK
    assert result.new_messages[-1].content == FALLBACK


@pytest.mark.asyncio
async def test_forced_text_failure_is_not_fatal() -> None:
    backend = ScriptedBackend([text_reply(""), UpstreamError("timeout", 504)])
    result = await _orchestrator(backend).run_turn([], _user("q"), {})
    assert result.message.content == FALLBACK


@pytest.mark.asyncio
async def test_plain_answer_needs_one_round() -> None:
    backend = ScriptedBackend([text_reply("Hello!", tokens=3)])
    result = await _orchestrator(backend).run_turn([], _user("hi"), {})
    assert result.rounds == 1
    assert result.message.content == "Hello!"
    assert [m.role for m in result.new_messages] == ["assistant"]


@pytest.mark.asyncio
async def test_cached_results_are_never_shared_between_users() -> None:
    cache = TTLCache(5)
    writes = []

    def create_for(user):
        async def create(args):
            writes.append(user)
            return {"status": "created", "post": {"id": len(writes), "owner": user}}
        return create

    args = {"title": "T", "description": "D", "content_type": "subject", "confirm": True}
    backend = ScriptedBackend([
        tool_reply([tool_call("a", "create_content", args)]),
        text_reply("Created for alice."),
        tool_reply([tool_call("b", "create_content", args)]),
        text_reply("Created for bob."),
    ])
    orchestrator = _orchestrator(backend, cache=cache)

    await orchestrator.run_turn([], _user("make it"), {"create_content": create_for("alice")}, cache_scope="alice-scope")
    bob = await orchestrator.run_turn([], _user("make it"), {"create_content": create_for("bob")}, cache_scope="bob-scope")

    assert writes == ["alice", "bob"]
    assert bob.cache_hits == 0
    bob_result = json.loads(next(m for m in bob.new_messages if m.role == "tool").content)
    assert bob_result["post"]["owner"] == "bob"
