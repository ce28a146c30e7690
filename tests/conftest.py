"""
Pytest config and shared fakes.

The repo is laid out flat (config.py + app/ at the root) and is often run without being
installed, so the repo root is pinned on sys.path before test modules import `app`.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest


def _ensure_repo_root_on_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


_ensure_repo_root_on_syspath()

import httpx  # noqa: E402

from app.models import ChatMessage, ToolCallRequest, ToolFunction  # noqa: E402
from app.services.access_gate import INSUFFICIENT_QUOTA, AccessDecision  # noqa: E402
from app.services.groq_service import Completion  # noqa: E402


def tool_call(call_id: str, name: str, args: Any) -> ToolCallRequest:
    """Build a tool call; dict args are JSON-encoded, strings are passed through raw."""
    raw = args if isinstance(args, str) else json.dumps(args)
    return ToolCallRequest(id=call_id, function=ToolFunction(name=name, arguments=raw))


def text_reply(text: str, tokens: int = 0) -> Completion:
    return Completion(message=ChatMessage(role="assistant", content=text), usage_tokens=tokens)


def tool_reply(calls: List[ToolCallRequest], tokens: int = 0, text: str = "") -> Completion:
    return Completion(message=ChatMessage(role="assistant", content=text, tool_calls=calls), usage_tokens=tokens)


class ScriptedBackend:
    """
    Completion backend that replays a fixed list of replies (or raises queued exceptions)
    and records every request it receives.
    """

    def __init__(self, replies: List[Any], repeat_last: bool = False):
        self.replies = list(replies)
        self.repeat_last = repeat_last
        self.calls: List[Dict[str, Any]] = []

    async def complete(self, messages, tools=None, tool_choice="auto"):
        self.calls.append({
            "messages": [m.model_copy(deep=True) for m in messages],
            "tools": tools,
            "tool_choice": tool_choice,
        })
        if not self.replies:
            raise AssertionError("ScriptedBackend ran out of replies")
        reply = self.replies[0] if (self.repeat_last and len(self.replies) == 1) else self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


class FakeGate:
    """Quota gate stand-in: a fixed remaining balance, recording checks and charges."""

    def __init__(self, remaining: int = 1000):
        self.remaining = remaining
        self.checked: List[str] = []
        self.charged: List[tuple] = []

    async def check(self, token: str) -> AccessDecision:
        self.checked.append(token)
        if self.remaining <= 0:
            return AccessDecision(allowed=False, remaining=self.remaining, reason=INSUFFICIENT_QUOTA)
        return AccessDecision(allowed=True, remaining=self.remaining)

    def decrement(self, token: str, amount: int) -> None:
        self.charged.append((token, amount))


class RecordingHandler:
    """httpx.MockTransport handler that records requests and answers from a routing function."""

    def __init__(self, route: Callable[[httpx.Request], httpx.Response]):
        self.route = route
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.route(request)

    def matching(self, method: str, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]


def mock_client(handler: RecordingHandler, base_url: str = "http://upstream.test") -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=base_url)


@pytest.fixture
def no_retry_sleep(monkeypatch: pytest.MonkeyPatch) -> None:
    """Make with_retry's backoff instant."""

    async def _instant(_delay: float) -> None:
        return None

    monkeypatch.setattr("app.utils.retry.asyncio.sleep", _instant)


@pytest.fixture
def json_body() -> Callable[[httpx.Request], Optional[Dict[str, Any]]]:
    def _parse(request: httpx.Request):
        return json.loads(request.content) if request.content else None

    return _parse
