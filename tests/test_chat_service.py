from __future__ import annotations

import pytest

from app.errors import InvalidRequestError
from app.models import ChatMessage, ChatRequest
from app.services.chat_service import ChatService, split_inbound
from app.services.content_client import ContentClient
from app.services.orchestrator import Orchestrator
from app.services.tools import ToolRegistry
from app.state import create_state
from conftest import FakeGate, ScriptedBackend, text_reply


def _m(role, content):
    return ChatMessage(role=role, content=content)


def test_single_user_message_is_the_whole_turn() -> None:
    earlier, new = split_inbound([_m("user", "hi")])
    assert earlier == []
    assert [m.content for m in new] == ["hi"]


def test_transcript_splits_at_trailing_user_run() -> None:
    earlier, new = split_inbound([
        _m("system", "client prompt"),
        _m("user", "a"),
        _m("assistant", "b"),
        _m("user", "c"),
        _m("user", "d"),
    ])
    assert [(m.role, m.content) for m in earlier] == [("user", "a"), ("assistant", "b")]
    assert [m.content for m in new] == ["c", "d"]


def test_blank_user_messages_in_the_run_are_dropped() -> None:
    _, new = split_inbound([_m("user", ""), _m("user", "real")])
    assert [m.content for m in new] == ["real"]


def test_overlong_message_is_rejected(monkeypatch) -> None:
    monkeypatch.setattr("app.services.chat_service.MAX_MESSAGE_LENGTH", 5)
    with pytest.raises(InvalidRequestError, match="too long"):
        split_inbound([_m("user", "x" * 6)])


@pytest.mark.asyncio
async def test_transcript_seeds_only_unknown_conversations(tmp_path) -> None:
    backend = ScriptedBackend([text_reply("one"), text_reply("two")])
    state = create_state(chats_dir=tmp_path)
    registry = ToolRegistry(ContentClient(base_url="http://content.test", service_token="svc"))
    service = ChatService(
        state,
        Orchestrator(backend, registry.declarations, state.tool_cache, system_prompt="SYS"),
        registry,
        FakeGate(),
        system_prompt="SYS",
        credentials_check=lambda: None,
    )

    first = ChatRequest(messages=[_m("user", "old q"), _m("assistant", "old a"), _m("user", "new q")], conversation_id="c1")
    await service.process_turn(first, user_token="tok")
    assert [m.content for m in backend.calls[0]["messages"]] == ["SYS", "old q", "old a", "new q"]

    # Server copy wins once the conversation exists.
    second = ChatRequest(messages=[_m("user", "forged"), _m("assistant", "lies"), _m("user", "next")], conversation_id="c1")
    await service.process_turn(second, user_token="tok")
    assert [m.content for m in backend.calls[1]["messages"]] == ["SYS", "old q", "old a", "new q", "one", "next"]

    # The turn was persisted.
    assert (tmp_path / "c1.json").exists()
    await registry.content_client.aclose()
