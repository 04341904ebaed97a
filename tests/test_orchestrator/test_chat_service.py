import asyncio
from pathlib import Path

import pytest

from pprog.config import Config
from pprog.exceptions import ProtocolError
from pprog.llm.base import LLMResponse
from pprog.messages import Message
from pprog.orchestrator import ChatService
from pprog.session import SessionManager
from pprog.tools import build_default_registry


def _config(tmp_path: Path) -> Config:
    cfg = Config()
    cfg.project.root = str(tmp_path)
    cfg.session.path = str(tmp_path / "sessions.db")
    cfg.tools.check_cmd = "echo ok"
    return cfg


def _service(tmp_path: Path, providers: list, **kwargs) -> ChatService:
    cfg = _config(tmp_path)
    queue = list(providers)
    return ChatService(
        config=cfg,
        session_manager=SessionManager(cfg.session.path),
        provider_factory=lambda: queue.pop(0),
        registry_factory=lambda: build_default_registry(cfg, project_root=tmp_path),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_submit_get_and_clear(scripted_provider, turns, tmp_path: Path):
    provider = scripted_provider([turns.answer("hello")])
    service = _service(tmp_path, [provider])
    try:
        reply = await service.submit_user_message("p1", "hi")
        messages = await service.get_messages("p1")
        await service.clear("p1")
        cleared = await service.get_messages("p1")
    finally:
        await service.close()

    assert reply.text() == "hello"
    assert [m.text() for m in messages] == ["hi", "hello"]
    assert cleared == []
    assert provider.closed is True


@pytest.mark.asyncio
async def test_system_prompt_names_project_and_file_tree(scripted_provider, turns, tmp_path: Path):
    provider = scripted_provider([turns.answer("ok")])
    service = _service(tmp_path, [provider], file_tree=lambda root: "src/\n  main.rs")
    try:
        await service.submit_user_message("p1", "hi")
    finally:
        await service.close()

    system = provider.systems[0]
    assert "coding assistant" in system
    assert str(tmp_path) in system
    assert "main.rs" in system


@pytest.mark.asyncio
async def test_conversation_is_persisted_even_when_turn_fails(scripted_provider, turns, tmp_path: Path):
    first = scripted_provider([turns.answer("one"), ProtocolError("garbled")])
    service = _service(tmp_path, [first])
    try:
        await service.submit_user_message("p1", "first")
        with pytest.raises(ProtocolError):
            await service.submit_user_message("p1", "second")
    finally:
        await service.close()

    second = scripted_provider([turns.answer("three")])
    restarted = _service(tmp_path, [second])
    try:
        restored = await restarted.get_messages("p1")
        await restarted.submit_user_message("p1", "third")
    finally:
        await restarted.close()

    assert [m.text() for m in restored] == ["first", "one", "second"]
    assert [m.text() for m in second.calls[0]] == ["first", "one", "second", "third"]


@pytest.mark.asyncio
async def test_turns_for_one_session_are_serialized_in_arrival_order(scripted_provider, tmp_path: Path):
    active = 0
    peak = 0

    class _SlowProvider(scripted_provider):
        async def complete(self, messages, tools=None, system=None):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.05)
            active -= 1
            return LLMResponse(message=Message.assistant_text(f"re: {messages[-1].text()}"), model="slow")

    provider = _SlowProvider([])
    service = _service(tmp_path, [provider])
    try:
        replies = await asyncio.gather(*(
            service.submit_user_message("p1", f"msg {index}") for index in range(4)
        ))
        messages = await service.get_messages("p1")
    finally:
        await service.close()

    assert peak == 1
    assert [r.text() for r in replies] == [f"re: msg {index}" for index in range(4)]
    assert [m.text() for m in messages if m.role == "user"] == [f"msg {index}" for index in range(4)]


@pytest.mark.asyncio
async def test_sessions_get_independent_runtimes(scripted_provider, turns, tmp_path: Path):
    provider_a = scripted_provider([turns.answer("from a")])
    provider_b = scripted_provider([turns.answer("from b")])
    service = _service(tmp_path, [provider_a, provider_b])
    try:
        reply_a, reply_b = await asyncio.gather(
            service.submit_user_message("a", "hi a"),
            service.submit_user_message("b", "hi b"),
        )
        messages_a = await service.get_messages("a")
    finally:
        await service.close()

    assert {reply_a.text(), reply_b.text()} == {"from a", "from b"}
    assert [m.text() for m in messages_a][0] == "hi a"
    assert len(messages_a) == 2
