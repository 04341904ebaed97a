import pytest

from pprog.exceptions import ValidationError
from pprog.messages import Message, ToolUseBlock
from pprog.session import Conversation, SessionManager


def _exchange() -> list[Message]:
    return [
        Message.user_text("read main.rs"),
        Message(role="assistant", content=[ToolUseBlock(id="t1", name="read_file", input={"path": "main.rs"})]),
        Message.tool_result("t1", "fn main() {}"),
        Message.assistant_text("It is an empty main."),
    ]


def test_messages_property_is_a_snapshot():
    conversation = Conversation("s1", _exchange())

    snapshot = conversation.messages
    snapshot.clear()

    assert len(conversation) == 4


def test_replace_rejects_broken_pairing():
    conversation = Conversation("s1", _exchange())
    broken = _exchange()[2:]

    with pytest.raises(ValidationError):
        conversation.replace(broken)
    assert len(conversation) == 4


def test_replace_and_clear():
    conversation = Conversation("s1", _exchange())

    conversation.replace(_exchange()[:1])
    assert len(conversation) == 1

    conversation.clear()
    assert conversation.messages == []


@pytest.mark.asyncio
async def test_session_manager_uses_db_path_override(tmp_path):
    db_path = tmp_path / "nested" / "custom-sessions.db"
    manager = SessionManager(db_path=db_path)
    try:
        await manager.save_conversation(Conversation("alpha"))
        assert db_path.exists()
    finally:
        await manager.close()


@pytest.mark.asyncio
async def test_save_load_round_trip(tmp_path):
    manager = SessionManager(db_path=tmp_path / "sessions.db")
    try:
        conversation = Conversation("project-a", _exchange())
        await manager.save_conversation(conversation)

        loaded = await manager.load_conversation("project-a")
        missing = await manager.load_conversation("nope")
    finally:
        await manager.close()

    assert missing is None
    assert loaded is not None
    assert loaded.session_id == "project-a"
    assert loaded.messages == conversation.messages
    assert loaded.messages[1].tool_uses()[0].input == {"path": "main.rs"}


@pytest.mark.asyncio
async def test_list_and_delete_conversations(tmp_path):
    manager = SessionManager(db_path=tmp_path / "sessions.db")
    try:
        await manager.save_conversation(Conversation("a", _exchange()))
        await manager.save_conversation(Conversation("b", _exchange()[:1]))

        listed = {info.id: info.message_count for info in await manager.list_sessions()}
        deleted = await manager.delete_conversation("a")
        deleted_again = await manager.delete_conversation("a")
        remaining = [info.id for info in await manager.list_sessions()]
    finally:
        await manager.close()

    assert listed == {"a": 4, "b": 1}
    assert deleted is True
    assert deleted_again is False
    assert remaining == ["b"]
