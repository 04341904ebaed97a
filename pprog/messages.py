"""Provider-neutral conversation model.

Every provider adapter translates to and from these types at its boundary, so
the orchestration loop, the budgeter and the conversation store never look at
vendor JSON.
"""

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, field_validator


class TextBlock(BaseModel):
    """Plain text content."""

    type: Literal["text"] = "text"
    text: str


class ToolUseBlock(BaseModel):
    """A tool invocation requested by the model."""

    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(BaseModel):
    """The outcome of a tool invocation, keyed by the request id."""

    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: str
    is_error: bool = False


ContentBlock = Annotated[
    Union[TextBlock, ToolUseBlock, ToolResultBlock],
    Field(discriminator="type"),
]


class Message(BaseModel):
    """A single role-tagged message in a conversation."""

    role: Literal["user", "assistant"]
    content: list[ContentBlock]

    @field_validator("content")
    @classmethod
    def _require_content(cls, value: list[Any]) -> list[Any]:
        if not value:
            raise ValueError("Message content must not be empty")
        return value

    @classmethod
    def user_text(cls, text: str) -> "Message":
        return cls(role="user", content=[TextBlock(text=text)])

    @classmethod
    def assistant_text(cls, text: str) -> "Message":
        return cls(role="assistant", content=[TextBlock(text=text)])

    @classmethod
    def tool_result(cls, tool_use_id: str, content: str, is_error: bool = False) -> "Message":
        """Tool results travel as their own user-role message."""
        return cls(
            role="user",
            content=[ToolResultBlock(tool_use_id=tool_use_id, content=content, is_error=is_error)],
        )

    def tool_uses(self) -> list[ToolUseBlock]:
        return [block for block in self.content if isinstance(block, ToolUseBlock)]

    def tool_results(self) -> list[ToolResultBlock]:
        return [block for block in self.content if isinstance(block, ToolResultBlock)]

    def text(self) -> str:
        """Concatenate all text blocks."""
        return "".join(block.text for block in self.content if isinstance(block, TextBlock))

    def is_user_text(self) -> bool:
        """True for a user-authored message, i.e. one that opens a turn."""
        return self.role == "user" and not self.tool_results()

    def is_tool_result(self) -> bool:
        return self.role == "user" and bool(self.tool_results())

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        return cls.model_validate(data)


def find_pairing_violations(messages: list[Message], allow_pending: bool = False) -> list[str]:
    """Describe every broken ToolUse/ToolResult pairing in ``messages``.

    Results for an assistant turn must follow it directly, one per ToolUse, and
    must all arrive before the next assistant or user text message. With
    ``allow_pending`` a trailing run of unanswered ToolUse blocks is accepted
    (the loop is mid-dispatch).
    """
    problems: list[str] = []
    open_ids: dict[str, int] = {}
    resolved: set[str] = set()

    def close_window(position: int) -> None:
        for tool_use_id in open_ids:
            problems.append(f"tool_use {tool_use_id} has no tool_result before message {position}")
        open_ids.clear()

    for index, message in enumerate(messages):
        if message.is_user_text():
            close_window(index)
            resolved.clear()
            continue
        if message.role == "assistant":
            close_window(index)
        for block in message.tool_uses():
            if block.id in open_ids or block.id in resolved:
                problems.append(f"duplicate tool_use id {block.id} at message {index}")
            open_ids[block.id] = index
        for block in message.tool_results():
            if block.tool_use_id in open_ids:
                del open_ids[block.tool_use_id]
                resolved.add(block.tool_use_id)
            elif block.tool_use_id in resolved:
                problems.append(f"second tool_result for {block.tool_use_id} at message {index}")
            else:
                problems.append(f"tool_result {block.tool_use_id} at message {index} has no tool_use")

    if not allow_pending:
        close_window(len(messages))
    return problems


def has_open_tool_uses(messages: list[Message]) -> bool:
    """True when the tail of ``messages`` still awaits tool results."""
    open_ids: set[str] = set()
    for message in messages:
        if message.is_user_text():
            open_ids.clear()
            continue
        open_ids.update(block.id for block in message.tool_uses())
        open_ids.difference_update(block.tool_use_id for block in message.tool_results())
    return bool(open_ids)
