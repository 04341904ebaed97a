from types import SimpleNamespace
from typing import Any, Callable

import pytest

from pprog.llm.base import LLMProvider, LLMResponse, ProviderCapabilities, estimate_tokens
from pprog.messages import Message, TextBlock, ToolUseBlock


class ScriptedProvider(LLMProvider):
    """Provider double that replays canned assistant turns.

    Each script entry is a Message, an exception to raise, or a callable
    receiving the messages sent and returning a Message.
    """

    name = "scripted"

    def __init__(self, replies: list[Any], max_context_tokens: int = 100_000, max_output_tokens: int = 0):
        self.model = "scripted-model"
        self.max_output_tokens = max_output_tokens
        self.capabilities = ProviderCapabilities(
            exact_token_count=False,
            tool_results_as_user_role=True,
            max_context_tokens=max_context_tokens,
        )
        self._replies = list(replies)
        self._owns_client = False
        self.calls: list[list[Message]] = []
        self.systems: list[str | None] = []
        self.count_calls = 0
        self.counted_tools: list[list[dict[str, Any]] | None] = []
        self.closed = False

    def encode(self, messages, tools=None, system=None) -> dict[str, Any]:
        return {}

    def decode(self, payload: Any) -> Message:
        return payload

    def _completion_url(self) -> str:
        return ""

    def _headers(self) -> dict[str, str]:
        return {}

    async def count_tokens(self, messages, system=None, tools=None) -> int:
        # Tool definitions are recorded but left out of the estimate
        self.count_calls += 1
        self.counted_tools.append(tools)
        return estimate_tokens(messages, system)

    async def complete(self, messages, tools=None, system=None) -> LLMResponse:
        self.calls.append(list(messages))
        self.systems.append(system)
        if not self._replies:
            raise AssertionError("ScriptedProvider ran out of replies")
        reply = self._replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        if callable(reply):
            reply = reply(messages)
        return LLMResponse(message=reply, model=self.model, stop_reason="end_turn")

    async def close(self) -> None:
        self.closed = True


def tool_call(tool_id: str, name: str, **arguments: Any) -> Message:
    return Message(role="assistant", content=[ToolUseBlock(id=tool_id, name=name, input=arguments)])


def tool_calls(*calls: tuple[str, str, dict[str, Any]]) -> Message:
    return Message(
        role="assistant",
        content=[ToolUseBlock(id=tool_id, name=name, input=arguments) for tool_id, name, arguments in calls],
    )


def answer(text: str) -> Message:
    return Message(role="assistant", content=[TextBlock(text=text)])


@pytest.fixture
def scripted_provider() -> Callable[..., ScriptedProvider]:
    return ScriptedProvider


@pytest.fixture
def turns() -> SimpleNamespace:
    """Builders for assistant turns: tool_call, tool_calls and answer."""
    return SimpleNamespace(tool_call=tool_call, tool_calls=tool_calls, answer=answer)
