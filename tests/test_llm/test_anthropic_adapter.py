import json

import httpx
import pytest

from pprog.exceptions import ConfigurationError, LLMAPIError, NetworkError, ProtocolError
from pprog.llm import AnthropicProvider
from pprog.messages import Message, TextBlock, ToolUseBlock


def _provider(handler) -> AnthropicProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AnthropicProvider(model="claude-test", base_url="https://api.test/v1", api_key="k", client=client)


def _conversation() -> list[Message]:
    return [
        Message.user_text("create a.txt and b.txt"),
        Message(
            role="assistant",
            content=[
                ToolUseBlock(id="t1", name="write_file", input={"path": "a.txt", "content": "A"}),
                ToolUseBlock(id="t2", name="write_file", input={"path": "b.txt", "content": "B"}),
            ],
        ),
        Message.tool_result("t1", "ok"),
        Message.tool_result("t2", "denied", is_error=True),
    ]


def test_encode_merges_tool_results_into_one_user_message():
    provider = AnthropicProvider(api_key="k")
    tools = [{"name": "write_file", "description": "write", "parameters": {"type": "object"}}]

    body = provider.encode(_conversation(), tools=tools, system="be brief")

    assert body["system"] == "be brief"
    assert body["tools"][0]["input_schema"] == {"type": "object"}
    assert [m["role"] for m in body["messages"]] == ["user", "assistant", "user"]
    results = body["messages"][2]["content"]
    assert [r["tool_use_id"] for r in results] == ["t1", "t2"]
    assert "is_error" not in results[0]
    assert results[1]["is_error"] is True


def test_encode_drops_empty_placeholder_turns():
    provider = AnthropicProvider(api_key="k")
    messages = [
        Message.user_text("hi"),
        Message(role="assistant", content=[TextBlock(text="")]),
        Message.assistant_text("hello"),
    ]

    body = provider.encode(messages)

    assert body["messages"] == [
        {"role": "user", "content": [{"type": "text", "text": "hi"}]},
        {"role": "assistant", "content": [{"type": "text", "text": "hello"}]},
    ]


def test_decode_text_and_tool_use():
    provider = AnthropicProvider(api_key="k")

    message = provider.decode({
        "type": "message",
        "role": "assistant",
        "content": [
            {"type": "text", "text": "writing"},
            {"type": "tool_use", "id": "toolu_1", "name": "write_file", "input": {"path": "x"}},
        ],
    })

    assert message.role == "assistant"
    assert message.text() == "writing"
    assert message.tool_uses()[0].input == {"path": "x"}


@pytest.mark.parametrize(
    "payload",
    [
        [],
        {"type": "error", "error": {"message": "overloaded"}},
        {"type": "message", "role": "assistant"},
        {"type": "message", "role": "assistant", "content": [{"type": "image", "source": {}}]},
        {"type": "message", "role": "assistant", "content": [{"type": "tool_use", "id": 3, "name": "x"}]},
    ],
)
def test_decode_rejects_unknown_shapes(payload):
    with pytest.raises(ProtocolError):
        AnthropicProvider(api_key="k").decode(payload)


@pytest.mark.asyncio
async def test_count_tokens_uses_count_endpoint():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.url.path, json.loads(request.content), request.headers.get("x-api-key")))
        return httpx.Response(200, json={"input_tokens": 1234})

    provider = _provider(handler)
    try:
        count = await provider.count_tokens(_conversation(), system="sys")
    finally:
        await provider.client.aclose()

    assert count == 1234
    path, body, key = seen[0]
    assert path == "/v1/messages/count_tokens"
    assert body["system"] == "sys"
    assert "max_tokens" not in body
    assert key == "k"


@pytest.mark.asyncio
async def test_count_tokens_sends_tool_definitions():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"input_tokens": 99})

    provider = _provider(handler)
    tools = [{"name": "read_file", "description": "Read a file", "parameters": {"type": "object", "properties": {}}}]
    try:
        await provider.count_tokens(_conversation(), system="sys", tools=tools)
    finally:
        await provider.client.aclose()

    assert seen[0]["tools"] == [
        {"name": "read_file", "description": "Read a file", "input_schema": {"type": "object", "properties": {}}}
    ]


@pytest.mark.asyncio
async def test_complete_decodes_response_and_usage():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/messages"
        assert request.headers["anthropic-version"] == "2023-06-01"
        return httpx.Response(200, json={
            "type": "message",
            "role": "assistant",
            "model": "claude-test",
            "content": [{"type": "text", "text": "Done."}],
            "stop_reason": "end_turn",
            "usage": {"input_tokens": 10, "output_tokens": 3},
        })

    provider = _provider(handler)
    try:
        response = await provider.complete([Message.user_text("hi")])
    finally:
        await provider.client.aclose()

    assert response.message.text() == "Done."
    assert response.stop_reason == "end_turn"
    assert response.usage["total_tokens"] == 13


@pytest.mark.asyncio
async def test_http_errors_map_to_error_kinds():
    def failing(request: httpx.Request) -> httpx.Response:
        return httpx.Response(529, text="overloaded")

    def broken(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    provider = _provider(failing)
    with pytest.raises(LLMAPIError) as excinfo:
        await provider.complete([Message.user_text("hi")])
    assert excinfo.value.status_code == 529
    await provider.client.aclose()

    provider = _provider(broken)
    with pytest.raises(NetworkError):
        await provider.complete([Message.user_text("hi")])
    await provider.client.aclose()


@pytest.mark.asyncio
async def test_missing_api_key_is_configuration_error():
    provider = AnthropicProvider(api_key="", client=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: None)))
    try:
        with pytest.raises(ConfigurationError):
            await provider.complete([Message.user_text("hi")])
    finally:
        await provider.client.aclose()
