"""Anthropic Messages API adapter (exact token counts)."""

from typing import Any

from pprog.exceptions import ProtocolError
from pprog.llm.base import LLMProvider, ProviderCapabilities
from pprog.logging import get_logger
from pprog.messages import Message, TextBlock, ToolResultBlock, ToolUseBlock

log = get_logger(__name__)


ANTHROPIC_BASE_URL = "https://api.anthropic.com/v1"
ANTHROPIC_VERSION = "2023-06-01"


class AnthropicProvider(LLMProvider):
    """Anthropic provider with a dedicated token-counting endpoint."""

    name = "anthropic"
    capabilities = ProviderCapabilities(
        exact_token_count=True,
        tool_results_as_user_role=True,
        max_context_tokens=200000,
    )

    def __init__(self, model: str = "claude-3-5-haiku-latest", base_url: str = ANTHROPIC_BASE_URL, **kwargs: Any):
        super().__init__(model=model, base_url=base_url or ANTHROPIC_BASE_URL, **kwargs)

    def _completion_url(self) -> str:
        return f"{self.base_url}/messages"

    def _count_url(self) -> str:
        return f"{self.base_url}/messages/count_tokens"

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
        }

    @staticmethod
    def _convert_block(block: Any) -> dict[str, Any] | None:
        if isinstance(block, TextBlock):
            # The API rejects empty text blocks
            if not block.text:
                return None
            return {"type": "text", "text": block.text}
        if isinstance(block, ToolUseBlock):
            return {"type": "tool_use", "id": block.id, "name": block.name, "input": block.input}
        if isinstance(block, ToolResultBlock):
            entry: dict[str, Any] = {
                "type": "tool_result",
                "tool_use_id": block.tool_use_id,
                "content": block.content,
            }
            if block.is_error:
                entry["is_error"] = True
            return entry
        return None

    def _convert_messages(self, messages: list[Message]) -> list[dict[str, Any]]:
        """Convert messages, merging consecutive same-role entries.

        Results for a multi-tool assistant turn must all arrive in the single
        user message that follows it.
        """
        result: list[dict[str, Any]] = []
        for msg in messages:
            blocks = [b for b in (self._convert_block(block) for block in msg.content) if b is not None]
            if not blocks:
                continue
            if result and result[-1]["role"] == msg.role:
                result[-1]["content"].extend(blocks)
            else:
                result.append({"role": msg.role, "content": blocks})
        return result

    @staticmethod
    def _convert_tools(tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return [
            {
                "name": tool["name"],
                "description": tool.get("description", ""),
                "input_schema": tool.get("parameters") or {"type": "object", "properties": {}},
            }
            for tool in tools
            if tool.get("name")
        ]

    def encode(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
        system: str | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self.model,
            "messages": self._convert_messages(messages),
            "max_tokens": self.max_output_tokens,
        }
        if system:
            body["system"] = system
        if tools:
            body["tools"] = self._convert_tools(tools)
        if self.temperature is not None:
            body["temperature"] = self.temperature
        return body

    def decode(self, payload: Any) -> Message:
        if not isinstance(payload, dict):
            raise ProtocolError("Anthropic response is not a JSON object")
        if payload.get("type", "message") != "message":
            raise ProtocolError(f"Unexpected Anthropic response type: {payload.get('type')!r}")
        if payload.get("role", "assistant") != "assistant":
            raise ProtocolError(f"Unexpected Anthropic response role: {payload.get('role')!r}")
        raw_content = payload.get("content")
        if not isinstance(raw_content, list):
            raise ProtocolError("Anthropic response has no content list")

        content: list[Any] = []
        for item in raw_content:
            if not isinstance(item, dict):
                raise ProtocolError("Anthropic content item is not an object")
            item_type = item.get("type")
            if item_type == "text" and isinstance(item.get("text"), str):
                content.append(TextBlock(text=item["text"]))
            elif item_type == "tool_use":
                tool_id, name, tool_input = item.get("id"), item.get("name"), item.get("input", {})
                if not isinstance(tool_id, str) or not isinstance(name, str) or not isinstance(tool_input, dict):
                    raise ProtocolError("Malformed tool_use block in Anthropic response")
                content.append(ToolUseBlock(id=tool_id, name=name, input=tool_input))
            else:
                raise ProtocolError(f"Unrecognized Anthropic content block: {item_type!r}")

        if not content:
            content.append(TextBlock(text=""))
        return Message(role="assistant", content=content)

    def _extract_metadata(self, payload: dict[str, Any]) -> tuple[str, dict[str, int]]:
        usage = payload.get("usage") or {}
        input_tokens = int(usage.get("input_tokens", 0) or 0)
        output_tokens = int(usage.get("output_tokens", 0) or 0)
        return str(payload.get("stop_reason") or ""), {
            "prompt_tokens": input_tokens,
            "completion_tokens": output_tokens,
            "total_tokens": input_tokens + output_tokens,
        }

    async def count_tokens(
        self,
        messages: list[Message],
        system: str | None = None,
        tools: list[dict[str, Any]] | None = None,
    ) -> int:
        """Ask the API for the exact input token count (one network call)."""
        converted = self._convert_messages(messages)
        if not converted:
            return 0
        body: dict[str, Any] = {"model": self.model, "messages": converted}
        if system:
            body["system"] = system
        if tools:
            body["tools"] = self._convert_tools(tools)
        payload = await self._post_json(self._count_url(), body)
        if not isinstance(payload, dict) or not isinstance(payload.get("input_tokens"), int):
            raise ProtocolError("Anthropic token count response has no input_tokens")
        return payload["input_tokens"]
