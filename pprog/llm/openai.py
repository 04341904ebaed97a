"""OpenAI-compatible chat completions adapter (estimated token counts)."""

import json
from typing import Any

from pprog.exceptions import ProtocolError
from pprog.llm.base import LLMProvider, ProviderCapabilities, estimate_tokens
from pprog.logging import get_logger
from pprog.messages import Message, TextBlock, ToolResultBlock, ToolUseBlock

log = get_logger(__name__)


OPENAI_BASE_URL = "https://api.openai.com/v1"
DEEPSEEK_BASE_URL = "https://api.deepseek.com"


class OpenAIProvider(LLMProvider):
    """Chat completions provider; also serves DeepSeek's compatible endpoint."""

    name = "openai"
    capabilities = ProviderCapabilities(
        exact_token_count=False,
        tool_results_as_user_role=False,
        max_context_tokens=128000,
    )

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        base_url: str = OPENAI_BASE_URL,
        max_context_tokens: int | None = None,
        **kwargs: Any,
    ):
        super().__init__(model=model, base_url=base_url or OPENAI_BASE_URL, **kwargs)
        if max_context_tokens is not None:
            self.capabilities = ProviderCapabilities(
                exact_token_count=False,
                tool_results_as_user_role=False,
                max_context_tokens=max_context_tokens,
            )

    def _completion_url(self) -> str:
        return f"{self.base_url}/chat/completions"

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }

    def _convert_messages(self, messages: list[Message], system: str | None) -> list[dict[str, Any]]:
        """Convert messages to chat-completions format.

        Each ToolResult becomes its own ``tool`` role message.
        """
        result: list[dict[str, Any]] = []
        if system:
            result.append({"role": "system", "content": system})

        for msg in messages:
            text = msg.text()
            if msg.role == "user":
                for block in msg.content:
                    if isinstance(block, ToolResultBlock):
                        content = f"Error: {block.content}" if block.is_error else block.content
                        result.append({
                            "role": "tool",
                            "tool_call_id": block.tool_use_id,
                            "content": content,
                        })
                if not msg.is_tool_result() or text:
                    result.append({"role": "user", "content": text})
                continue

            tool_calls = [
                {
                    "id": block.id,
                    "type": "function",
                    "function": {
                        "name": block.name,
                        "arguments": json.dumps(block.input, ensure_ascii=False),
                    },
                }
                for block in msg.tool_uses()
            ]
            # Placeholder turns left by pruning carry nothing worth sending
            if not text and not tool_calls:
                continue
            entry: dict[str, Any] = {"role": "assistant", "content": text or None}
            if tool_calls:
                entry["tool_calls"] = tool_calls
            result.append(entry)
        return result

    @staticmethod
    def _convert_tools(tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": tool["name"],
                    "description": tool.get("description", ""),
                    "parameters": tool.get("parameters") or {"type": "object", "properties": {}},
                },
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
            "messages": self._convert_messages(messages, system),
            "max_tokens": self.max_output_tokens,
        }
        if tools:
            body["tools"] = self._convert_tools(tools)
        if self.temperature is not None:
            body["temperature"] = self.temperature
        return body

    def decode(self, payload: Any) -> Message:
        if not isinstance(payload, dict):
            raise ProtocolError("Chat completion response is not a JSON object")
        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices:
            raise ProtocolError("No choices in chat completion response")
        choice = choices[0]
        message = choice.get("message") if isinstance(choice, dict) else None
        if not isinstance(message, dict):
            raise ProtocolError("Chat completion choice has no message")

        raw_text = message.get("content")
        if raw_text is not None and not isinstance(raw_text, str):
            raise ProtocolError("Chat completion message content is not a string")

        content: list[Any] = []
        if raw_text:
            content.append(TextBlock(text=raw_text))

        raw_calls = message.get("tool_calls") or []
        if not isinstance(raw_calls, list):
            raise ProtocolError("Chat completion tool_calls is not a list")
        for call in raw_calls:
            function = call.get("function") if isinstance(call, dict) else None
            if not isinstance(function, dict) or not isinstance(call.get("id"), str):
                raise ProtocolError("Malformed tool call in chat completion response")
            name = function.get("name")
            arguments = function.get("arguments") or "{}"
            if not isinstance(name, str):
                raise ProtocolError("Tool call without a function name")
            if isinstance(arguments, str):
                try:
                    arguments = json.loads(arguments)
                except json.JSONDecodeError as e:
                    raise ProtocolError(f"Tool call arguments are not valid JSON: {e}") from e
            if not isinstance(arguments, dict):
                raise ProtocolError("Tool call arguments are not a JSON object")
            content.append(ToolUseBlock(id=call["id"], name=name, input=arguments))

        if not content:
            content.append(TextBlock(text=""))
        return Message(role="assistant", content=content)

    def _extract_metadata(self, payload: dict[str, Any]) -> tuple[str, dict[str, int]]:
        usage = payload.get("usage") or {}
        choice = payload["choices"][0]
        return str(choice.get("finish_reason") or ""), {
            "prompt_tokens": int(usage.get("prompt_tokens", 0) or 0),
            "completion_tokens": int(usage.get("completion_tokens", 0) or 0),
            "total_tokens": int(usage.get("total_tokens", 0) or 0),
        }

    async def count_tokens(
        self,
        messages: list[Message],
        system: str | None = None,
        tools: list[dict[str, Any]] | None = None,
    ) -> int:
        """Estimate tokens locally; this vendor exposes no counting endpoint."""
        return estimate_tokens(messages, system, tools)
