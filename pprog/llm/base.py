"""Provider adapter contract shared by every vendor."""

import json
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx

from pprog.exceptions import ConfigurationError, LLMAPIError, NetworkError, ProtocolError
from pprog.logging import get_logger
from pprog.messages import Message, TextBlock, ToolResultBlock, ToolUseBlock

log = get_logger(__name__)

# Source code packs fewer characters into a token than prose, so divide by 2
# rather than the usual 4.
CHARS_PER_TOKEN = 2


@dataclass(frozen=True)
class ProviderCapabilities:
    """Static description of what a vendor accepts and reports."""

    exact_token_count: bool
    tool_results_as_user_role: bool
    max_context_tokens: int


@dataclass
class LLMResponse:
    """Decoded model turn plus transport metadata."""

    message: Message
    model: str = ""
    stop_reason: str = ""
    usage: dict[str, int] = field(default_factory=dict)


def block_char_count(block: Any) -> int:
    """Characters a content block contributes to the token estimate."""
    if isinstance(block, TextBlock):
        return len(block.text)
    if isinstance(block, ToolUseBlock):
        return len(block.name) + len(json.dumps(block.input, ensure_ascii=False))
    if isinstance(block, ToolResultBlock):
        return len(block.content)
    return 0


def estimate_tokens(
    messages: list[Message],
    system: str | None = None,
    tools: list[dict[str, Any]] | None = None,
) -> int:
    """Conservative token estimate: total characters / 2, rounded up.

    Tool definitions count by their JSON serialization.
    """
    chars = len(system or "")
    if tools:
        chars += len(json.dumps(tools, ensure_ascii=False))
    for message in messages:
        for block in message.content:
            chars += block_char_count(block)
    return math.ceil(chars / CHARS_PER_TOKEN)


class LLMProvider(ABC):
    """Translate between the internal message model and one vendor's wire format."""

    name: str = ""
    capabilities: ProviderCapabilities

    def __init__(
        self,
        model: str,
        base_url: str,
        api_key: str | None = None,
        max_output_tokens: int = 8096,
        temperature: float | None = None,
        timeout: float = 300.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key or ""
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    @abstractmethod
    def encode(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
        system: str | None = None,
    ) -> dict[str, Any]:
        """Build the vendor request body for ``messages``."""

    @abstractmethod
    def decode(self, payload: Any) -> Message:
        """Turn a vendor response body into an assistant message.

        Raises:
            ProtocolError if the payload shape is not recognized
        """

    @abstractmethod
    async def count_tokens(
        self,
        messages: list[Message],
        system: str | None = None,
        tools: list[dict[str, Any]] | None = None,
    ) -> int:
        """Input tokens a request with these messages, system and tools would use."""

    @abstractmethod
    def _completion_url(self) -> str:
        pass

    @abstractmethod
    def _headers(self) -> dict[str, str]:
        pass

    def _extract_metadata(self, payload: dict[str, Any]) -> tuple[str, dict[str, int]]:
        """Return (stop_reason, usage) from a decoded payload."""
        return "", {}

    def _require_api_key(self) -> None:
        if not self.api_key:
            raise ConfigurationError(f"{self.name} API key not found")

    async def _post_json(self, url: str, body: dict[str, Any]) -> Any:
        """POST ``body`` and return the parsed JSON response."""
        self._require_api_key()
        try:
            response = await self.client.post(url, json=body, headers=self._headers())
        except httpx.HTTPError as e:
            raise NetworkError(f"{self.name} HTTP error: {e}") from e

        log.debug("Provider response status", provider=self.name, status=response.status_code)

        if not response.is_success:
            raise LLMAPIError(
                f"{self.name} API error {response.status_code}: {response.text}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise ProtocolError(f"{self.name} response is not JSON: {e}") from e

    async def complete(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
        system: str | None = None,
    ) -> LLMResponse:
        """Send the conversation and decode the next assistant turn."""
        body = self.encode(messages, tools=tools, system=system)
        log.debug(
            "Calling provider",
            provider=self.name,
            model=self.model,
            msg_count=len(messages),
        )
        payload = await self._post_json(self._completion_url(), body)
        message = self.decode(payload)
        stop_reason, usage = self._extract_metadata(payload)
        return LLMResponse(
            message=message,
            model=str(payload.get("model", self.model)),
            stop_reason=stop_reason,
            usage=usage,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._owns_client:
            await self.client.aclose()
