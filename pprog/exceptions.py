"""Custom exceptions for pprog."""


class PprogError(Exception):
    """Base exception for pprog."""

    kind = "error"


class ConfigurationError(PprogError):
    """Configuration-related errors."""

    kind = "configuration_error"


class ValidationError(PprogError):
    """Validation errors."""

    kind = "validation_error"


class LLMError(PprogError):
    """LLM-related errors."""

    kind = "llm_error"


class ProtocolError(LLMError):
    """Provider response could not be decoded into a message."""

    kind = "protocol_error"


class NetworkError(LLMError):
    """Transport failure while talking to a provider."""

    kind = "network_error"


class LLMAPIError(LLMError):
    """LLM API errors (rate limit, auth, etc.)."""

    kind = "api_error"

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class BudgetExceeded(PprogError):
    """Conversation cannot be pruned under the context window."""

    kind = "budget_exceeded"

    def __init__(self, current_tokens: int, max_tokens: int):
        super().__init__(
            f"Context budget exceeded: {current_tokens} > {max_tokens} tokens"
        )
        self.current_tokens = current_tokens
        self.max_tokens = max_tokens


class LoopLimitExceeded(PprogError):
    """Model kept requesting tools past the per-turn dispatch limit."""

    kind = "loop_limit_exceeded"

    def __init__(self, limit: int):
        super().__init__(f"Tool dispatch limit reached: {limit} iterations")
        self.limit = limit


class ToolError(PprogError):
    """Tool execution errors."""

    kind = "tool_failure"


class ToolFailure(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool not found: {tool_name}")
        self.tool_name = tool_name


class ToolBlockedError(ToolError):
    """Tool execution blocked by policy."""

    def __init__(self, tool_name: str, reason: str):
        super().__init__(f"Tool '{tool_name}' blocked: {reason}")
        self.tool_name = tool_name
        self.reason = reason


class SessionError(PprogError):
    """Session-related errors."""

    kind = "session_error"


class TurnAborted(PprogError):
    """Caller aborted the turn before it reached a final answer."""

    kind = "aborted"
