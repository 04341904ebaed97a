"""Tool-call loop driving one conversation, and the per-session chat service."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from pprog.budget import TokenBudgeter
from pprog.config import Config, get_config
from pprog.exceptions import LoopLimitExceeded, TurnAborted, ValidationError
from pprog.instructions import InstructionLoader
from pprog.llm import LLMProvider, create_provider
from pprog.logging import get_logger
from pprog.messages import Message, ToolUseBlock, has_open_tool_uses
from pprog.session import Conversation, SessionManager
from pprog.tools import PrivilegedInputChannel, ToolRegistry, ToolResult, build_default_registry

log = get_logger(__name__)

ToolCallback = Callable[[str, dict[str, Any], ToolResult], None]


class LoopState(str, Enum):
    """Where a turn currently is."""

    IDLE = "idle"
    AWAITING_MODEL = "awaiting_model"
    DISPATCHING_TOOLS = "dispatching_tools"
    TERMINAL = "terminal"


def effective_max_context(provider: LLMProvider, override: int | None = None) -> int:
    """Input token budget: the smaller of the configured budget and the
    provider's ceiling, which keeps room for the requested output tokens.
    """
    reserve = max(0, int(provider.max_output_tokens or 0))
    ceiling = max(1, provider.capabilities.max_context_tokens - reserve)
    if override and override > 0:
        return min(int(override), ceiling)
    return ceiling


class Orchestrator:
    """Run user turns against one conversation until the model stops calling tools.

    The caller must hold ``conversation.lock`` while a turn runs; ChatService
    does this for every submitted message.
    """

    def __init__(
        self,
        conversation: Conversation,
        provider: LLMProvider,
        tools: ToolRegistry,
        max_context: int | None = None,
        max_tool_iterations: int = 50,
        system_prompt: str | None = None,
        budgeter: TokenBudgeter | None = None,
        tool_output_callback: ToolCallback | None = None,
    ):
        self.conversation = conversation
        self.provider = provider
        self.tools = tools
        self.max_context = effective_max_context(provider, max_context)
        self.max_tool_iterations = max(1, int(max_tool_iterations))
        self.system_prompt = system_prompt
        self.budgeter = budgeter or TokenBudgeter()
        self._tool_output_callback = tool_output_callback
        self.state = LoopState.IDLE

    async def run_turn(self, message: Message, abort_event: asyncio.Event | None = None) -> Message:
        """Append ``message`` and loop until the model answers without tools.

        Returns:
            The final assistant message

        Raises:
            ValidationError, BudgetExceeded, LLMError, LoopLimitExceeded or
            TurnAborted; the conversation keeps everything appended so far
        """
        if not message.is_user_text():
            raise ValidationError("A turn must start with a user text message")

        # A log restored after a crash may end mid-dispatch
        self._close_open_tool_uses("Tool call interrupted before it produced a result")
        self.conversation.append(message)
        iterations = 0
        try:
            while True:
                self._check_abort(abort_event)
                self.state = LoopState.AWAITING_MODEL
                reply = await self._next_model_turn()
                self.conversation.append(reply)

                tool_uses = reply.tool_uses()
                if not tool_uses:
                    self.state = LoopState.TERMINAL
                    log.info("Turn complete", session_id=self.conversation.session_id, iterations=iterations)
                    return reply

                if iterations >= self.max_tool_iterations:
                    log.warning(
                        "Tool dispatch limit reached",
                        session_id=self.conversation.session_id,
                        limit=self.max_tool_iterations,
                    )
                    raise LoopLimitExceeded(self.max_tool_iterations)
                iterations += 1

                self.state = LoopState.DISPATCHING_TOOLS
                await self._dispatch(tool_uses, abort_event)
        except BaseException as e:
            self.state = LoopState.TERMINAL
            self._close_open_tool_uses(f"Tool call not executed: {e.__class__.__name__}")
            raise

    async def _next_model_turn(self) -> Message:
        messages = self.conversation.messages
        definitions = self.tools.get_definitions()
        pruned = await self.budgeter.ensure_within_budget(
            messages,
            self.provider,
            self.max_context,
            system=self.system_prompt,
            tools=definitions,
        )
        if pruned is not messages:
            self.conversation.replace(pruned)

        response = await self.provider.complete(
            pruned,
            tools=definitions,
            system=self.system_prompt,
        )
        log.info(
            "Model responded",
            session_id=self.conversation.session_id,
            stop_reason=response.stop_reason,
            tool_calls=len(response.message.tool_uses()),
            usage=response.usage,
        )
        return response.message

    async def _dispatch(self, tool_uses: list[ToolUseBlock], abort_event: asyncio.Event | None) -> None:
        """Run tool uses strictly in emission order, appending each result."""
        for tool_use in tool_uses:
            self._check_abort(abort_event)

            task = asyncio.ensure_future(self.tools.execute(tool_use.name, tool_use.input))
            try:
                result = await asyncio.shield(task)
            except asyncio.CancelledError:
                # Tools may have irreversible side effects; let this one finish
                result = await self._finish_in_flight(task)
                self._record_result(tool_use, result)
                raise
            self._record_result(tool_use, result)

    @staticmethod
    async def _finish_in_flight(task: asyncio.Future) -> ToolResult:
        while not task.done():
            try:
                await asyncio.wait([task])
            except asyncio.CancelledError:
                continue
        if task.cancelled():
            return ToolResult(success=False, error="Tool call cancelled")
        return task.result()

    def _record_result(self, tool_use: ToolUseBlock, result: ToolResult) -> None:
        self.conversation.append(
            Message.tool_result(tool_use.id, result.model_text(), is_error=not result.success)
        )
        if self._tool_output_callback is not None:
            self._tool_output_callback(tool_use.name, tool_use.input, result)

    def _close_open_tool_uses(self, reason: str) -> None:
        """Synthesize error results for tool uses of the last reply left unresolved."""
        messages = self.conversation.messages
        if not has_open_tool_uses(messages):
            return
        last_reply = next(
            (index for index in range(len(messages) - 1, -1, -1) if messages[index].role == "assistant"),
            None,
        )
        if last_reply is None:
            return
        answered = {
            block.tool_use_id
            for message in messages[last_reply + 1:]
            for block in message.tool_results()
        }
        for tool_use in messages[last_reply].tool_uses():
            if tool_use.id not in answered:
                self.conversation.append(Message.tool_result(tool_use.id, reason, is_error=True))

    def _check_abort(self, abort_event: asyncio.Event | None) -> None:
        if abort_event is not None and abort_event.is_set():
            log.info("Turn aborted by caller", session_id=self.conversation.session_id)
            raise TurnAborted("Turn aborted by caller")


@dataclass
class SessionRuntime:
    """Everything one session needs to run turns."""

    conversation: Conversation
    provider: LLMProvider
    tools: ToolRegistry
    orchestrator: Orchestrator


class ChatService:
    """Entry point for callers: one runtime per session, created on demand.

    Sessions run fully in parallel; turns within one session are serialized
    by the conversation lock in arrival order.
    """

    def __init__(
        self,
        config: Config | None = None,
        session_manager: SessionManager | None = None,
        privileged_input: PrivilegedInputChannel | None = None,
        provider_factory: Callable[[], LLMProvider] | None = None,
        registry_factory: Callable[[], ToolRegistry] | None = None,
        file_tree: Callable[[Path], str] | None = None,
        instructions: InstructionLoader | None = None,
        tool_output_callback: ToolCallback | None = None,
    ):
        self.config = config or get_config()
        self.session_manager = session_manager
        self.privileged_input = privileged_input
        self._provider_factory = provider_factory or self._default_provider
        self._registry_factory = registry_factory or self._default_registry
        self._file_tree = file_tree
        self._instructions = instructions or InstructionLoader()
        self._tool_output_callback = tool_output_callback
        self._runtimes: dict[str, SessionRuntime] = {}
        self._lock = asyncio.Lock()
        # Per-session creation locks so sessions initialize in parallel
        self._creating: dict[str, asyncio.Lock] = {}

    def _default_provider(self) -> LLMProvider:
        model = self.config.model
        return create_provider(
            provider=model.provider,
            model=model.model,
            api_key=model.api_key or None,
            base_url=model.base_url or None,
            max_output_tokens=model.max_output_tokens,
            temperature=model.temperature,
        )

    def _default_registry(self) -> ToolRegistry:
        return build_default_registry(self.config, privileged_input=self.privileged_input)

    async def _get_runtime(self, session_id: str) -> SessionRuntime:
        async with self._lock:
            runtime = self._runtimes.get(session_id)
            if runtime is not None:
                return runtime
            session_lock = self._creating.setdefault(session_id, asyncio.Lock())

        async with session_lock:
            async with self._lock:
                runtime = self._runtimes.get(session_id)
                if runtime is not None:
                    return runtime

            runtime = await self._create_runtime(session_id)

            async with self._lock:
                self._runtimes[session_id] = runtime
                self._creating.pop(session_id, None)
                log.info("Created session runtime", session_id=session_id, sessions=len(self._runtimes))
            return runtime

    async def _create_runtime(self, session_id: str) -> SessionRuntime:
        conversation = None
        if self.session_manager is not None:
            conversation = await self.session_manager.load_conversation(session_id)
        if conversation is None:
            conversation = Conversation(session_id)

        provider = self._provider_factory()
        tools = self._registry_factory()
        orchestrator = Orchestrator(
            conversation=conversation,
            provider=provider,
            tools=tools,
            max_context=self.config.context.max_tokens,
            max_tool_iterations=self.config.loop.max_tool_iterations,
            tool_output_callback=self._tool_output_callback,
        )
        return SessionRuntime(
            conversation=conversation,
            provider=provider,
            tools=tools,
            orchestrator=orchestrator,
        )

    def _render_system_prompt(self, runtime: SessionRuntime) -> str:
        return self._instructions.system_prompt(runtime.tools.project_root, self._file_tree)

    async def submit_user_message(
        self,
        session_id: str,
        message: Message | str,
        abort_event: asyncio.Event | None = None,
    ) -> Message:
        """Run one user turn and return the final assistant message."""
        if isinstance(message, str):
            message = Message.user_text(message)
        runtime = await self._get_runtime(session_id)

        async with runtime.conversation.lock:
            runtime.orchestrator.system_prompt = self._render_system_prompt(runtime)
            try:
                return await runtime.orchestrator.run_turn(message, abort_event=abort_event)
            finally:
                await self._persist(runtime.conversation)

    async def get_messages(self, session_id: str) -> list[Message]:
        """Full message log of a session."""
        runtime = await self._get_runtime(session_id)
        return runtime.conversation.messages

    async def clear(self, session_id: str) -> None:
        """Reset a session's conversation to empty."""
        runtime = await self._get_runtime(session_id)
        async with runtime.conversation.lock:
            runtime.conversation.clear()
            if self.session_manager is not None:
                await self.session_manager.delete_conversation(session_id)
        log.info("Cleared conversation", session_id=session_id)

    async def _persist(self, conversation: Conversation) -> None:
        if self.session_manager is None or not self.config.session.persist:
            return
        await self.session_manager.save_conversation(conversation)

    async def close(self) -> None:
        """Close every provider and the session store."""
        async with self._lock:
            runtimes = list(self._runtimes.values())
            self._runtimes.clear()
        for runtime in runtimes:
            await runtime.provider.close()
        if self.session_manager is not None:
            await self.session_manager.close()
