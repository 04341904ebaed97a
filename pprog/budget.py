"""Token-aware pruning that keeps a conversation inside the context window."""

from typing import Any

from pprog.exceptions import BudgetExceeded
from pprog.llm.base import LLMProvider, estimate_tokens
from pprog.logging import get_logger
from pprog.messages import Message, TextBlock

log = get_logger(__name__)


def split_turns(messages: list[Message]) -> list[list[Message]]:
    """Group messages into turns, each opened by a user text message.

    Anything before the first user text message forms a leading group of its
    own so it can be pruned like any other turn.
    """
    turns: list[list[Message]] = []
    for message in messages:
        if message.is_user_text() or not turns:
            turns.append([message])
        else:
            turns[-1].append(message)
    return turns


def placeholder_message() -> Message:
    """Assistant stand-in for tool exchanges dropped from an open turn."""
    return Message(role="assistant", content=[TextBlock(text="")])


def _has_tool_exchange(turn: list[Message]) -> bool:
    return any(message.tool_uses() or message.is_tool_result() for message in turn[1:])


class TokenBudgeter:
    """Prune whole turns from the front until the conversation fits.

    Holds no conversation state; every call works on the list it is given.
    """

    async def ensure_within_budget(
        self,
        messages: list[Message],
        provider: LLMProvider,
        max_context: int,
        system: str | None = None,
        tools: list[dict[str, Any]] | None = None,
    ) -> list[Message]:
        """Return ``messages`` unchanged if they fit, else a pruned copy.

        ``system`` and ``tools`` are counted as part of every request.

        Raises:
            BudgetExceeded if even the newest turn alone does not fit
        """
        count = await provider.count_tokens(messages, system, tools)
        if count <= max_context:
            return messages

        log.info(
            "Conversation over budget, pruning",
            tokens=count,
            max_context=max_context,
            messages=len(messages),
        )

        pruned = list(messages)
        while count > max_context:
            turns = split_turns(pruned)
            if not turns:
                log.error("System prompt and tools alone exceed context budget", tokens=count, max_context=max_context)
                raise BudgetExceeded(count, max_context)
            if len(turns) > 1:
                turns = self._drop_oldest_turns(turns, count, max_context, system, tools)
            elif _has_tool_exchange(turns[0]):
                turns = [self._collapse_open_turn(turns[0])]
                log.warning("Dropped tool exchanges of the open turn to stay within budget")
            else:
                log.error("Single turn exceeds context budget", tokens=count, max_context=max_context)
                raise BudgetExceeded(count, max_context)

            pruned = [message for turn in turns for message in turn]
            # One confirmation count per pruning pass
            count = await provider.count_tokens(pruned, system, tools)

        log.info(
            "Pruned conversation",
            removed=len(messages) - len(pruned),
            remaining=len(pruned),
            tokens=count,
        )
        return pruned

    @staticmethod
    def _drop_oldest_turns(
        turns: list[list[Message]],
        count: int,
        max_context: int,
        system: str | None,
        tools: list[dict[str, Any]] | None,
    ) -> list[list[Message]]:
        """Drop turns oldest-first using each turn's share of ``count``.

        Always drops at least one turn and never the newest one.
        """
        weights = [estimate_tokens(turn) for turn in turns]
        total_estimate = sum(weights) + estimate_tokens([], system, tools)
        scale = count / total_estimate if total_estimate else 1.0

        projected = float(count)
        dropped = 0
        while dropped < len(turns) - 1 and (dropped == 0 or projected > max_context):
            projected -= weights[dropped] * scale
            dropped += 1
        return turns[dropped:]

    @staticmethod
    def _collapse_open_turn(turn: list[Message]) -> list[Message]:
        """Replace the tool exchanges of an open turn with one placeholder."""
        head = [turn[0]] if turn[0].is_user_text() else []
        return head + [placeholder_message()]
