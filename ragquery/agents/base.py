from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from loguru import logger

from ragquery.config import settings
from ragquery.tools.toolbox import ToolExecutor

if TYPE_CHECKING:
    from ragquery.llm_client import LLMGateway

BUDGET_EXHAUSTED_ANSWER = (
    "I'm sorry, I couldn't finish working out an answer within the allowed number of steps. "
    "Please try rephrasing or narrowing your question."
)
EMPTY_RESPONSE_ANSWER = "Sorry, I couldn't generate a response."


@dataclass(slots=True)
class LoopResult:
    answer: str
    rounds: int
    exhausted: bool = False


def parse_arguments(raw: Any) -> dict[str, Any]:
    """Tool-call arguments as a dict; anything malformed becomes ``{}``."""
    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, str) or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(f"Malformed tool arguments, using empty arguments: {raw[:200]}")
        return {}
    return parsed if isinstance(parsed, dict) else {}


class ToolLoop:
    """Bounded chat/tool-call loop.

    Each round sends the whole history plus the tool schema. Text content
    ends the loop; tool calls are executed, their results appended, and the
    next round starts. Running out of rounds yields an apology, not an error.
    """

    def __init__(
        self,
        gateway: LLMGateway,
        executor: ToolExecutor | None = None,
        max_rounds: int | None = None,
        should_continue: Callable[[], bool] | None = None,
        on_status: Callable[[str], Awaitable[Any]] | None = None,
    ):
        self.gateway = gateway
        self.executor = executor or ToolExecutor()
        self.max_rounds = max_rounds or settings.max_tool_rounds
        self.should_continue = should_continue or (lambda: True)
        self.on_status = on_status

    async def _status(self, message: str) -> None:
        if self.on_status is not None:
            await self.on_status(message)

    async def run_tool(self, name: str, args: dict[str, Any]) -> str:
        # tools are synchronous; keep them off the shared event loop
        try:
            return await asyncio.to_thread(self.executor.execute, name, args)
        except Exception as e:
            logger.info(f"Tool {name} failed: {e}")
            return f"Error: {e}"

    async def run(self, messages: list[dict[str, Any]], model_id: str) -> LoopResult:
        history = list(messages)

        for round_no in range(1, self.max_rounds + 1):
            if round_no > 1 and not self.should_continue():
                logger.info("Consumer went away; skipping further tool rounds")
                return LoopResult(BUDGET_EXHAUSTED_ANSWER, round_no - 1, exhausted=True)

            response = await self.gateway.chat(
                model_id, history, tools=self.executor.definitions, caller="tool_loop"
            )
            choices = response.get("choices") or [{}]
            message = choices[0].get("message") or {}
            content = message.get("content")
            tool_calls = message.get("tool_calls") or []

            if isinstance(content, str) and content.strip():
                return LoopResult(content.strip(), round_no)
            if not tool_calls:
                return LoopResult(EMPTY_RESPONSE_ANSWER, round_no)

            history.append({"role": "assistant", "content": content or "", "tool_calls": tool_calls})
            for call in tool_calls:
                function = call.get("function") or {}
                name = function.get("name", "")
                args = parse_arguments(function.get("arguments"))
                await self._status(f"Running tool {name}")
                history.append(
                    {
                        "role": "tool",
                        "tool_call_id": call.get("id", ""),
                        "name": name,
                        "content": await self.run_tool(name, args),
                    }
                )

        logger.warning(f"Tool loop exhausted its budget of {self.max_rounds} rounds")
        return LoopResult(BUDGET_EXHAUSTED_ANSWER, self.max_rounds, exhausted=True)
