"""Bounded tool-calling loop.

Each turn sends the new input items plus the continuation handle to the
completion service, renders what came back, runs every function call
through the tool registry and feeds the outputs into the next turn. The
loop ends when a turn produces no function calls, when max_turns is
reached, or when the loop deadline passes.

Usage is summed across turns and always returned, including on the
truncated paths. A failed or timed-out completion call raises
LoopAborted, which carries the usage spent before the failure.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from providers import CompletionProvider, FunctionCall, OtherItem, OutputMessage
from tools import ToolContext, ToolRegistry
from usage import TokenUsage

log = logging.getLogger(__name__)

MAX_TURNS = 10


@dataclass
class ConversationSession:
    """Opaque continuation handle owned by one loop run."""

    previous_response_id: str | None = None

    def advance(self, response_id: str | None) -> None:
        if response_id:
            self.previous_response_id = response_id


class LoopAborted(Exception):
    """The loop stopped on a completion failure; usage holds what was spent."""

    def __init__(self, message: str, usage: TokenUsage):
        super().__init__(message)
        self.usage = usage


# ─── Rendering ───────────────────────────────────────────────────


def _block(role: str, content: str) -> str:
    return f"[{role}]:\n{content}"


def _pretty_json(text: str) -> str:
    try:
        return json.dumps(json.loads(text), ensure_ascii=False, indent=2)
    except (json.JSONDecodeError, TypeError):
        return str(text)


def render_input_item(item: dict) -> str:
    item_type = item.get("type")
    if item_type == "function_call":
        return f"[function call] {item['call_id']}\n{item['name']}({item.get('arguments', '')})"
    if item_type == "function_call_output":
        return f"[function call output] {item['call_id']}\n{_pretty_json(item['output'])}"
    if "content" in item:
        return _block(item.get("role", "user"), str(item["content"]))
    return f"<{item_type or 'unknown'} />"


def render_output_item(item: Any) -> str:
    if isinstance(item, OutputMessage):
        return _block(item.role, item.text)
    if isinstance(item, FunctionCall):
        return f"[function call] {item.call_id}\n{item.name}({item.arguments})"
    if isinstance(item, OtherItem):
        return f"<{item.type} />"
    return f"<{type(item).__name__} />"


async def _emit(on_render: Callable | None, text: str) -> None:
    log.debug("%s", text)
    if on_render is None or not text:
        return
    if inspect.iscoroutinefunction(on_render):
        await on_render(text)
    else:
        on_render(text)


# ─── Loop ────────────────────────────────────────────────────────


async def run_agentic_loop(
    provider: CompletionProvider,
    input_items: list[dict],
    registry: ToolRegistry,
    ctx: ToolContext,
    max_turns: int = MAX_TURNS,
    timeout: float = 120.0,
    loop_timeout: float = 600.0,
    on_render: Callable | None = None,
    session: ConversationSession | None = None,
) -> TokenUsage:
    """Run the tool-calling loop.

    Args:
        provider: Completion service.
        input_items: First turn input (developer message and priming calls).
        registry: Tools available to the model.
        ctx: Shared context handed to every tool call.
        max_turns: Max completion requests.
        timeout: Timeout per completion call in seconds.
        loop_timeout: Deadline for the whole loop in seconds (0 = none).
        on_render: Callback(str) receiving each rendered input/output item.
        session: Continuation handle; a fresh one is created if omitted.

    Returns:
        Token usage summed over all turns.
    """
    max_turns = max(1, max_turns)
    session = session or ConversationSession()
    fmt_tools = provider.format_tools(registry.get_schemas())
    deadline = time.monotonic() + loop_timeout if loop_timeout > 0 else None
    usage = TokenUsage()
    items = list(input_items)

    for turn in range(1, max_turns + 1):
        call_timeout = timeout
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                log.warning("Loop deadline (%.0fs) passed before turn %d", loop_timeout, turn)
                return usage
            call_timeout = min(timeout, remaining)

        for item in items:
            await _emit(on_render, render_input_item(item))

        try:
            response = await asyncio.wait_for(
                provider.complete(items, fmt_tools, session.previous_response_id),
                timeout=call_timeout,
            )
        except TimeoutError as e:
            log.error("Completion call timed out after %.0fs (turn %d)", call_timeout, turn)
            raise LoopAborted(f"completion call timed out on turn {turn}", usage) from e
        except Exception as e:
            log.error("Completion call failed on turn %d: %s", turn, e)
            raise LoopAborted(f"completion call failed on turn {turn}: {e}", usage) from e

        usage = usage + response.usage
        session.advance(response.id)

        for item in response.output:
            await _emit(on_render, render_output_item(item))

        calls = response.function_calls
        if not calls:
            log.info("Loop finished after %d turn(s), %d tokens", turn, usage.total_tokens)
            return usage

        # Sequential: tools share the identity's state.
        items = []
        for call in calls:
            log.info("Tool call: %s(%s)", call.name, _truncate_args(call.arguments))
            output = await registry.execute(call.name, call.arguments, ctx)
            items.append({
                "type": "function_call_output",
                "call_id": call.call_id,
                "output": output,
            })

    for item in items:
        await _emit(on_render, render_input_item(item))
    log.warning("Max turns (%d) reached; %d tool output(s) not sent back",
                max_turns, len(items))
    return usage


def _truncate_args(args: str, max_len: int = 200) -> str:
    """Truncate tool arguments for logging."""
    s = str(args)
    return s[:max_len] + "..." if len(s) > max_len else s
