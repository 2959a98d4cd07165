"""Thinking engine — one think cycle for one identity.

Builds the first turn (developer message plus priming tool calls executed
eagerly so the model starts with its situation in context), runs the
tool-calling loop and mirrors every rendered item to the identity's
thinking channel.
"""

from __future__ import annotations

import json
import logging
import sys

from agentic import ConversationSession, run_agentic_loop
from channels.discord import truncate_message
from tools import ToolContext, ToolRegistry
from tools import chat, clock, context, knowledge_tools, memory_tools, tasks, think
from usage import TokenUsage

log = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = """\
You are {name}, an autonomous agent that is woken periodically.

This is not a conversation. Nobody is waiting for a reply. Observe your
situation, decide what to do and act. Actions are performed only by
calling tools; text you write is your private inner monologue.

Continue from where you left off: recall your context, check the time and
your notifications, then decide. Before you finish, store a short context
note for your next awakening."""


def create_registry(memory_enabled: bool = True, truncation_limit: int = 30000,
                    tool_timeout: float = 60.0) -> ToolRegistry:
    """Registry with every tool an identity can use."""
    registry = ToolRegistry(truncation_limit=truncation_limit, tool_timeout=tool_timeout)
    registry.register_many(clock.TOOLS)
    registry.register_many(chat.TOOLS)
    registry.register_many(context.TOOLS)
    registry.register_many(knowledge_tools.TOOLS)
    if memory_enabled:
        registry.register_many(memory_tools.TOOLS)
    registry.register_many(tasks.TOOLS)
    registry.register_many(think.TOOLS)
    return registry


class ThinkingStream:
    """Posts rendered loop items to the thinking channel.

    Independent of logging: delivery failures go to stderr only.
    """

    def __init__(self, transport, channel_id: str):
        self.transport = transport
        self.channel_id = channel_id

    async def send(self, content: str) -> None:
        if not content or not self.channel_id:
            return
        try:
            await self.transport.send(self.channel_id, truncate_message(content))
        except Exception as e:
            print(f"Failed to send thinking to chat: {e}", file=sys.stderr)


class ThinkingEngine:
    def __init__(
        self,
        provider,
        registry: ToolRegistry,
        ctx: ToolContext,
        max_turns: int = 10,
        call_timeout: float = 120.0,
        loop_timeout: float = 600.0,
        stream: ThinkingStream | None = None,
    ):
        self.provider = provider
        self.registry = registry
        self.ctx = ctx
        self.max_turns = max_turns
        self.call_timeout = call_timeout
        self.loop_timeout = loop_timeout
        self.stream = stream

    def developer_message(self) -> dict:
        instance = self.ctx.instance
        prompt = instance.system_prompt or DEFAULT_SYSTEM_PROMPT.format(name=instance.name)
        return {"role": "developer", "content": prompt}

    def priming_calls(self) -> list[tuple[str, dict]]:
        calls = [
            ("recall_context", {}),
            ("get_current_time", {"timezone": self.ctx.timezone}),
            ("check_notifications", {}),
        ]
        if "recall_latest_memory" in self.registry.tool_names:
            calls.append(("recall_latest_memory", {}))
        return calls

    async def build_initial_input(self) -> list[dict]:
        items = [self.developer_message()]
        for name, args in self.priming_calls():
            arguments = json.dumps(args)
            # call_id is the tool name; unique within the priming set.
            items.append({
                "type": "function_call",
                "call_id": name,
                "name": name,
                "arguments": arguments,
            })
            items.append({
                "type": "function_call_output",
                "call_id": name,
                "output": await self.registry.execute(name, arguments, self.ctx),
            })
        return items

    async def think(self) -> TokenUsage:
        items = await self.build_initial_input()
        return await run_agentic_loop(
            provider=self.provider,
            input_items=items,
            registry=self.registry,
            ctx=self.ctx,
            max_turns=self.max_turns,
            timeout=self.call_timeout,
            loop_timeout=self.loop_timeout,
            on_render=self.stream.send if self.stream else None,
            session=ConversationSession(),
        )
