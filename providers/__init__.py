"""Completion service interface and shared types.

Defines the contract between the tool-calling loop and the language
completion backend. Conversation continuation is an opaque response id
handed back on the next request; providers must not assume anything else
about the session.

Input items use the Responses wire shape:
    {"role": "developer" | "user", "content": str}
    {"type": "function_call", "call_id": str, "name": str, "arguments": str}
    {"type": "function_call_output", "call_id": str, "output": str}
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from usage import TokenUsage

log = logging.getLogger(__name__)


@dataclass
class FunctionCall:
    call_id: str
    name: str
    arguments: str  # raw JSON text as produced by the model


@dataclass
class OutputMessage:
    role: str
    text: str


@dataclass
class OtherItem:
    """Output item type the loop doesn't act on (reasoning, refusals, ...)."""
    type: str


@dataclass
class CompletionResponse:
    id: str | None
    output: list[Any]
    usage: TokenUsage = field(default_factory=TokenUsage)

    @property
    def function_calls(self) -> list[FunctionCall]:
        return [item for item in self.output if isinstance(item, FunctionCall)]


class CompletionProvider(Protocol):
    """Protocol for completion service implementations."""

    def format_tools(self, tools: list[dict]) -> list[dict]:
        """Convert generic tool schemas to provider-specific format."""
        ...

    async def complete(
        self,
        input_items: list[dict],
        tools: list[dict],
        previous_response_id: str | None = None,
    ) -> CompletionResponse:
        """Send one turn, return normalized response."""
        ...


def create_provider(model_config: dict, api_key: str = "") -> CompletionProvider:
    """Factory: create provider from the [model] config section."""
    provider_type = model_config.get("provider", "")

    if provider_type == "openai-responses":
        from .openai_responses import OpenAIResponsesProvider
        return OpenAIResponsesProvider(
            api_key=api_key,
            model=model_config["model"],
            base_url=model_config.get("base_url", ""),
            temperature=model_config.get("temperature", 0.3),
            top_p=model_config.get("top_p", 0.95),
            max_output_tokens=model_config.get("max_output_tokens"),
            timeout=float(model_config.get("call_timeout", 120)),
        )
    raise ValueError(f"Unknown provider type: {provider_type!r}")
