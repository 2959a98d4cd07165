"""OpenAI Responses API provider.

Server-side conversation state: each turn sends only the new input items
plus the previous response id. The SDK client is synchronous and runs in
a worker thread.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import openai

from usage import TokenUsage

from . import CompletionResponse, FunctionCall, OtherItem, OutputMessage

log = logging.getLogger(__name__)


class OpenAIResponsesProvider:
    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str = "",
        temperature: float = 0.3,
        top_p: float = 0.95,
        max_output_tokens: int | None = None,
        timeout: float = 120.0,
    ):
        kwargs: dict = {"api_key": api_key or "not-needed", "timeout": timeout}
        if base_url:
            kwargs["base_url"] = base_url
        self.client = openai.OpenAI(**kwargs)
        self.model = model
        self.temperature = temperature
        self.top_p = top_p
        self.max_output_tokens = max_output_tokens

    def format_tools(self, tools: list[dict]) -> list[dict]:
        formatted = []
        for t in tools:
            formatted.append({
                "type": "function",
                "name": t["name"],
                "description": t["description"],
                "parameters": t["input_schema"],
                "strict": False,
            })
        return formatted

    @staticmethod
    def _convert_output_item(item: Any) -> Any:
        item_type = getattr(item, "type", "")
        if item_type == "function_call":
            return FunctionCall(
                call_id=item.call_id,
                name=item.name,
                arguments=item.arguments or "{}",
            )
        if item_type == "message":
            parts = []
            for part in item.content or []:
                part_type = getattr(part, "type", "")
                if part_type == "output_text":
                    parts.append(part.text)
                elif part_type == "refusal":
                    parts.append(f"<refusal>{part.refusal}</refusal>")
            return OutputMessage(role=getattr(item, "role", "assistant"), text="\n\n".join(parts))
        return OtherItem(type=item_type or "unknown")

    @staticmethod
    def _convert_usage(u: Any) -> TokenUsage:
        if u is None:
            return TokenUsage()
        in_details = getattr(u, "input_tokens_details", None)
        out_details = getattr(u, "output_tokens_details", None)
        return TokenUsage(
            input_tokens=u.input_tokens or 0,
            cached_tokens=(getattr(in_details, "cached_tokens", 0) or 0) if in_details else 0,
            output_tokens=u.output_tokens or 0,
            reasoning_tokens=(getattr(out_details, "reasoning_tokens", 0) or 0) if out_details else 0,
            total_tokens=u.total_tokens or 0,
        )

    async def complete(
        self,
        input_items: list[dict],
        tools: list[dict],
        previous_response_id: str | None = None,
    ) -> CompletionResponse:
        """Call the Responses API for one turn."""
        params: dict[str, Any] = {
            "model": self.model,
            "input": input_items,
            "store": True,
            "temperature": self.temperature,
            "top_p": self.top_p,
            "truncation": "auto",
        }
        if tools:
            params["tools"] = tools
            params["tool_choice"] = "auto"
            params["parallel_tool_calls"] = True
        if previous_response_id:
            params["previous_response_id"] = previous_response_id
        if self.max_output_tokens:
            params["max_output_tokens"] = self.max_output_tokens

        response = await asyncio.to_thread(self.client.responses.create, **params)

        return CompletionResponse(
            id=getattr(response, "id", None),
            output=[self._convert_output_item(item) for item in response.output or []],
            usage=self._convert_usage(getattr(response, "usage", None)),
        )
