"""Tool registry — registration, argument validation, dispatch, error isolation.

Every tool module exposes a TOOLS list of dicts with name, description,
input_model (a pydantic model, or None for no arguments) and function.
Handlers receive the shared ToolContext first, then the validated fields.

Failures never leave execute(): unknown names, bad JSON, validation
errors, timeouts and handler exceptions all come back as a JSON failure
payload the model can read and correct.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ValidationError

log = logging.getLogger(__name__)

_EMPTY_SCHEMA = {"type": "object", "properties": {}}


@dataclass
class ToolContext:
    """Handles shared by every tool invocation of one identity."""

    instance: Any
    storage: Any
    transport: Any = None
    knowledge: Any = None
    memory: Any = None
    logger: logging.Logger = field(default_factory=lambda: log)
    timezone: str = "Asia/Tokyo"


def failure(error: str, **extra: Any) -> dict:
    payload = {"success": False, "error": error}
    payload.update(extra)
    return payload


def _format_validation_error(e: ValidationError) -> str:
    parts = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "arguments"
        parts.append(f"{loc}: {err.get('msg', 'invalid')}")
    return "; ".join(parts)


class ToolRegistry:
    """Registers tool functions and dispatches calls from the agentic loop."""

    def __init__(self, truncation_limit: int = 30000, tool_timeout: float = 60.0):
        self._tools: dict[str, dict] = {}
        self.truncation_limit = truncation_limit
        self.tool_timeout = tool_timeout

    def register(self, name: str, description: str,
                 input_model: type[BaseModel] | None,
                 func: Callable[..., Any]) -> None:
        """Register a tool function."""
        self._tools[name] = {
            "name": name,
            "description": description,
            "input_model": input_model,
            "function": func,
        }

    def register_many(self, tools: list[dict]) -> None:
        """Register multiple tools from a TOOLS list."""
        for t in tools:
            self.register(
                name=t["name"],
                description=t["description"],
                input_model=t.get("input_model"),
                func=t["function"],
            )

    def get_schemas(self) -> list[dict]:
        """Return tool schemas for the provider (without function references)."""
        schemas = []
        for t in self._tools.values():
            model = t["input_model"]
            schemas.append({
                "name": t["name"],
                "description": t["description"],
                "input_schema": model.model_json_schema() if model else dict(_EMPTY_SCHEMA),
            })
        return schemas

    @property
    def tool_names(self) -> list[str]:
        return list(self._tools.keys())

    def _finish(self, result: Any) -> str:
        result_str = json.dumps(result, ensure_ascii=False, default=str)
        if len(result_str) > self.truncation_limit:
            result_str = result_str[:self.truncation_limit] + \
                f"\n[truncated at {self.truncation_limit} chars]"
        return result_str

    def _parse(self, name: str, arguments: str | dict | None) -> dict:
        if isinstance(arguments, dict):
            return arguments
        if arguments is None or not arguments.strip():
            return {}
        parsed = json.loads(arguments)
        if not isinstance(parsed, dict):
            raise ValueError(f"Arguments for '{name}' must be a JSON object")
        return parsed

    async def execute(self, name: str, arguments: str | dict | None,
                      ctx: ToolContext) -> str:
        """Execute a tool call; always returns a JSON string."""
        if name not in self._tools:
            log.warning("Unknown tool requested: %s", name)
            return self._finish(failure(
                f"Function '{name}' is not registered",
                available_functions=self.tool_names,
            ))

        tool = self._tools[name]
        try:
            raw = self._parse(name, arguments)
        except json.JSONDecodeError as e:
            log.warning("Tool %s received malformed JSON: %s", name, e)
            return self._finish(failure(f"Invalid JSON arguments for '{name}': {e.msg}"))
        except ValueError as e:
            return self._finish(failure(str(e)))

        model = tool["input_model"]
        try:
            kwargs = dict(model.model_validate(raw)) if model else {}
        except ValidationError as e:
            log.warning("Tool %s argument validation failed: %s", name, e)
            return self._finish(failure(
                f"Invalid arguments for '{name}': {_format_validation_error(e)}"
            ))

        func = tool["function"]
        try:
            if inspect.iscoroutinefunction(func):
                call = func(ctx, **kwargs)
            else:
                call = asyncio.to_thread(func, ctx, **kwargs)
            result = await asyncio.wait_for(call, timeout=self.tool_timeout)
        except TimeoutError:
            log.error("Tool %s timed out after %.0fs", name, self.tool_timeout)
            return self._finish(failure(
                f"Function '{name}' timed out after {self.tool_timeout:.0f}s"
            ))
        except Exception as e:
            log.error("Tool %s failed: %s", name, e, exc_info=True)
            return self._finish(failure(f"Failed to execute function '{name}'", details=str(e)))

        return self._finish(result)
