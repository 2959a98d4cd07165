"""Scheduled tasks — named reminders the identity sets for its future self.

A task is {name, content, execution_time}; names are unique. The run
preconditions treat a task whose execution time falls before the next
alarm as due. Tasks disappear when completed or deleted.
"""

from __future__ import annotations

from datetime import UTC, datetime

from pydantic import AwareDatetime, BaseModel, Field

from . import failure

STORAGE_KEY = "tasks"
MAX_NAME_LENGTH = 64
MAX_CONTENT_LENGTH = 500


def parse_execution_time(value: str) -> datetime:
    dt = datetime.fromisoformat(value)
    return dt if dt.tzinfo else dt.replace(tzinfo=UTC)


async def load_tasks(storage) -> list[dict]:
    return list(await storage.get(STORAGE_KEY, []) or [])


async def save_tasks(storage, tasks: list[dict]) -> None:
    await storage.put(STORAGE_KEY, tasks)


def find_due_task(tasks: list[dict], before: datetime) -> dict | None:
    """First task whose execution time is strictly before `before`."""
    for task in tasks:
        if parse_execution_time(task["execution_time"]) < before:
            return task
    return None


def sort_tasks(tasks: list[dict]) -> list[dict]:
    return sorted(tasks, key=lambda t: parse_execution_time(t["execution_time"]))


# ─── Tools ───────────────────────────────────────────────────────

_TIME_HELP = "Execution time in ISO 8601 format with timezone offset. Must be in the future."


class CreateTaskArgs(BaseModel):
    name: str = Field(min_length=1, max_length=MAX_NAME_LENGTH,
                      description="Task name (unique key, max 64 characters)")
    content: str = Field(min_length=1, max_length=MAX_CONTENT_LENGTH,
                         description="Task content (max 500 characters)")
    execution_time: AwareDatetime = Field(description=_TIME_HELP)


async def tool_create_task(ctx, name: str, content: str, execution_time: datetime) -> dict:
    if execution_time < datetime.now(UTC):
        return failure("Execution time cannot be in the past")
    try:
        tasks = await load_tasks(ctx.storage)
        if any(t["name"] == name for t in tasks):
            return failure(f'Task with name "{name}" already exists')
        tasks.append({
            "name": name,
            "content": content,
            "execution_time": execution_time.isoformat(),
        })
        await save_tasks(ctx.storage, tasks)
    except Exception as e:
        ctx.logger.error("Error creating task: %s", e)
        return failure("Failed to create task")
    return {"success": True}


async def tool_list_tasks(ctx) -> dict:
    try:
        tasks = await load_tasks(ctx.storage)
    except Exception as e:
        ctx.logger.error("Error listing tasks: %s", e)
        return failure("Failed to list tasks")
    return {"success": True, "tasks": sort_tasks(tasks)}


class UpdateTaskArgs(BaseModel):
    name: str = Field(description="Name of the task to update")
    content: str | None = Field(None, min_length=1, max_length=MAX_CONTENT_LENGTH,
                                description="New task content (max 500 characters)")
    execution_time: AwareDatetime | None = Field(None, description=_TIME_HELP)


async def tool_update_task(ctx, name: str, content: str | None = None,
                           execution_time: datetime | None = None) -> dict:
    if content is None and execution_time is None:
        return failure("At least one of content or execution_time must be provided")
    if execution_time is not None and execution_time < datetime.now(UTC):
        return failure("Execution time cannot be in the past")
    try:
        tasks = await load_tasks(ctx.storage)
        for i, task in enumerate(tasks):
            if task["name"] == name:
                break
        else:
            return failure(f'Task with name "{name}" not found')

        updated = {
            "name": name,
            "content": content if content is not None else task["content"],
            "execution_time": (execution_time.isoformat() if execution_time is not None
                               else task["execution_time"]),
        }
        tasks[i] = updated
        await save_tasks(ctx.storage, tasks)
    except Exception as e:
        ctx.logger.error("Error updating task: %s", e)
        return failure("Failed to update task")
    return {"success": True, "updated_task": updated}


class TaskNameArgs(BaseModel):
    name: str = Field(description="Task name")


async def _remove_task(ctx, name: str, action: str) -> dict:
    try:
        tasks = await load_tasks(ctx.storage)
        if not any(t["name"] == name for t in tasks):
            return failure(f'Task with name "{name}" not found')
        await save_tasks(ctx.storage, [t for t in tasks if t["name"] != name])
    except Exception as e:
        ctx.logger.error("Error removing task (%s): %s", action, e)
        return failure(f"Failed to {action} task")
    return {"success": True}


async def tool_delete_task(ctx, name: str) -> dict:
    return await _remove_task(ctx, name, "delete")


async def tool_complete_task(ctx, name: str) -> dict:
    return await _remove_task(ctx, name, "complete")


TOOLS = [
    {
        "name": "create_task",
        "description": "Create a new task with name, content, and execution time.",
        "input_model": CreateTaskArgs,
        "function": tool_create_task,
    },
    {
        "name": "list_tasks",
        "description": "List all tasks, earliest execution time first.",
        "input_model": None,
        "function": tool_list_tasks,
    },
    {
        "name": "update_task",
        "description": "Update an existing task. All fields are optional except name.",
        "input_model": UpdateTaskArgs,
        "function": tool_update_task,
    },
    {
        "name": "delete_task",
        "description": "Delete a task by name.",
        "input_model": TaskNameArgs,
        "function": tool_delete_task,
    },
    {
        "name": "complete_task",
        "description": "Mark a task as done by name. Completed tasks are removed.",
        "input_model": TaskNameArgs,
        "function": tool_complete_task,
    },
]
