"""Shared fixtures for the Echo Chamber test suite.

All tests use in-memory fakes or temporary directories.
Nothing touches ~/.chamber/, the chat service or the completion API.
"""

import asyncio
import copy
import json
import logging
import sys
from datetime import UTC, datetime
from pathlib import Path

import pytest

# Add project root to path so imports work
_root = Path(__file__).parent.parent
sys.path.insert(0, str(_root))

from channels import ChatMessage, NotificationDetails  # noqa: E402
from config import InstanceConfig  # noqa: E402
from providers import CompletionResponse  # noqa: E402
from tools import ToolContext  # noqa: E402
from usage import TokenUsage  # noqa: E402


# ─── Fakes ───────────────────────────────────────────────────────

class FakeStorage:
    """In-memory InstanceStorage; values go through JSON like the real one."""

    def __init__(self):
        self.data: dict[str, str] = {}
        self.alarm: datetime | None = None
        self.fail = False

    def _check(self):
        if self.fail:
            raise RuntimeError("storage unavailable")

    async def get(self, key, default=None):
        self._check()
        if key not in self.data:
            return default
        return json.loads(self.data[key])

    async def put(self, key, value):
        self._check()
        self.data[key] = json.dumps(value, ensure_ascii=False)

    async def get_alarm(self):
        return self.alarm

    async def set_alarm(self, when):
        self.alarm = when

    async def delete_alarm(self):
        self.alarm = None


class FakeTransport:
    """Chat transport double. messages are kept newest-first."""

    def __init__(self, unread: int = 0, messages: list[ChatMessage] | None = None):
        self.unread = unread
        self.messages = list(messages or [])
        self.sent: list[tuple[str, str]] = []
        self.reactions: list[tuple[str, str, str]] = []
        self.fail = False
        self.closed = False

    def _check(self):
        if self.fail:
            raise RuntimeError("chat service unavailable")

    async def get_unread_count(self, channel):
        self._check()
        return self.unread

    async def get_notification_details(self, channel):
        self._check()
        return NotificationDetails(
            unread_count=self.unread,
            latest=self.messages[0] if self.messages else None,
        )

    async def read_messages(self, channel, limit):
        self._check()
        return list(reversed(self.messages[:limit]))

    async def send(self, channel, content):
        self._check()
        self.sent.append((channel, content))

    async def react(self, channel, message_id, emoji):
        self._check()
        self.reactions.append((channel, message_id, emoji))

    async def close(self):
        self.closed = True


class FakeProvider:
    """Completion service double replaying a script of responses.

    Script entries are CompletionResponse objects, exceptions to raise, or
    (delay_seconds, response) tuples.
    """

    def __init__(self, script: list | None = None):
        self.script = list(script or [])
        self.calls: list[dict] = []

    def format_tools(self, tools):
        return [{"type": "function", "name": t["name"]} for t in tools]

    async def complete(self, input_items, tools, previous_response_id=None):
        self.calls.append({
            "input": copy.deepcopy(input_items),
            "tools": tools,
            "previous_response_id": previous_response_id,
        })
        if not self.script:
            return CompletionResponse(id=f"resp_{len(self.calls)}", output=[])
        step = self.script.pop(0)
        if isinstance(step, tuple):
            delay, step = step
            await asyncio.sleep(delay)
        if isinstance(step, Exception):
            raise step
        return step


class FakeEmbedder:
    """Deterministic embeddings: explicit vectors, else a letter histogram."""

    def __init__(self, vectors: dict[str, list[float]] | None = None):
        self.vectors = dict(vectors or {})
        self.calls: list[str] = []

    async def embed(self, text):
        self.calls.append(text)
        if text in self.vectors:
            return list(self.vectors[text])
        vec = [0.0] * 26
        for ch in text.lower():
            if "a" <= ch <= "z":
                vec[ord(ch) - ord("a")] += 1.0
        return vec


class FakeEngine:
    """ThinkingEngine double: returns usage or raises."""

    def __init__(self, result=None):
        self.result = result if result is not None else TokenUsage(
            input_tokens=100, cached_tokens=20, output_tokens=50, total_tokens=150,
        )
        self.calls = 0

    async def think(self):
        self.calls += 1
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


def make_message(msg_id: str, author_id: str = "user-1", content: str = "hello",
                 author_name: str = "alice", reactions=None,
                 timestamp: datetime | None = None) -> ChatMessage:
    return ChatMessage(
        id=msg_id,
        author_id=author_id,
        author_name=author_name,
        content=content,
        timestamp=timestamp or datetime(2024, 1, 1, 3, 0, tzinfo=UTC),
        reactions=list(reactions or []),
    )


# ─── Fixtures ────────────────────────────────────────────────────

@pytest.fixture
def instance():
    return InstanceConfig(
        id="echo",
        name="Echo",
        system_prompt="",
        bot_token="bot-token",
        chat_channel_id="chat",
        thinking_channel_id="think",
    )


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def ctx(instance, storage, transport):
    from knowledge import KnowledgeStore

    return ToolContext(
        instance=instance,
        storage=storage,
        transport=transport,
        knowledge=KnowledgeStore(storage),
        memory=None,
        logger=logging.getLogger("chamber.test"),
        timezone="Asia/Tokyo",
    )


@pytest.fixture
def make_echo(instance, storage, transport):
    """Factory for an Echo wired to the fakes."""
    from echo import Echo, Schedule
    from knowledge import KnowledgeStore

    def _make(engine=None, schedule=None, **kwargs):
        return Echo(
            instance,
            storage,
            engine or FakeEngine(),
            transport,
            KnowledgeStore(storage),
            schedule=schedule or Schedule(),
            **kwargs,
        )
    return _make


@pytest.fixture
def minimal_toml_data():
    """Minimal valid config data (as parsed dict, not raw TOML)."""
    return {
        "chamber": {"environment": "production", "timezone": "Asia/Tokyo"},
        "model": {
            "provider": "openai-responses",
            "model": "gpt-test",
            "cost_per_mtok": [1.25, 10.0, 0.125],
        },
        "memory": {"enabled": False},
        "instances": {
            "echo": {
                "name": "Echo",
                "token_env": "TEST_ECHO_TOKEN",
                "chat_channel_id": "111",
                "thinking_channel_id": "222",
            },
        },
        "paths": {
            "state_dir": "/tmp/test-chamber",
            "state_db": "/tmp/test-chamber/state.db",
            "log_file": "/tmp/test-chamber/chamber.log",
        },
    }
