"""Shared fixtures for qq-relay tests."""

from __future__ import annotations

import asyncio

import pytest

from qq_relay.config import load_config
from qq_relay.core.store import ConversationStore
from qq_relay.metrics import RelayMetrics
from qq_relay.pipeline import SessionPipeline
from qq_relay.types import (
    CompletionRequest,
    CompletionResponse,
    DeliveryError,
    HistoryEntry,
    RelayConfig,
    Role,
)


def completion_body(
    content: str = "Hello! I'm a test assistant.",
    prompt_tokens: int = 12,
    completion_tokens: int = 8,
    model: str = "gpt-3.5-turbo",
) -> dict:
    return {
        "id": "chatcmpl-test",
        "object": "chat.completion",
        "model": model,
        "choices": [{
            "index": 0,
            "message": {"role": "assistant", "content": content},
            "finish_reason": "stop",
        }],
        "usage": {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        },
    }


def error_body(message: str = "You exceeded your current quota") -> dict:
    return {"error": {"message": message, "type": "insufficient_quota", "param": None, "code": "insufficient_quota"}}


class FakeCompletionClient:
    """Mock completion client that returns canned bodies (no API calls)."""

    def __init__(self, bodies: list[dict] | None = None, exc: Exception | None = None, delay: float = 0.0):
        self.requests: list[CompletionRequest] = []
        self._bodies = bodies or [completion_body()]
        self._exc = exc
        self._delay = delay

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        self.requests.append(request)
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._exc is not None:
            raise self._exc
        idx = min(len(self.requests) - 1, len(self._bodies) - 1)
        return CompletionResponse.from_dict(self._bodies[idx])


class FakeMessenger:
    """Records sent messages; optionally fails every send."""

    def __init__(self, fail: bool = False):
        self.sent: list[tuple[int | str, str]] = []
        self.fail = fail

    async def send_private_message(self, user_id, text: str) -> dict:
        self.sent.append((user_id, text))
        if self.fail:
            raise DeliveryError("gateway unreachable")
        return {"status": "ok", "retcode": 0, "data": {"message_id": len(self.sent)}}

    def texts(self) -> list[str]:
        return [text for _, text in self.sent]


@pytest.fixture
def config() -> RelayConfig:
    return load_config(config_dict={
        "openai": {"api_key": "sk-test", "timeout": 5},
        "gateway": {"timeout": 5},
        "server": {"workers": 2, "queue_size": 8},
    }, env={})


@pytest.fixture
def store(config) -> ConversationStore:
    return ConversationStore(config.history)


@pytest.fixture
def completion_client() -> FakeCompletionClient:
    return FakeCompletionClient()


@pytest.fixture
def messenger() -> FakeMessenger:
    return FakeMessenger()


@pytest.fixture
def metrics() -> RelayMetrics:
    return RelayMetrics()


@pytest.fixture
def pipeline(config, store, completion_client, messenger, metrics) -> SessionPipeline:
    return SessionPipeline(config, store, completion_client, messenger, metrics=metrics)


def make_exchange(i: int, user_cost: int = 10, assistant_cost: int = 20) -> tuple[HistoryEntry, HistoryEntry]:
    return (
        HistoryEntry(Role.USER, f"question {i}", user_cost),
        HistoryEntry(Role.ASSISTANT, f"answer {i}", assistant_cost),
    )

