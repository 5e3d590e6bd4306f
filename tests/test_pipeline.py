"""Tests for SessionPipeline orchestration."""

from __future__ import annotations

import asyncio

import httpx
import pytest
from conftest import FakeCompletionClient, FakeMessenger, completion_body, error_body, make_exchange

from qq_relay.config import load_config
from qq_relay.core.store import ConversationStore
from qq_relay.pipeline import PipelineOutcome, SessionPipeline
from qq_relay.providers.openai import OpenAICompletionClient
from qq_relay.types import CompletionServiceError, Role


@pytest.mark.asyncio
async def test_plain_reply_recorded(pipeline, completion_client, messenger, store):
    outcome = await pipeline.handle_private_message(1001, "hello")
    assert outcome is PipelineOutcome.REPLIED
    assert messenger.sent == [(1001, "Hello! I'm a test assistant.")]

    history = store.get_history(1001)
    assert [(e.role, e.content, e.token_cost) for e in history] == [
        (Role.USER, "hello", 12),
        (Role.ASSISTANT, "Hello! I'm a test assistant.", 8),
    ]
    assert completion_client.requests[0].model == "gpt-3.5-turbo"


@pytest.mark.asyncio
async def test_history_sent_on_next_turn(pipeline, completion_client):
    await pipeline.handle_private_message(1, "first")
    await pipeline.handle_private_message(1, "second")
    messages = completion_client.requests[1].messages
    assert [m["content"] for m in messages] == ["first", "Hello! I'm a test assistant.", "second"]


@pytest.mark.asyncio
async def test_sentinel_bypasses_completion(pipeline, completion_client, messenger, store):
    outcome = await pipeline.handle_private_message(1, "无语")
    assert outcome is PipelineOutcome.CANNED
    assert messenger.texts() == ["家人们，谁懂啊！"]
    assert completion_client.requests == []
    assert store.get_history(1) == []


@pytest.mark.asyncio
async def test_too_long_rejected(pipeline, completion_client, messenger, store):
    store.append_exchange(1, *make_exchange(0))
    before = store.get_history(1)

    outcome = await pipeline.handle_private_message(1, "字" * 2334)  # 3501 tokens
    assert outcome is PipelineOutcome.REJECTED
    assert messenger.texts() == ["输入太长了～ 请不要超过 2000 个字符"]
    assert completion_client.requests == []
    assert store.get_history(1) == before


@pytest.mark.asyncio
async def test_empty_message_silent(pipeline, completion_client, messenger):
    outcome = await pipeline.handle_private_message(1, "  [CQ:face,id=178]  ")
    assert outcome is PipelineOutcome.DROPPED
    assert messenger.sent == []
    assert completion_client.requests == []


@pytest.mark.asyncio
async def test_escalation_sends_notice(pipeline, completion_client, messenger):
    outcome = await pipeline.handle_private_message(1, "/GPT4 hello")
    assert outcome is PipelineOutcome.REPLIED
    assert messenger.texts() == [
        "本次回答将使用 GPT-4o 模型，请稍等..",
        "Hello! I'm a test assistant.",
    ]
    request = completion_client.requests[0]
    assert request.model == "gpt-4o"
    assert request.messages[-1] == {"role": "user", "content": "hello"}


@pytest.mark.asyncio
async def test_image_query(pipeline, completion_client, messenger, store):
    store.append_exchange(1, *make_exchange(0))
    outcome = await pipeline.handle_private_message(
        1, "[CQ:image,file=a.jpg,url=https://img/a.jpg]",
    )
    assert outcome is PipelineOutcome.REPLIED
    assert messenger.texts()[0] == "已触发老鼠识图，请稍等～"

    request = completion_client.requests[0]
    assert request.model == "gpt-4o"
    assert len(request.messages) == 1
    blocks = request.messages[0]["content"]
    assert blocks[0]["text"] == "请描述这张图片"
    assert blocks[1]["image_url"]["url"] == "https://img/a.jpg"

    # The exchange is still recorded after the prior round
    history = store.get_history(1)
    assert history[-2].content == "请描述这张图片"
    assert len(history) == 4


@pytest.mark.asyncio
async def test_upstream_error_relayed(config, store, messenger):
    client = FakeCompletionClient(bodies=[error_body("Rate limit reached")])
    pipeline = SessionPipeline(config, store, client, messenger)
    outcome = await pipeline.handle_private_message(1, "hi")
    assert outcome is PipelineOutcome.UPSTREAM_ERROR
    assert messenger.texts() == ["Rate limit reached"]
    assert store.get_history(1) == []


@pytest.mark.asyncio
async def test_no_choices_no_reply(config, store, messenger):
    client = FakeCompletionClient(bodies=[{"choices": [], "usage": {}}])
    pipeline = SessionPipeline(config, store, client, messenger)
    outcome = await pipeline.handle_private_message(1, "hi")
    assert outcome is PipelineOutcome.EMPTY
    assert messenger.sent == []
    assert store.get_history(1) == []


@pytest.mark.asyncio
async def test_transport_failure_no_reply(config, store, messenger, metrics):
    client = FakeCompletionClient(exc=CompletionServiceError("connection refused"))
    pipeline = SessionPipeline(config, store, client, messenger, metrics=metrics)
    outcome = await pipeline.handle_private_message(1, "hi")
    assert outcome is PipelineOutcome.FAILED
    assert messenger.sent == []
    assert store.get_history(1) == []
    assert metrics.snapshot()["outcomes"] == {"failed": 1}


@pytest.mark.asyncio
async def test_malformed_completion_body_fails(config, store, messenger, metrics):
    transport = httpx.MockTransport(
        lambda r: httpx.Response(200, json={"choices": [{"message": "hi"}]}),
    )
    client = OpenAICompletionClient(api_key="sk-test", transport=transport)
    pipeline = SessionPipeline(config, store, client, messenger, metrics=metrics)
    outcome = await pipeline.handle_private_message(1, "hi")
    await client.aclose()
    assert outcome is PipelineOutcome.FAILED
    assert messenger.sent == []
    assert store.get_history(1) == []
    assert metrics.snapshot()["outcomes"] == {"failed": 1}


@pytest.mark.asyncio
async def test_completion_timeout(store, messenger):
    cfg = load_config(config_dict={"openai": {"timeout": 0.05}}, env={})
    client = FakeCompletionClient(delay=1.0)
    pipeline = SessionPipeline(cfg, store, client, messenger)
    outcome = await pipeline.handle_private_message(1, "hi")
    assert outcome is PipelineOutcome.FAILED
    assert messenger.sent == []


@pytest.mark.asyncio
async def test_delivery_failure_is_not_fatal(config, store, completion_client):
    messenger = FakeMessenger(fail=True)
    pipeline = SessionPipeline(config, store, completion_client, messenger)
    outcome = await pipeline.handle_private_message(1, "/GPT4 hi")
    # Notice and reply were both attempted once, no retry
    assert len(messenger.sent) == 2
    assert outcome is PipelineOutcome.REPLIED
    assert len(store.get_history(1)) == 2


@pytest.mark.asyncio
async def test_reset_clears_history(pipeline, completion_client, messenger, store):
    await pipeline.handle_private_message(1, "hello")
    outcome = await pipeline.handle_private_message(1, "/reset")
    assert outcome is PipelineOutcome.RESET
    assert store.get_history(1) == []
    assert messenger.texts()[-1] == "已清空对话记录～"
    assert len(completion_client.requests) == 1


@pytest.mark.asyncio
async def test_concurrent_messages_same_user(config, messenger):
    store = ConversationStore(config.history)
    client = FakeCompletionClient(bodies=[completion_body("ok")], delay=0.01)
    pipeline = SessionPipeline(config, store, client, messenger)
    outcomes = await asyncio.gather(*(
        pipeline.handle_private_message(5, f"message {i}") for i in range(12)
    ))
    assert all(o is PipelineOutcome.REPLIED for o in outcomes)
    history = store.get_history(5)
    assert len(history) == 10
    assert len(messenger.sent) == 12


@pytest.mark.asyncio
async def test_metrics_recorded(pipeline, metrics):
    await pipeline.handle_private_message(1, "hello")
    await pipeline.handle_private_message(1, "无语")
    snap = metrics.snapshot()
    assert snap["outcomes"] == {"replied": 1, "canned": 1}
    assert snap["prompt_tokens"] == 12
    assert snap["completion_tokens"] == 8
