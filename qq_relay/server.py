"""HTTP listener for gateway events.

The gateway POSTs every event to this server. Private messages are queued
for the worker pool and acknowledged immediately; everything else is
acknowledged and ignored. The acknowledgment never depends on the outcome
of processing.

Usage:
    qq-relay -c qq-relay.yaml serve --port 5701
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response

from .core.store import ConversationStore
from .metrics import RelayMetrics
from .pipeline import SessionPipeline
from .providers.onebot import OneBotMessenger
from .providers.openai import OpenAICompletionClient
from .types import CompletionClient, InboundEvent, Messenger, RelayConfig
from .worker import WorkerPool

logger = logging.getLogger(__name__)


def _ack() -> Response:
    return Response(status_code=204)


def create_app(
    config: RelayConfig,
    *,
    completion_client: CompletionClient | None = None,
    messenger: Messenger | None = None,
    store: ConversationStore | None = None,
    metrics: RelayMetrics | None = None,
) -> FastAPI:
    """Create the FastAPI relay application.

    Args:
        config: Loaded relay configuration.
        completion_client: Completion service client. An
            ``OpenAICompletionClient`` is built from ``config.openai`` if None.
        messenger: Outbound messenger. A ``OneBotMessenger`` is built from
            ``config.gateway`` if None.
        store: Conversation store shared by all workers.
        metrics: Event collector backing ``GET /status``.
    """
    owned: list = []
    if completion_client is None:
        completion_client = OpenAICompletionClient(
            base_url=config.openai.base_url,
            api_key=config.openai.api_key,
            proxy=config.openai.proxy,
            timeout=config.openai.timeout,
        )
        owned.append(completion_client)
    if messenger is None:
        messenger = OneBotMessenger(
            base_url=config.gateway.base_url,
            access_token=config.gateway.access_token,
            timeout=config.gateway.timeout,
        )
        owned.append(messenger)

    store = store if store is not None else ConversationStore(config.history)
    metrics = metrics if metrics is not None else RelayMetrics()
    pipeline = SessionPipeline(
        config, store, completion_client, messenger, metrics=metrics,
    )

    async def process(job: tuple[int, str]) -> None:
        user_id, message = job
        await pipeline.handle_private_message(user_id, message)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
        pool = WorkerPool(
            process,
            workers=config.server.workers,
            queue_size=config.server.queue_size,
        )
        pool.start()
        app.state.pool = pool
        try:
            yield
        finally:
            await pool.stop()
            app.state.pool = None
            for client in owned:
                await client.aclose()

    app = FastAPI(title="qq-relay", lifespan=lifespan)
    app.state.pipeline = pipeline
    app.state.store = store
    app.state.metrics = metrics
    app.state.pool = None

    @app.get("/status")
    async def status() -> dict:
        pool: WorkerPool | None = app.state.pool
        return {
            "metrics": metrics.snapshot(),
            "history": store.stats(),
            "queue": {
                "running": bool(pool and pool.running),
                "pending": pool.pending if pool else 0,
            },
        }

    @app.api_route("/{path:path}", methods=["GET", "POST", "PUT", "DELETE", "PATCH"])
    async def handle_event(request: Request, path: str) -> Response:
        if request.method != "POST":
            return _ack()

        body = await request.body()
        try:
            data = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.debug("Ignoring undecodable event body (%d bytes)", len(body))
            return _ack()
        if not isinstance(data, dict):
            return _ack()

        event = InboundEvent.from_dict(data)
        if event.message_type == "private":
            if not event.is_private:
                return _ack()
            pool: WorkerPool | None = app.state.pool
            if pool is None:
                logger.warning("Worker pool not running, dropping message from %d", event.user_id)
                return _ack()
            pool.submit((event.user_id, event.message))
        elif event.message_type == "group":
            # Group chat is not handled
            logger.debug(
                "Ignoring group message from %d in group %d", event.user_id, event.group_id,
            )
        return _ack()

    return app
