"""SessionPipeline: per-message orchestration from CQ string to reply.

parse -> guard/compose -> interim notice -> completion -> record -> deliver.
Every external call is bounded by a timeout; the conversation store lock
is never held across one.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from typing import Callable

from .core.composer import compose
from .core.markup import parse_message
from .core.store import ConversationStore
from .metrics import RelayMetrics
from .token_counter import create_token_counter
from .types import (
    CompletionClient,
    CompletionRequest,
    CompletionServiceError,
    DeliveryError,
    GuardAction,
    GuardDecision,
    HistoryEntry,
    Messenger,
    RelayConfig,
    Role,
    UserID,
)

logger = logging.getLogger(__name__)


class PipelineOutcome(str, enum.Enum):
    DROPPED = "dropped"                # empty message, nothing sent
    REJECTED = "rejected"              # too long, notice sent
    CANNED = "canned"                  # sentinel phrase answered locally
    RESET = "reset"                    # history cleared
    REPLIED = "replied"                # completion relayed
    UPSTREAM_ERROR = "upstream_error"  # error descriptor relayed
    EMPTY = "empty"                    # completion had no choices
    FAILED = "failed"                  # transport failure or timeout


_SHORT_CIRCUIT_OUTCOMES = {
    GuardAction.DROP: PipelineOutcome.DROPPED,
    GuardAction.REJECT: PipelineOutcome.REJECTED,
    GuardAction.CANNED_REPLY: PipelineOutcome.CANNED,
    GuardAction.RESET: PipelineOutcome.RESET,
}


class SessionPipeline:
    """Processes one inbound private message at a time per call.

    Calls for the same user may run concurrently; only the store's lock
    orders their history updates.
    """

    def __init__(
        self,
        config: RelayConfig,
        store: ConversationStore,
        completion_client: CompletionClient,
        messenger: Messenger,
        *,
        metrics: RelayMetrics | None = None,
        token_counter: Callable[[str], float] | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.completion_client = completion_client
        self.messenger = messenger
        self.metrics = metrics
        self.token_counter = token_counter or create_token_counter(config.token_counter)
        self.completion_timeout = config.openai.timeout
        self.delivery_timeout = config.gateway.timeout

    async def handle_private_message(self, user_id: UserID, raw: str) -> PipelineOutcome:
        parsed = parse_message(raw)
        logger.info("Private message from %s: %s", user_id, parsed)

        history = self.store.get_history(user_id)
        request, decision = compose(user_id, parsed, history, self.config, self.token_counter)
        if request is None:
            outcome = await self._short_circuit(user_id, decision)
            self._record(user_id, outcome)
            return outcome

        notice = None
        if request.multimodal:
            notice = self.config.guard.vision_notice
        elif request.escalated:
            notice = self.config.guard.escalation_notice
        if notice:
            await self.deliver(user_id, notice)

        started = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self.completion_client.complete(request),
                timeout=self.completion_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(
                "Completion for user %s timed out after %.0fs", user_id, self.completion_timeout,
            )
            self._record(user_id, PipelineOutcome.FAILED, request)
            return PipelineOutcome.FAILED
        except CompletionServiceError as e:
            logger.error("Error querying completion service for user %s: %s", user_id, e)
            self._record(user_id, PipelineOutcome.FAILED, request)
            return PipelineOutcome.FAILED
        elapsed_ms = (time.monotonic() - started) * 1000

        if response.has_error:
            logger.warning(
                "Completion service error for user %s: %s (%s)",
                user_id, response.error.message, response.error.code or response.error.type,
            )
            await self.deliver(user_id, response.error.message)
            self._record(user_id, PipelineOutcome.UPSTREAM_ERROR, request, completion_ms=elapsed_ms)
            return PipelineOutcome.UPSTREAM_ERROR

        if not response.choices:
            logger.warning("Completion for user %s returned no choices", user_id)
            self._record(user_id, PipelineOutcome.EMPTY, request, completion_ms=elapsed_ms)
            return PipelineOutcome.EMPTY

        answer = response.primary_content
        usage = response.usage
        self.store.append_exchange(
            user_id,
            HistoryEntry(Role.USER, request.user_content, usage.prompt_tokens),
            HistoryEntry(Role.ASSISTANT, answer, usage.completion_tokens),
        )
        logger.info(
            "Reply for user %s from %s: %d chars, token usage: %d",
            user_id, response.model or request.model, len(answer), usage.total_tokens,
        )
        await self.deliver(user_id, answer)
        self._record(
            user_id, PipelineOutcome.REPLIED, request,
            completion_ms=elapsed_ms,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
        )
        return PipelineOutcome.REPLIED

    async def _short_circuit(self, user_id: UserID, decision: GuardDecision) -> PipelineOutcome:
        if decision.action is GuardAction.RESET:
            removed = self.store.clear(user_id)
            logger.info("Cleared %d history entries for user %s", removed, user_id)
        if decision.reply:
            await self.deliver(user_id, decision.reply)
        return _SHORT_CIRCUIT_OUTCOMES[decision.action]

    async def deliver(self, user_id: UserID, text: str) -> bool:
        """Send *text* to the user. Failures are logged, never retried."""
        try:
            await asyncio.wait_for(
                self.messenger.send_private_message(user_id, text),
                timeout=self.delivery_timeout,
            )
        except asyncio.TimeoutError:
            logger.error("Error sending message to %s: timed out", user_id)
            return False
        except DeliveryError as e:
            logger.error("Error sending message to %s: %s", user_id, e)
            return False
        return True

    def _record(
        self,
        user_id: UserID,
        outcome: PipelineOutcome,
        request: CompletionRequest | None = None,
        **extra,
    ) -> None:
        if self.metrics is None:
            return
        event = {"type": "message", "user_id": user_id, "outcome": outcome.value}
        if request is not None:
            event["model"] = request.model
            event["multimodal"] = request.multimodal
        event.update(extra)
        self.metrics.record(event)
