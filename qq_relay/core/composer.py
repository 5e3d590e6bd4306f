"""Request composition: guard decisions, model selection, message layout."""

from __future__ import annotations

from typing import Callable, Sequence

from ..token_counter import estimate_tokens
from ..types import (
    CompletionRequest,
    GuardAction,
    GuardDecision,
    GuardConfig,
    HistoryEntry,
    ModelConfig,
    ParsedMessage,
    RelayConfig,
    Role,
    UserID,
)

_PROCEED = GuardDecision(GuardAction.COMPOSE)


def guard(
    parsed: ParsedMessage,
    config: GuardConfig,
    token_counter: Callable[[str], float] = estimate_tokens,
) -> GuardDecision:
    """Decide whether a parsed message should reach the completion service."""
    text = parsed.text.strip()
    if not parsed.has_images and not text:
        return GuardDecision(GuardAction.DROP)

    if token_counter(parsed.text) > config.max_input_tokens:
        return GuardDecision(GuardAction.REJECT, reply=config.too_long_reply)

    if not parsed.has_images:
        if parsed.text == config.sentinel_phrase:
            return GuardDecision(GuardAction.CANNED_REPLY, reply=config.sentinel_reply)
        if config.reset_command and parsed.text == config.reset_command:
            return GuardDecision(GuardAction.RESET, reply=config.reset_reply)

    return _PROCEED


def build_image_request(
    text: str,
    image_urls: Sequence[str],
    models: ModelConfig,
    default_prompt: str,
) -> CompletionRequest:
    """Single-turn multimodal request. Prior history is never included."""
    prompt = text or default_prompt
    blocks: list[dict] = [{"type": "text", "text": prompt}]
    blocks.extend({"type": "image_url", "image_url": {"url": url}} for url in image_urls)
    return CompletionRequest(
        model=models.vision_model,
        messages=[{"role": Role.USER.value, "content": blocks}],
        user_content=prompt,
        multimodal=True,
    )


def build_text_request(
    text: str,
    history: Sequence[HistoryEntry],
    models: ModelConfig,
) -> CompletionRequest:
    """History-carrying text request, escalated when the prefix is present."""
    model = models.default_model
    escalated = False
    prefix = models.escalation_prefix
    if prefix and text.startswith(prefix):
        model = models.escalated_model
        text = text[len(prefix):].lstrip()
        escalated = True

    messages: list[dict] = []
    if models.system_prompt:
        messages.append({"role": Role.SYSTEM.value, "content": models.system_prompt})
    messages.extend(entry.to_message() for entry in history)
    messages.append({"role": Role.USER.value, "content": text})
    return CompletionRequest(
        model=model,
        messages=messages,
        user_content=text,
        escalated=escalated,
    )


def compose(
    user_id: UserID,
    parsed: ParsedMessage,
    history: Sequence[HistoryEntry],
    config: RelayConfig,
    token_counter: Callable[[str], float] = estimate_tokens,
) -> tuple[CompletionRequest | None, GuardDecision]:
    """Build the completion request for *parsed*, or short-circuit.

    Returns ``(None, decision)`` whenever the guard decides the message
    must not be sent upstream.
    """
    decision = guard(parsed, config.guard, token_counter)
    if decision.short_circuit:
        return None, decision

    if parsed.has_images:
        request = build_image_request(
            parsed.text, parsed.image_urls, config.models, config.guard.default_image_prompt,
        )
    else:
        request = build_text_request(parsed.text, history, config.models)
    return request, decision
