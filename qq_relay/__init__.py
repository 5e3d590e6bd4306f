"""qq-relay: QQ private chat relay for OpenAI-compatible completion services."""

from .config import load_config
from .core.composer import compose
from .core.markup import parse_message
from .core.store import ConversationStore
from .pipeline import PipelineOutcome, SessionPipeline
from .token_counter import estimate_tokens
from .types import (
    CompletionRequest,
    CompletionResponse,
    GuardAction,
    GuardDecision,
    HistoryEntry,
    ParsedMessage,
    RelayConfig,
    Role,
)

__version__ = "0.1.0"

__all__ = [
    "ConversationStore",
    "SessionPipeline",
    "PipelineOutcome",
    "compose",
    "estimate_tokens",
    "load_config",
    "parse_message",
    "CompletionRequest",
    "CompletionResponse",
    "GuardAction",
    "GuardDecision",
    "HistoryEntry",
    "ParsedMessage",
    "RelayConfig",
    "Role",
]
