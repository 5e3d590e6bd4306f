"""All dataclasses, Protocols, enums and exceptions for qq-relay."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, Union, runtime_checkable

UserID = Union[int, str]


# ---------------------------------------------------------------------------
# Messages & history
# ---------------------------------------------------------------------------

class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass(frozen=True)
class ParsedMessage:
    """Structured content of one inbound CQ-annotated message."""
    text: str = ""
    image_urls: tuple[str, ...] = ()
    mentioned_users: tuple[str, ...] = ()
    reply_to_id: str | None = None

    @property
    def has_images(self) -> bool:
        return bool(self.image_urls)

    def __str__(self) -> str:
        return (
            f"Text: {self.text!r}, "
            f"ImageURLs: [{', '.join(self.image_urls)}], "
            f"AtUsers: [{', '.join(self.mentioned_users)}], "
            f"ReplyTo: {self.reply_to_id or ''!r}"
        )


@dataclass(frozen=True)
class HistoryEntry:
    role: Role
    content: str
    token_cost: int = 0  # usage reported by the completion service

    def to_message(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


# ---------------------------------------------------------------------------
# Completion request / response
# ---------------------------------------------------------------------------

@dataclass
class CompletionRequest:
    model: str
    messages: list[dict[str, Any]] = field(default_factory=list)
    # Not sent on the wire
    user_content: str = ""
    multimodal: bool = False
    escalated: bool = False

    def to_payload(self) -> dict[str, Any]:
        return {"model": self.model, "messages": self.messages}


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_dict(cls, data: dict | None) -> Usage:
        data = data or {}
        return cls(
            prompt_tokens=int(data.get("prompt_tokens") or 0),
            completion_tokens=int(data.get("completion_tokens") or 0),
            total_tokens=int(data.get("total_tokens") or 0),
        )


@dataclass
class APIError:
    message: str = ""
    type: str = ""
    param: str = ""
    code: str = ""

    @classmethod
    def from_dict(cls, data: dict | str | None) -> APIError:
        if not data:
            return cls()
        if isinstance(data, str):
            return cls(message=data)
        return cls(
            message=str(data.get("message") or ""),
            type=str(data.get("type") or ""),
            param=str(data.get("param") or ""),
            code=str(data.get("code") or ""),
        )


@dataclass
class Choice:
    index: int = 0
    role: str = "assistant"
    content: str = ""
    finish_reason: str = ""


@dataclass
class CompletionResponse:
    id: str = ""
    model: str = ""
    choices: list[Choice] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    error: APIError = field(default_factory=APIError)

    @property
    def has_error(self) -> bool:
        return bool(self.error.message)

    @property
    def primary_content(self) -> str:
        return self.choices[0].content if self.choices else ""

    @classmethod
    def from_dict(cls, data: dict) -> CompletionResponse:
        """Decode an OpenAI chat completion body, tolerating missing or null fields."""
        choices: list[Choice] = []
        for i, raw in enumerate(data.get("choices") or []):
            if not isinstance(raw, dict):
                continue
            msg = raw.get("message") or {}
            choices.append(Choice(
                index=int(raw.get("index", i) or 0),
                role=str(msg.get("role") or "assistant"),
                content=str(msg.get("content") or ""),
                finish_reason=str(raw.get("finish_reason") or ""),
            ))
        return cls(
            id=str(data.get("id") or ""),
            model=str(data.get("model") or ""),
            choices=choices,
            usage=Usage.from_dict(data.get("usage")),
            error=APIError.from_dict(data.get("error")),
        )


# ---------------------------------------------------------------------------
# Guard decisions
# ---------------------------------------------------------------------------

class GuardAction(str, Enum):
    COMPOSE = "compose"
    DROP = "drop"                  # nothing to answer, no reply
    CANNED_REPLY = "canned_reply"  # liveness sentinel, fixed reply
    REJECT = "reject"              # input too long
    RESET = "reset"                # clear the sender's history


@dataclass(frozen=True)
class GuardDecision:
    action: GuardAction
    reply: str | None = None

    @property
    def short_circuit(self) -> bool:
        return self.action is not GuardAction.COMPOSE


# ---------------------------------------------------------------------------
# Inbound events
# ---------------------------------------------------------------------------

def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


@dataclass
class InboundEvent:
    """OneBot event as posted by the gateway."""
    post_type: str = ""
    message_type: str = ""
    message: str = ""
    user_id: int = 0
    group_id: int = 0

    @classmethod
    def from_dict(cls, data: dict) -> InboundEvent:
        message = data.get("message")
        if not isinstance(message, str):
            # array-format events carry the CQ string in raw_message
            message = data.get("raw_message")
        return cls(
            post_type=str(data.get("post_type") or ""),
            message_type=str(data.get("message_type") or ""),
            message=str(message or ""),
            user_id=_as_int(data.get("user_id")),
            group_id=_as_int(data.get("group_id")),
        )

    @property
    def is_private(self) -> bool:
        return self.message_type == "private" and self.user_id != 0 and bool(self.message)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class RelayError(Exception):
    pass


class CompletionServiceError(RelayError):
    """Transport or decoding failure talking to the completion service."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class DeliveryError(RelayError):
    """Failure delivering a message through the gateway."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


# ---------------------------------------------------------------------------
# Collaborator protocols
# ---------------------------------------------------------------------------

@runtime_checkable
class CompletionClient(Protocol):
    async def complete(self, request: CompletionRequest) -> CompletionResponse: ...


@runtime_checkable
class Messenger(Protocol):
    async def send_private_message(self, user_id: UserID, text: str) -> dict: ...


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 5701
    workers: int = 8
    queue_size: int = 256


@dataclass
class GatewayConfig:
    base_url: str = "http://127.0.0.1:5700"
    access_token: str = ""
    timeout: float = 30.0


@dataclass
class OpenAIConfig:
    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    proxy: str | None = None  # e.g. http://127.0.0.1:7890
    timeout: float = 120.0


@dataclass
class ModelConfig:
    default_model: str = "gpt-3.5-turbo"
    escalated_model: str = "gpt-4o"
    vision_model: str = "gpt-4o"
    escalation_prefix: str = "/GPT4"
    system_prompt: str = ""


@dataclass
class GuardConfig:
    max_input_tokens: float = 3000
    sentinel_phrase: str = "无语"
    sentinel_reply: str = "家人们，谁懂啊！"
    too_long_reply: str = "输入太长了～ 请不要超过 2000 个字符"
    default_image_prompt: str = "请描述这张图片"
    vision_notice: str = "已触发老鼠识图，请稍等～"
    escalation_notice: str = "本次回答将使用 GPT-4o 模型，请稍等.."
    reset_command: str = "/reset"  # empty disables
    reset_reply: str = "已清空对话记录～"


@dataclass
class HistoryConfig:
    max_entries: int = 10
    soft_token_limit: int = 10_000
    hard_token_limit: int = 15_000


@dataclass
class RelayConfig:
    server: ServerConfig = field(default_factory=ServerConfig)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    openai: OpenAIConfig = field(default_factory=OpenAIConfig)
    models: ModelConfig = field(default_factory=ModelConfig)
    guard: GuardConfig = field(default_factory=GuardConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    token_counter: str = "estimate"
