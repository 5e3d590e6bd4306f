from .onebot import OneBotMessenger
from .openai import OpenAICompletionClient

__all__ = ["OneBotMessenger", "OpenAICompletionClient"]
