"""Token counting utilities."""

from __future__ import annotations

import bisect
import unicodedata
from typing import Callable

# Code point ranges of the Unicode Han script (inclusive).
_HAN_RANGES: tuple[tuple[int, int], ...] = (
    (0x2E80, 0x2E99),
    (0x2E9B, 0x2EF3),
    (0x2F00, 0x2FD5),
    (0x3005, 0x3005),
    (0x3007, 0x3007),
    (0x3021, 0x3029),
    (0x3038, 0x303B),
    (0x3400, 0x4DBF),
    (0x4E00, 0x9FFF),
    (0xF900, 0xFA6D),
    (0xFA70, 0xFAD9),
    (0x16FE2, 0x16FE3),
    (0x16FF0, 0x16FF1),
    (0x20000, 0x2A6DF),
    (0x2A700, 0x2B739),
    (0x2B740, 0x2B81D),
    (0x2B820, 0x2CEA1),
    (0x2CEB0, 0x2EBE0),
    (0x2EBF0, 0x2EE5D),
    (0x2F800, 0x2FA1D),
    (0x30000, 0x3134A),
    (0x31350, 0x323AF),
)
_HAN_STARTS = [lo for lo, _ in _HAN_RANGES]

HAN_TOKEN_COST = 1.5


def is_han(char: str) -> bool:
    cp = ord(char)
    i = bisect.bisect_right(_HAN_STARTS, cp) - 1
    return i >= 0 and cp <= _HAN_RANGES[i][1]


def _is_separator(char: str) -> bool:
    return char.isspace() or unicodedata.category(char).startswith("P")


def estimate_tokens(text: str) -> float:
    """Rough, script-aware estimate of completion tokens.

    Each Han character costs 1.5. Any other run of characters between
    whitespace, punctuation or Han characters costs 1 as a whole.
    Only meant as a pre-flight guard; authoritative usage comes from
    the completion service.
    """
    count = 0.0
    in_word = False
    for char in text:
        if is_han(char):
            count += HAN_TOKEN_COST
            in_word = False
        elif _is_separator(char):
            in_word = False
        elif not in_word:
            count += 1
            in_word = True
    return count


def create_token_counter(mode: str = "estimate") -> Callable[[str], float]:
    """Factory for token counters.

    Modes:
        "estimate" - script-aware heuristic (zero deps)
        "tiktoken" - requires tiktoken package
        "callable:module.path:func" - custom callable
    """
    if mode == "estimate":
        return estimate_tokens

    if mode == "tiktoken":
        try:
            import tiktoken
        except ImportError:
            raise ImportError(
                "tiktoken not installed. Install with: pip install qq-relay[tiktoken]"
            )
        enc = tiktoken.get_encoding("cl100k_base")
        return lambda text: float(len(enc.encode(text)))

    if mode.startswith("callable:"):
        # Format: callable:module.path:func_name
        parts = mode[len("callable:"):].rsplit(":", 1)
        if len(parts) != 2:
            raise ValueError(f"Invalid callable spec: {mode}. Expected callable:module:func")
        module_path, func_name = parts
        import importlib
        mod = importlib.import_module(module_path)
        return getattr(mod, func_name)

    raise ValueError(f"Unknown token counter mode: {mode}")
