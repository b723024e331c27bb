"""
Context window handling for fixed-length CoreML inputs.

Exported Llama models take ``input_ids`` / ``attention_mask`` of a fixed
sequence length. The ContextManager owns the conversion from a growing token
history to that fixed shape, truncating with a sliding window that always
keeps the leading BOS + [INST] structure.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .profiler import Profiler
from .tokenizer import BOS_ID, format_chat_prompt

logger = logging.getLogger(__name__)

KEEP_STRUCTURAL_TOKENS = 8


def sliding_window(tokens: Sequence[int], max_length: int, keep_structural: int = KEEP_STRUCTURAL_TOKENS) -> List[int]:
    """
    Return at most ``max_length`` tokens: the first ``keep_structural`` ones
    followed by the most recent remainder.
    """
    tokens = list(tokens)
    if max_length <= 0:
        return []
    if len(tokens) <= max_length:
        return tokens
    keep_structural = min(keep_structural, max_length)
    keep_recent = max_length - keep_structural
    head = tokens[:keep_structural]
    tail = tokens[len(tokens) - keep_recent:] if keep_recent > 0 else []
    return head + tail


@dataclass
class WindowInputs:
    input_ids: np.ndarray  # (1, seq_length) int32
    attention_mask: np.ndarray  # (1, seq_length) int32
    num_tokens: int

    @property
    def last_position(self) -> int:
        return max(0, self.num_tokens - 1)


class ContextManager:
    """
    Tracks context length for one generation and builds model inputs.

    ``reserve`` slots are kept free at the end of the window so the model
    always has room to predict past the visible context.
    """

    def __init__(
        self,
        seq_length: int,
        reserve: int = 10,
        profiler: Optional[Profiler] = None,
        pad_id: int = BOS_ID,
    ):
        if seq_length <= 0:
            raise ValueError("seq_length must be positive")
        self.seq_length = seq_length
        self.reserve = max(0, min(reserve, seq_length - 1))
        self.profiler = profiler
        self.pad_id = pad_id
        self.total_tokens = 0
        self.truncations = 0

    @property
    def window_length(self) -> int:
        return self.seq_length - self.reserve

    def on_prefill(self, num_tokens: int) -> None:
        self.total_tokens = num_tokens

    def on_decode_step(self, new_tokens: int = 1) -> None:
        self.total_tokens += new_tokens
        if self.profiler:
            self.profiler.add_tokens(new_tokens)

    def build_inputs(self, tokens: Sequence[int]) -> WindowInputs:
        window = sliding_window(tokens, self.window_length)
        if len(window) < len(tokens):
            self.truncations += 1
            logger.debug("Sliding window: %d -> %d tokens", len(tokens), len(window))

        input_ids = np.full((1, self.seq_length), self.pad_id, dtype=np.int32)
        attention_mask = np.zeros((1, self.seq_length), dtype=np.int32)
        n = len(window)
        if n:
            input_ids[0, :n] = np.asarray(window, dtype=np.int32)
            attention_mask[0, :n] = 1
        return WindowInputs(input_ids=input_ids, attention_mask=attention_mask, num_tokens=n)

    def fit_prompt(self, prompt_tokens: Sequence[int]) -> List[int]:
        """Trim a prompt that would not fit the window on its own."""
        tokens = list(prompt_tokens)
        if len(tokens) > self.window_length:
            logger.warning("Prompt of %d tokens exceeds window of %d; truncating", len(tokens), self.window_length)
            tokens = sliding_window(tokens, self.window_length)
        return tokens


@dataclass
class Conversation:
    """
    Multi-turn chat history shared across generate calls.

    ``tokens`` is the full token history for runtimes that decode token by
    token; the ContextManager slides over it, so a long chat keeps its
    opening structure and its most recent turns.
    """

    turns: List[Tuple[str, str]] = field(default_factory=list)
    tokens: List[int] = field(default_factory=list)

    @property
    def total_tokens(self) -> int:
        return len(self.tokens)

    def record(self, message: str, reply: str, tokens: Optional[Sequence[int]] = None) -> None:
        self.turns.append((message, reply))
        if tokens:
            self.tokens.extend(int(t) for t in tokens)
        logger.debug("Conversation: %d turns, %d tokens", len(self.turns), len(self.tokens))

    def render(self, message: str) -> str:
        """Chat-format text of every earlier turn followed by ``message``."""
        parts = [f"{format_chat_prompt(user)} {reply}" for user, reply in self.turns]
        parts.append(format_chat_prompt(message))
        return " ".join(parts)

    def reset(self) -> None:
        self.turns.clear()
        self.tokens.clear()

    def status(self, seq_length: Optional[int]) -> Dict[str, Any]:
        return {
            "turns": len(self.turns),
            "total_tokens": self.total_tokens,
            "seq_length": seq_length,
            "sliding_window": bool(seq_length) and self.total_tokens > seq_length,
        }
