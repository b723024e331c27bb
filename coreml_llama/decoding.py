"""
Greedy autoregressive decoding over a fixed-window predict function.
"""

from __future__ import annotations

import logging
from typing import Callable, List, Sequence

import numpy as np

from .memory import ContextManager
from .tokenizer import LlamaTokenizer

logger = logging.getLogger(__name__)

# predict(input_ids, attention_mask) -> logits
PredictFn = Callable[[np.ndarray, np.ndarray], np.ndarray]


def select_next_token(logits: np.ndarray, position: int) -> int:
    """Argmax over the vocabulary at ``position``.

    Accepts logits shaped (1, seq, vocab), (seq, vocab) or (1, vocab)/(vocab,)
    when the model only returns the last step.
    """
    arr = np.asarray(logits)
    if arr.ndim == 3:
        row = arr[0, min(position, arr.shape[1] - 1)]
    elif arr.ndim == 2 and arr.shape[0] > 1:
        row = arr[min(position, arr.shape[0] - 1)]
    else:
        row = arr.reshape(-1)
    return int(np.argmax(row))


def greedy_decode(
    predict: PredictFn,
    tokenizer: LlamaTokenizer,
    prompt_tokens: Sequence[int],
    max_tokens: int,
    context: ContextManager,
) -> List[int]:
    """
    Generate at most ``max_tokens`` token ids after ``prompt_tokens``.

    Stops early on a stop token.
    """
    tokens = context.fit_prompt(prompt_tokens)
    context.on_prefill(len(tokens))
    generated: List[int] = []

    for _ in range(max_tokens):
        inputs = context.build_inputs(tokens)
        logits = predict(inputs.input_ids, inputs.attention_mask)
        next_id = select_next_token(logits, inputs.last_position)
        if tokenizer.is_stop(next_id):
            logger.debug("Stop token %d after %d tokens", next_id, len(generated))
            break
        tokens.append(next_id)
        generated.append(next_id)
        context.on_decode_step(1)
    return generated
