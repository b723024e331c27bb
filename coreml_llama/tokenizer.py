"""
Llama-2 tokenizer for CoreML exports that ship a HuggingFace tokenizer.json.

The tokenizer.json is run through ``transformers``' fast tokenizer, so BPE
merges, the normalizer and byte fallback behave exactly as at training time.
This module adds the chat prompt template and stop-token handling on top.
"""

from __future__ import annotations

import logging
import os
from typing import List, Optional, Sequence

from transformers import PreTrainedTokenizerFast

from .errors import TokenizerError

logger = logging.getLogger(__name__)

# Llama-2 special token ids
UNK_ID = 0
BOS_ID = 1
EOS_ID = 2


def format_chat_prompt(message: str) -> str:
    return f"[INST] {message} [/INST]"


def find_tokenizer_file(model_path: str) -> Optional[str]:
    """Look for tokenizer.json inside the model bundle, then beside it."""
    candidates = []
    if os.path.isdir(model_path):
        candidates.append(os.path.join(model_path, "tokenizer.json"))
    candidates.append(os.path.join(os.path.dirname(os.path.abspath(model_path)), "tokenizer.json"))
    for path in candidates:
        if os.path.isfile(path):
            return path
    return None


def _token_id(backend: PreTrainedTokenizerFast, token: Optional[str], default: int) -> int:
    if token is None:
        return default
    token_id = backend.convert_tokens_to_ids(token)
    return default if token_id is None else int(token_id)


class LlamaTokenizer:
    def __init__(self, backend: PreTrainedTokenizerFast):
        self.backend = backend
        self.bos_id = _token_id(backend, backend.bos_token, BOS_ID)
        self.eos_id = _token_id(backend, backend.eos_token, EOS_ID)
        self.unk_id = _token_id(backend, backend.unk_token, UNK_ID)
        self.stop_ids = frozenset({self.eos_id, self.unk_id})

    @classmethod
    def from_file(cls, path: str) -> "LlamaTokenizer":
        if not os.path.isfile(path):
            raise TokenizerError(f"Tokenizer file not found: {path}")
        try:
            backend = PreTrainedTokenizerFast(
                tokenizer_file=path,
                bos_token="<s>",
                eos_token="</s>",
                unk_token="<unk>",
            )
        except Exception as exc:
            raise TokenizerError(f"Failed to read tokenizer file {path}: {exc}") from exc
        if len(backend) == 0:
            raise TokenizerError(f"No vocab found in {path}")
        logger.info("Loaded vocabulary with %d tokens from %s", len(backend), path)
        return cls(backend)

    def __len__(self) -> int:
        return len(self.backend)

    def encode(self, text: str, add_bos: bool = True) -> List[int]:
        ids = self.backend.encode(text, add_special_tokens=False)
        return ([self.bos_id] if add_bos else []) + list(ids)

    def encode_chat(self, message: str, add_bos: bool = True) -> List[int]:
        return self.encode(format_chat_prompt(message), add_bos=add_bos)

    def decode_token(self, token_id: int) -> str:
        if self.backend.convert_ids_to_tokens(int(token_id)) is None:
            return f"[UNK_{token_id}]"
        return self.backend.decode([int(token_id)])

    def decode(self, token_ids: Sequence[int]) -> str:
        return self.backend.decode([int(t) for t in token_ids], skip_special_tokens=True)

    def is_stop(self, token_id: int) -> bool:
        return int(token_id) in self.stop_ids
