"""
Shared fixtures: an in-memory runtime standing in for a small known-good
model, and a tiny Llama-style BPE tokenizer.json.
"""
import os
import threading

import pytest
from tokenizers import Tokenizer, decoders, models, normalizers

from coreml_llama.backends import ModelHandle, ModelRuntime
from coreml_llama.errors import ModelGenerationError, ModelLoadError
from coreml_llama.tokenizer import LlamaTokenizer

# Same layout as Llama-2: specials, then the 256 byte-fallback tokens
BYTE_OFFSET = 3
BASE_PIECES = ["▁", "H", "e", "l", "o", "w", "r", "d", "i", "t", "h", "[", "]", "I", "N", "S", "T", "/"]
MERGES = [
    ("▁", "H"), ("e", "l"), ("el", "l"), ("ell", "o"), ("▁H", "ello"),
    ("▁", "w"), ("o", "r"), ("▁w", "or"), ("▁wor", "l"), ("▁worl", "d"),
    ("▁", "t"), ("▁t", "h"), ("▁th", "e"),
    ("▁", "["), ("I", "N"), ("IN", "S"), ("INS", "T"),
]

VOCAB = {"<unk>": 0, "<s>": 1, "</s>": 2}
VOCAB.update({f"<0x{b:02X}>": BYTE_OFFSET + b for b in range(256)})
for _piece in BASE_PIECES + [a + b for a, b in MERGES]:
    VOCAB.setdefault(_piece, len(VOCAB))

HELLO = VOCAB["▁Hello"]
WORLD = VOCAB["▁world"]
THE = VOCAB["▁the"]
NEWLINE = VOCAB["<0x0A>"]


def write_tokenizer(path):
    """Save a Llama-2 shaped tokenizer.json (BPE, byte fallback) to ``path``."""
    tok = Tokenizer(models.BPE(
        vocab=VOCAB,
        merges=MERGES,
        unk_token="<unk>",
        fuse_unk=True,
        byte_fallback=True,
    ))
    tok.normalizer = normalizers.Sequence([normalizers.Prepend("▁"), normalizers.Replace(" ", "▁")])
    tok.decoder = decoders.Sequence([
        decoders.Replace("▁", " "),
        decoders.ByteFallback(),
        decoders.Fuse(),
        decoders.Strip(" ", 1, 0),
    ])
    tok.add_special_tokens(["<unk>", "<s>", "</s>"])
    tok.save(str(path))
    return str(path)


class FakeRuntime(ModelRuntime):
    """Echoes ``word_i`` tokens; optional gates block load / infer."""

    name = "fake"

    def __init__(self, words=10, load_gate=None, infer_gate=None, fail_infer=False):
        super().__init__()
        self.words = words
        self.load_gate = load_gate
        self.infer_gate = infer_gate
        self.fail_infer = fail_infer
        self.load_calls = 0
        self.prompts = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def load_model(self, path):
        self.load_calls += 1
        if self.load_gate is not None:
            self.load_gate.wait(5)
        if not os.path.exists(path):
            raise ModelLoadError(f"Model file not found: {path}")
        return ModelHandle(runtime=self.name, path=path, model=object(), seq_length=16)

    def infer(self, handle, prompt, max_tokens, conversation=None):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.infer_gate is not None:
                self.infer_gate.wait(5)
            self.prompts.append(prompt)
            if self.fail_infer:
                raise ModelGenerationError("boom")
            n = min(self.words, max_tokens)
            text = " ".join(f"word{i}" for i in range(n))
            if conversation is not None:
                conversation.record(prompt, text, tokens=[1] * (len(prompt.split()) + n))
            return text
        finally:
            with self._lock:
                self.active -= 1


@pytest.fixture
def model_file(tmp_path):
    path = tmp_path / "tiny.mlmodelc"
    path.mkdir()
    return str(path)


@pytest.fixture
def tokenizer_file(tmp_path):
    return write_tokenizer(tmp_path / "tokenizer.json")


@pytest.fixture
def tokenizer(tokenizer_file):
    return LlamaTokenizer.from_file(tokenizer_file)


@pytest.fixture
def fake_runtime():
    return FakeRuntime()
