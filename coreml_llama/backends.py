"""
Model runtimes behind the inference facade.

A runtime knows how to turn a path into a ModelHandle and how to run one
prompt against that handle. The facade never touches the underlying model
object directly, so CoreML and HuggingFace checkpoints are interchangeable.
"""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import numpy as np

from .decoding import greedy_decode
from .errors import (
    InvalidRequestError,
    LlamaInferenceError,
    ModelGenerationError,
    ModelLoadError,
    OutputExtractionError,
)
from .memory import ContextManager, Conversation
from .profiler import Profiler
from .runtime import (
    DEFAULT_SEQ_LENGTH,
    RuntimeConfig,
    resolve_compute_units,
    select_device,
    select_dtype,
)
from .tokenizer import LlamaTokenizer, find_tokenizer_file, format_chat_prompt

logger = logging.getLogger(__name__)

COREML_SUFFIXES = (".mlpackage", ".mlmodelc", ".mlmodel")
# Output names tried, in order, before falling back to the first output
TEXT_OUTPUT_NAMES = ("output", "logits", "generated_text", "text_output")


@dataclass
class ModelHandle:
    runtime: str
    path: str
    model: Any
    tokenizer: Any = None
    seq_length: int = DEFAULT_SEQ_LENGTH
    # "tokens": input_ids/attention_mask -> logits, "text": string in/out
    input_format: str = "tokens"
    input_name: str = "input_ids"
    extra: Dict[str, Any] = field(default_factory=dict)


class ModelRuntime(ABC):
    """Narrow interface every model runtime implements."""

    name: str = "base"

    def __init__(self, config: Optional[RuntimeConfig] = None, profiler: Optional[Profiler] = None):
        self.config = config or RuntimeConfig()
        self.profiler = profiler or Profiler(enable=self.config.profile)

    @abstractmethod
    def load_model(self, path: str) -> ModelHandle:
        """Load the model at ``path``. Raises ModelLoadError."""

    @abstractmethod
    def infer(
        self,
        handle: ModelHandle,
        prompt: str,
        max_tokens: int,
        conversation: Optional[Conversation] = None,
    ) -> str:
        """
        Produce at most ``max_tokens`` tokens of continuation for ``prompt``.

        With a ``conversation``, earlier turns are part of the input and the
        new turn is recorded into it.
        """

    def release(self, handle: ModelHandle) -> None:
        handle.model = None


class CoreMLRuntime(ModelRuntime):
    """Runs .mlpackage / .mlmodelc exports through coremltools."""

    name = "coreml"

    def load_model(self, path: str) -> ModelHandle:
        if not path or not os.path.exists(path):
            raise ModelLoadError(f"Model file not found: {path}")

        try:
            import coremltools as ct
        except ImportError as exc:
            raise ModelLoadError("coremltools is not installed. Please `pip install coremltools`.") from exc

        # Compiled models expose no spec, so read it from the source first
        spec = self._read_spec(ct, path)
        load_path = path
        if path.endswith(".mlpackage") and self.config.compile_model:
            from .compiler import compile_model
            load_path = compile_model(path).compiled_path

        model = self._load_with_fallback(ct, load_path)
        tokenizer = self._load_tokenizer(path)
        handle = ModelHandle(runtime=self.name, path=path, model=model, tokenizer=tokenizer)
        self._describe_inputs(spec, handle)
        if handle.input_format == "tokens" and tokenizer is None:
            raise ModelLoadError(f"Model at {path} takes token ids but no tokenizer.json was found")
        logger.info("Loaded CoreML model %s (input=%s, seq_length=%d)", path, handle.input_format, handle.seq_length)
        return handle

    def _load_with_fallback(self, ct, path: str):
        loader = ct.models.CompiledMLModel if path.endswith(".mlmodelc") else ct.models.MLModel
        units = resolve_compute_units(self.config.compute_units)
        try:
            return loader(path, compute_units=units)
        except Exception as exc:
            if not self.config.cpu_fallback or units == ct.ComputeUnit.CPU_ONLY:
                raise ModelLoadError(f"Failed to load model {path}: {exc}") from exc
            logger.warning("Loading with %s failed (%s), retrying on CPU", self.config.compute_units, exc)
        try:
            return loader(path, compute_units=ct.ComputeUnit.CPU_ONLY)
        except Exception as exc:
            raise ModelLoadError(f"Failed to load model {path}: {exc}") from exc

    def _load_tokenizer(self, path: str) -> Optional[LlamaTokenizer]:
        tokenizer_path = find_tokenizer_file(path)
        if tokenizer_path is None:
            logger.warning("tokenizer.json not found for %s", path)
            return None
        try:
            return LlamaTokenizer.from_file(tokenizer_path)
        except LlamaInferenceError as exc:
            raise ModelLoadError(str(exc)) from exc

    @staticmethod
    def _read_spec(ct, path: str) -> Any:
        if path.endswith(".mlmodelc"):
            return None
        try:
            return ct.utils.load_spec(path)
        except Exception as exc:
            raise ModelLoadError(f"Failed to read model spec from {path}: {exc}") from exc

    def _describe_inputs(self, spec: Any, handle: ModelHandle) -> None:
        handle.seq_length = self.config.seq_length or DEFAULT_SEQ_LENGTH
        if spec is None:
            # A bare .mlmodelc carries no spec; assume the token-id interface
            return
        inputs = {inp.name: inp for inp in spec.description.input}
        if "input_ids" in inputs:
            shape = list(inputs["input_ids"].type.multiArrayType.shape)
            if len(shape) >= 2 and self.config.seq_length is None:
                handle.seq_length = int(shape[1])
            logger.info("Detected sequence length: %d", handle.seq_length)
            return
        if "text" in inputs:
            handle.input_format, handle.input_name = "text", "text"
            return
        if inputs:
            first = next(iter(inputs))
            if inputs[first].type.WhichOneof("Type") == "stringType":
                handle.input_format, handle.input_name = "text", first
                return
        raise ModelLoadError(f"Unable to determine input format for {handle.path}", code=InvalidRequestError.code)

    def infer(self, handle, prompt, max_tokens, conversation=None) -> str:
        if handle.input_format == "text":
            rendered = conversation.render(prompt) if conversation is not None else format_chat_prompt(prompt)
            text = self._truncate(handle, self._infer_text(handle, rendered), max_tokens)
            if conversation is not None:
                conversation.record(prompt, text)
            return text

        tokenizer: LlamaTokenizer = handle.tokenizer
        context = ContextManager(
            handle.seq_length,
            reserve=self.config.context_reserve,
            profiler=self.profiler,
            pad_id=tokenizer.bos_id,
        )
        history = list(conversation.tokens) if conversation is not None else []
        turn_tokens = tokenizer.encode_chat(prompt, add_bos=not history)
        logger.debug("Tokenized prompt to %d tokens (%d in history)", len(turn_tokens), len(history))

        def predict(input_ids: np.ndarray, attention_mask: np.ndarray) -> np.ndarray:
            try:
                outputs = handle.model.predict({"input_ids": input_ids, "attention_mask": attention_mask})
            except Exception as exc:
                raise ModelGenerationError(f"Inference failed: {exc}") from exc
            return self._extract_logits(outputs)

        generated = greedy_decode(predict, tokenizer, history + turn_tokens, max_tokens, context)
        text = tokenizer.decode(generated).strip()
        if conversation is not None:
            conversation.record(prompt, text, tokens=turn_tokens + generated)
        return text

    def _infer_text(self, handle: ModelHandle, text: str) -> str:
        try:
            outputs = handle.model.predict({handle.input_name: text})
        except Exception as exc:
            raise ModelGenerationError(f"Inference failed: {exc}") from exc
        for name in TEXT_OUTPUT_NAMES + tuple(outputs):
            value = outputs.get(name)
            if isinstance(value, str):
                return value
        raise OutputExtractionError("Unable to extract text from output")

    @staticmethod
    def _truncate(handle: ModelHandle, text: str, max_tokens: int) -> str:
        # String-output models pick their own length; enforce the bound here
        tokenizer = handle.tokenizer
        if tokenizer is None:
            return " ".join(text.split()[:max_tokens])
        ids = tokenizer.encode(text, add_bos=False)
        return tokenizer.decode(ids[:max_tokens]).strip()

    @staticmethod
    def _extract_logits(outputs: Dict[str, Any]) -> np.ndarray:
        if "logits" in outputs:
            return np.asarray(outputs["logits"])
        for name in TEXT_OUTPUT_NAMES:
            value = outputs.get(name)
            if value is not None and not isinstance(value, str):
                return np.asarray(value)
        raise OutputExtractionError(f"No logits in model outputs: {sorted(outputs)}")


class TransformersRuntime(ModelRuntime):
    """Runs a local HuggingFace causal LM checkpoint with torch."""

    name = "transformers"

    def load_model(self, path: str) -> ModelHandle:
        if not path or not os.path.isdir(path):
            raise ModelLoadError(f"Model directory not found: {path}")

        import torch
        from transformers import AutoModelForCausalLM, AutoTokenizer

        dev = select_device(self.config.device)
        dt = select_dtype(self.config.dtype, device=dev)
        torch_dtype = {
            "float16": torch.float16,
            "bfloat16": torch.bfloat16,
            "float32": torch.float32,
        }[dt]

        try:
            tokenizer = AutoTokenizer.from_pretrained(path)
            if tokenizer.pad_token is None:
                tokenizer.pad_token = tokenizer.eos_token
            model = AutoModelForCausalLM.from_pretrained(path, torch_dtype=torch_dtype, low_cpu_mem_usage=True)
            model.to(dev)
            model.eval()
        except Exception as exc:
            raise ModelLoadError(f"Failed to load model {path}: {exc}") from exc

        handle = ModelHandle(runtime=self.name, path=path, model=model, tokenizer=tokenizer, extra={"device": dev})
        max_positions = getattr(getattr(model, "config", None), "max_position_embeddings", None)
        if self.config.seq_length:
            handle.seq_length = self.config.seq_length
        elif isinstance(max_positions, int):
            handle.seq_length = max_positions
        logger.info("Loaded transformers model %s on %s (%s)", path, dev, dt)
        return handle

    def infer(self, handle, prompt, max_tokens, conversation=None) -> str:
        import torch

        tokenizer = handle.tokenizer
        device = handle.extra.get("device", "cpu")
        rendered = conversation.render(prompt) if conversation is not None else format_chat_prompt(prompt)
        try:
            inputs = tokenizer(rendered, return_tensors="pt")
            inputs = {k: v.to(device) for k, v in inputs.items()}
            prompt_len = inputs["input_ids"].shape[-1]
            with torch.inference_mode():
                outputs = handle.model.generate(
                    **inputs,
                    max_new_tokens=max_tokens,
                    do_sample=False,
                    pad_token_id=tokenizer.pad_token_id,
                )
        except Exception as exc:
            raise ModelGenerationError(f"Inference failed: {exc}") from exc

        new_tokens = outputs[0][prompt_len:]
        self.profiler.add_tokens(int(new_tokens.shape[-1]))
        text = tokenizer.decode(new_tokens, skip_special_tokens=True).strip()
        if conversation is not None:
            sequence = outputs[0].tolist()
            conversation.record(prompt, text, tokens=sequence[conversation.total_tokens:])
        return text


RUNTIMES = {
    CoreMLRuntime.name: CoreMLRuntime,
    TransformersRuntime.name: TransformersRuntime,
}


def select_runtime(
    path: str,
    name: Optional[str] = None,
    config: Optional[RuntimeConfig] = None,
    profiler: Optional[Profiler] = None,
) -> ModelRuntime:
    """
    Pick a runtime for ``path``. CoreML bundles and anything unrecognised go
    to CoreMLRuntime; a directory holding config.json goes to transformers.
    """
    if name is None:
        if path.endswith(COREML_SUFFIXES):
            name = CoreMLRuntime.name
        elif os.path.isfile(os.path.join(path, "config.json")):
            name = TransformersRuntime.name
        else:
            name = CoreMLRuntime.name
    try:
        cls = RUNTIMES[name]
    except KeyError:
        raise ValueError(f"Unknown runtime {name!r}; expected one of {', '.join(RUNTIMES)}") from None
    return cls(config=config, profiler=profiler)
