"""
coreml_llama: asynchronous Llama inference over CoreML on Apple Silicon.

A LlamaInference facade loads a CoreML export (or a local HuggingFace
checkpoint) on a dedicated worker thread and answers generation requests
through completion callbacks and futures. Prefer importing from the package
root; runtimes live in `coreml_llama.backends`.
"""

from .api import LlamaInference, load, generate
from .backends import CoreMLRuntime, ModelHandle, ModelRuntime, TransformersRuntime, select_runtime
from .errors import (
    InvalidRequestError,
    LlamaInferenceError,
    ModelGenerationError,
    ModelLoadError,
    ModelNotLoadedError,
)
from .memory import Conversation
from .runtime import DEFAULT_MAX_TOKENS, GenerationConfig, RuntimeConfig

__all__ = [
    "LlamaInference",
    "load",
    "generate",
    "ModelHandle",
    "ModelRuntime",
    "CoreMLRuntime",
    "TransformersRuntime",
    "select_runtime",
    "Conversation",
    "LlamaInferenceError",
    "ModelLoadError",
    "ModelNotLoadedError",
    "InvalidRequestError",
    "ModelGenerationError",
    "RuntimeConfig",
    "GenerationConfig",
    "DEFAULT_MAX_TOKENS",
]

__version__ = "0.1.0"
