"""
Exception hierarchy shared by runtimes and the inference facade.

Every error carries a numeric ``code`` so callers that only see the object
handed to a completion callback can still branch on the failure kind.
"""

from __future__ import annotations

from typing import Optional


class LlamaInferenceError(Exception):
    """Base class for all coreml_llama errors."""

    code: int = 1000

    def __init__(self, message: str, *, code: Optional[int] = None):
        super().__init__(message)
        if code is not None:
            self.code = code

    def __str__(self) -> str:
        return f"[{self.code}] {super().__str__()}"


class ModelLoadError(LlamaInferenceError):
    """Model path missing, unreadable, or rejected by the runtime."""

    code = 1000


class ModelNotLoadedError(LlamaInferenceError):
    code = 1001


class InvalidRequestError(LlamaInferenceError):
    """Bad prompt / token bound, or a model whose inputs we cannot feed."""

    code = 1002


class OutputExtractionError(LlamaInferenceError):
    code = 1003


class ModelGenerationError(LlamaInferenceError):
    """The runtime failed while producing a continuation."""

    code = 1004


class TokenizerError(LlamaInferenceError):
    code = 1005
