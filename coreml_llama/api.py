"""
Asynchronous load / generate facade over a model runtime.

Each LlamaInference owns one worker thread. ``load`` and ``generate`` return
immediately with a Future; the work runs on the worker in submission order
and the optional completion callback is invoked exactly once on that worker
with either a value or an error, never both.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Optional, Tuple

from .backends import ModelHandle, ModelRuntime, select_runtime
from .errors import (
    InvalidRequestError,
    LlamaInferenceError,
    ModelGenerationError,
    ModelLoadError,
    ModelNotLoadedError,
)
from .memory import Conversation
from .profiler import Profiler
from .runtime import DEFAULT_MAX_TOKENS, GenerationConfig, RuntimeConfig, apply_mode_defaults

logger = logging.getLogger(__name__)

LoadCompletion = Callable[[bool, Optional[Exception]], None]
GenerateCompletion = Callable[[Optional[str], Optional[Exception]], None]


class LlamaInference:
    """
    Owns a model handle and serializes every operation on it.

    Usage:
        inference = LlamaInference("llama-2-7b-chat.mlpackage")
        inference.load(lambda ok, err: ...)
        inference.generate("Hello", lambda text, err: ..., max_tokens=5)
    """

    def __init__(
        self,
        model_path: str,
        runtime: Optional[ModelRuntime] = None,
        config: Optional[RuntimeConfig] = None,
        runtime_name: Optional[str] = None,
    ):
        self.model_path = model_path
        self.config = config or apply_mode_defaults(RuntimeConfig())
        self.profiler = runtime.profiler if runtime is not None else Profiler(enable=self.config.profile)
        self._runtime = runtime
        self._runtime_name = runtime_name
        self._handle: Optional[ModelHandle] = None
        self._loaded = False
        self._closed = False
        self._state_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="llama-inference")

    @property
    def is_model_loaded(self) -> bool:
        return self._loaded

    @property
    def seq_length(self) -> Optional[int]:
        handle = self._handle
        return handle.seq_length if handle is not None else None

    @property
    def runtime(self) -> Optional[ModelRuntime]:
        return self._runtime

    def __repr__(self) -> str:
        return f"LlamaInference(model_path={self.model_path!r}, loaded={self._loaded})"

    # ===== Public operations =====
    def load(self, completion: Optional[LoadCompletion] = None) -> "Future[bool]":
        """
        Load the model on the worker thread.

        completion(True, None) on success, completion(False, error) otherwise.
        A second call after a successful load completes immediately with
        success and does not reload.
        """
        return self._submit(
            self._load,
            completion,
            on_success=lambda ok: (ok, None),
            on_error=lambda err: (False, err),
            wrap=ModelLoadError,
        )

    def generate(
        self,
        prompt: str,
        completion: Optional[GenerateCompletion] = None,
        max_tokens: Optional[int] = None,
        config: Optional[GenerationConfig] = None,
        conversation: Optional[Conversation] = None,
    ) -> "Future[str]":
        """
        Generate a continuation for ``prompt``.

        ``max_tokens`` overrides ``config.max_tokens``; both default to
        DEFAULT_MAX_TOKENS. Errors (model not loaded, empty prompt, bad
        bound, runtime failure) are delivered through ``completion`` and the
        returned future, never raised here. Passing a ``conversation`` makes
        the request one turn of that chat.
        """
        # Snapshot at call time: a load still in flight does not count
        loaded = self._loaded
        error = self._validate_request(prompt, max_tokens, config, loaded)
        if error is not None:
            work: Callable[[], Any] = _raiser(error)
        else:
            bound = max_tokens if max_tokens is not None else (config or GenerationConfig()).max_tokens
            work = lambda: self._generate(prompt, bound, conversation)  # noqa: E731
        return self._submit(
            work,
            completion,
            on_success=lambda text: (text, None),
            on_error=lambda err: (None, err),
            wrap=ModelGenerationError,
        )

    def close(self, wait: bool = True) -> None:
        """Finish queued work, then release the model handle."""
        with self._state_lock:
            if self._closed:
                return
            self._closed = True
        self._executor.shutdown(wait=wait)
        with self._state_lock:
            handle, self._handle = self._handle, None
            self._loaded = False
        if handle is not None and self._runtime is not None:
            self._runtime.release(handle)

    def __enter__(self) -> "LlamaInference":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False

    # ===== Worker-side work =====
    def _load(self) -> bool:
        if self._loaded:
            logger.debug("Model already loaded: %s", self.model_path)
            return True
        if self._runtime is None:
            self._runtime = select_runtime(
                self.model_path, name=self._runtime_name, config=self.config, profiler=self.profiler
            )
        with self.profiler.span("load"):
            try:
                handle = self._runtime.load_model(self.model_path)
            except Exception:
                logger.error("Failed to load model from %s", self.model_path)
                raise
        with self._state_lock:
            closed = self._closed
            if not closed:
                self._handle = handle
                self._loaded = True
        if closed:
            self._runtime.release(handle)
            raise ModelLoadError("Inference facade was closed while loading")
        logger.info("Model loaded successfully: %s", self.model_path)
        return True

    def _generate(self, prompt: str, max_tokens: int, conversation: Optional[Conversation] = None) -> str:
        handle = self._handle
        if handle is None:
            raise ModelNotLoadedError("Model not loaded")
        t0 = self.profiler.now()
        text = self._runtime.infer(handle, prompt, max_tokens, conversation=conversation)
        self.profiler.mark("generate_total", t0)
        return text

    @staticmethod
    def _validate_request(
        prompt: Any,
        max_tokens: Optional[int],
        config: Optional[GenerationConfig],
        loaded: bool,
    ) -> Optional[LlamaInferenceError]:
        if not loaded:
            return ModelNotLoadedError("Model not loaded")
        if not isinstance(prompt, str) or not prompt.strip():
            return InvalidRequestError("Prompt must be a non-empty string")
        bound = max_tokens if max_tokens is not None else (config or GenerationConfig()).max_tokens
        if isinstance(bound, bool) or not isinstance(bound, int) or bound <= 0:
            return InvalidRequestError(f"max_tokens must be a positive integer, got {bound!r}")
        return None

    # ===== Dispatch =====
    def _submit(
        self,
        work: Callable[[], Any],
        completion: Optional[Callable[..., None]],
        *,
        on_success: Callable[[Any], Tuple[Any, Any]],
        on_error: Callable[[Exception], Tuple[Any, Any]],
        wrap: type,
    ) -> Future:
        future: Future = Future()
        # Set once the caller has its future; no completion runs before that
        returned = threading.Event()

        def deliver(args: Tuple[Any, Any]) -> None:
            returned.wait()
            self._notify(completion, args)

        def task() -> None:
            if not future.set_running_or_notify_cancel():
                deliver(on_error(LlamaInferenceError("Operation cancelled")))
                return
            try:
                value = work()
            except Exception as exc:
                error = exc if isinstance(exc, LlamaInferenceError) else wrap(str(exc) or type(exc).__name__)
                if error is not exc:
                    error.__cause__ = exc
                logger.debug("Operation failed: %s", error)
                self.profiler.add_error(1)
                future.set_exception(error)
                deliver(on_error(error))
                return
            future.set_result(value)
            deliver(on_success(value))

        try:
            self._executor.submit(task)
        except RuntimeError:
            # Executor already shut down; still answer exactly once, off the caller's thread
            error = LlamaInferenceError("Inference facade is closed")
            future.set_exception(error)
            threading.Thread(target=deliver, args=(on_error(error),), daemon=True).start()
        returned.set()
        return future

    @staticmethod
    def _notify(completion: Optional[Callable[..., None]], args: Tuple[Any, Any]) -> None:
        if completion is None:
            return
        try:
            completion(*args)
        except Exception:
            logger.exception("Completion callback raised")


def _raiser(error: Exception) -> Callable[[], Any]:
    def work() -> Any:
        raise error
    return work


def load(
    model_path: str,
    *,
    runtime: Optional[str] = None,
    config: Optional[RuntimeConfig] = None,
    timeout: Optional[float] = None,
) -> LlamaInference:
    """
    Blocking convenience wrapper: construct a facade and wait for its load.

    Raises the load error instead of delivering it through a callback.
    """
    inference = LlamaInference(model_path, config=config, runtime_name=runtime)
    try:
        inference.load().result(timeout=timeout)
    except BaseException:
        inference.close(wait=False)
        raise
    return inference


def generate(
    model_path: str,
    prompt: str,
    max_tokens: int = DEFAULT_MAX_TOKENS,
    **kwargs: Any,
) -> str:
    """
    Convenience wrapper: load-then-generate single-shot.
    """
    with load(model_path, **kwargs) as inference:
        return inference.generate(prompt, max_tokens=max_tokens).result()


__all__ = [
    "LlamaInference",
    "load",
    "generate",
]
