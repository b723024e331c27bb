"""
Runtime configuration: compute units, torch device, and mode presets.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import torch

DEFAULT_MAX_TOKENS = 100
DEFAULT_SEQ_LENGTH = 64

COMPUTE_UNITS = ("all", "cpu_and_gpu", "cpu_and_ne", "cpu_only")


@dataclass
class RuntimeConfig:
    compute_units: str = "all"  # see COMPUTE_UNITS
    device: Optional[str] = None  # torch device for the transformers runtime
    dtype: Optional[str] = None  # "float16" | "bfloat16" | "float32"
    mode: str = "balanced"  # "tiny" | "balanced" | "high_throughput"
    # None -> detect from the model's input_ids shape
    seq_length: Optional[int] = None
    # Slots kept free at the end of the window for generated tokens
    context_reserve: int = 10
    compile_model: bool = True
    cpu_fallback: bool = True
    profile: bool = True


@dataclass
class GenerationConfig:
    max_tokens: int = DEFAULT_MAX_TOKENS


def select_device(device: Optional[str] = None) -> str:
    if device:
        return device
    if torch.backends.mps.is_available():
        return "mps"
    return "cpu"


def select_dtype(dtype: Optional[str] = None, device: Optional[str] = None) -> str:
    if dtype:
        return dtype
    dev = device or select_device(None)
    # On MPS, float16 performs well. bfloat16 is improving but still evolving.
    if dev == "mps":
        return "float16"
    return "float32"


def resolve_compute_units(name: str):
    """Map a config string onto a ``coremltools.ComputeUnit`` member."""
    import coremltools as ct

    key = (name or "all").lower()
    if key not in COMPUTE_UNITS:
        raise ValueError(f"Unknown compute units {name!r}; expected one of {', '.join(COMPUTE_UNITS)}")
    return getattr(ct.ComputeUnit, key.upper())


def apply_mode_defaults(cfg: RuntimeConfig) -> RuntimeConfig:
    """
    Populate config tunables based on selected mode.
    - tiny: CPU only, small context reserve
    - balanced: default trade-offs
    - high_throughput: every compute unit, no CPU retry
    The sequence length is never set here; it comes from the model.
    """
    mode = (cfg.mode or "balanced").lower()
    if mode == "tiny":
        cfg.compute_units = "cpu_only"
        cfg.context_reserve = 4
        cfg.cpu_fallback = False
    elif mode == "high_throughput":
        cfg.compute_units = "all"
        cfg.context_reserve = 10
        cfg.cpu_fallback = False
    else:  # balanced
        cfg.context_reserve = max(1, cfg.context_reserve)
        cfg.cpu_fallback = True
    return cfg
