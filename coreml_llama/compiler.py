"""
Compile .mlpackage bundles into .mlmodelc directories.

Compilation is what CoreML does implicitly on every MLModel load; doing it
once up front makes later loads of large models much faster.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import shutil
import sys
import time
from dataclasses import dataclass
from typing import Optional

from .errors import ModelLoadError

logger = logging.getLogger(__name__)


@dataclass
class CompileResult:
    input_path: str
    compiled_path: str
    input_bytes: int
    compiled_bytes: int
    elapsed_s: float

    def to_dict(self) -> dict:
        return {
            "input_path": self.input_path,
            "compiled_path": self.compiled_path,
            "input_gb": round(self.input_bytes / 1024 ** 3, 3),
            "compiled_gb": round(self.compiled_bytes / 1024 ** 3, 3),
            "elapsed_s": round(self.elapsed_s, 2),
        }


def path_size(path: str) -> int:
    """Total size in bytes of a file or directory tree."""
    if os.path.isfile(path):
        return os.path.getsize(path)
    total = 0
    for root, _dirs, files in os.walk(path):
        for name in files:
            fp = os.path.join(root, name)
            if not os.path.islink(fp):
                total += os.path.getsize(fp)
    return total


def compiled_path_for(input_path: str, output_dir: Optional[str] = None) -> str:
    base = os.path.splitext(os.path.basename(input_path.rstrip(os.sep)))[0]
    out_dir = output_dir or os.path.dirname(os.path.abspath(input_path))
    return os.path.join(out_dir, base + ".mlmodelc")


def compile_model(input_path: str, output_dir: Optional[str] = None, force: bool = False) -> CompileResult:
    """
    Compile ``input_path`` next to itself (or into ``output_dir``).

    An existing .mlmodelc newer than the package is reused unless ``force``.
    """
    if not os.path.exists(input_path):
        raise ModelLoadError(f"Input model not found: {input_path}")

    destination = compiled_path_for(input_path, output_dir)
    input_bytes = path_size(input_path)
    if (
        not force
        and os.path.isdir(destination)
        and os.path.getmtime(destination) >= os.path.getmtime(input_path)
    ):
        logger.info("Reusing compiled model %s", destination)
        return CompileResult(input_path, destination, input_bytes, path_size(destination), 0.0)

    try:
        import coremltools as ct
    except ImportError as exc:
        raise ModelLoadError("coremltools is not installed. Please `pip install coremltools`.") from exc

    logger.info("Compiling %s (%.2f GB), this may take several minutes", input_path, input_bytes / 1024 ** 3)
    t0 = time.perf_counter()
    if os.path.exists(destination):
        shutil.rmtree(destination)
    os.makedirs(os.path.dirname(destination), exist_ok=True)
    try:
        compiled = ct.models.utils.compile_model(input_path, destination_path=destination)
    except Exception as exc:
        raise ModelLoadError(f"Compilation failed for {input_path}: {exc}") from exc
    elapsed = time.perf_counter() - t0

    compiled = str(compiled or destination)
    result = CompileResult(input_path, compiled, input_bytes, path_size(compiled), elapsed)
    logger.info("Compiled %s in %.1fs -> %s", input_path, elapsed, compiled)
    return result


def main(argv=None):
    ap = argparse.ArgumentParser(prog="coreml-llama-compile", description="Compile a CoreML model package")
    ap.add_argument("input", help="Path to the .mlpackage")
    ap.add_argument("output_dir", nargs="?", default=None, help="Defaults to the input's directory")
    ap.add_argument("--force", action="store_true", help="Recompile even if an up-to-date .mlmodelc exists")
    args = ap.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        result = compile_model(args.input, args.output_dir, force=args.force)
    except ModelLoadError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    print(json.dumps(result.to_dict(), indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
