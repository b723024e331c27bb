import argparse
import logging
import os
import sys
import time
from typing import Optional

from .api import LlamaInference
from .memory import Conversation
from .runtime import COMPUTE_UNITS, DEFAULT_MAX_TOKENS, RuntimeConfig, apply_mode_defaults

HELP_TEXT = """Commands:
  quit/exit - Exit the chat
  reset     - Clear conversation history
  status    - Show conversation statistics
  help      - Show this help
  Otherwise, just type your message!
"""


def build_parser(prog: str = "coreml-llama", description: str = "CoreML Llama chat") -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=prog, description=description)
    parser.add_argument("model", type=str, help="Path to .mlpackage / .mlmodelc or a HF checkpoint directory")
    parser.add_argument("--runtime", type=str, default=None, choices=["coreml", "transformers"])
    parser.add_argument("--mode", type=str, default="balanced", choices=["tiny", "balanced", "high_throughput"])
    parser.add_argument("--compute-units", type=str, default=None, choices=COMPUTE_UNITS)
    parser.add_argument("--seq-length", type=int, default=None, help="Override detected sequence length")
    parser.add_argument("--no-compile", action="store_true", help="Load .mlpackage without precompiling")
    parser.add_argument("--device", type=str, default=None, choices=["mps", "cpu"])
    parser.add_argument("--dtype", type=str, default=None, choices=["float16", "bfloat16", "float32"])
    parser.add_argument("-v", "--verbose", action="count", default=0)
    return parser


def config_from_args(args) -> RuntimeConfig:
    cfg = apply_mode_defaults(RuntimeConfig(mode=args.mode))
    if args.compute_units:
        cfg.compute_units = args.compute_units
    cfg.seq_length = args.seq_length
    cfg.compile_model = not args.no_compile
    cfg.device = args.device
    cfg.dtype = args.dtype
    return cfg


def setup_logging(verbose: int) -> None:
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose >= 2:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def load_or_exit(args) -> Optional[LlamaInference]:
    """Construct and synchronously load a facade; None when loading failed."""
    if not os.path.exists(args.model):
        print(f"Model file not found: {args.model}", file=sys.stderr)
        return None
    print(f"Loading model from: {args.model}", file=sys.stderr)
    inference = LlamaInference(args.model, config=config_from_args(args), runtime_name=args.runtime)
    err = inference.load().exception()
    if err is not None:
        print(f"Failed to load model: {err}", file=sys.stderr)
        inference.close()
        return None
    return inference


def ask(
    inference: LlamaInference,
    prompt: str,
    max_tokens: int,
    out=None,
    conversation: Optional[Conversation] = None,
) -> bool:
    out = out or sys.stdout
    t0 = time.perf_counter()
    future = inference.generate(prompt, max_tokens=max_tokens, conversation=conversation)
    err = future.exception()
    if err is not None:
        print(f"Error: {err}", file=sys.stderr)
        return False
    print(future.result(), file=out)
    print(f"Generated in {time.perf_counter() - t0:.1f} seconds", file=sys.stderr)
    return True


def print_status(conversation: Conversation, seq_length: Optional[int], out) -> None:
    status = conversation.status(seq_length)
    print("Conversation status:", file=out)
    print(f"   Turns: {status['turns']}", file=out)
    print(f"   Total tokens: {status['total_tokens']}", file=out)
    print(f"   Sequence limit: {status['seq_length']}", file=out)
    print(f"   Sliding window: {'ACTIVE' if status['sliding_window'] else 'inactive'}\n", file=out)


def run_interactive(
    inference: LlamaInference,
    max_tokens: int,
    stdin=None,
    out=None,
    conversation: Optional[Conversation] = None,
) -> Conversation:
    """Chat until quit/exit or EOF; every turn shares one conversation."""
    stdin = stdin or sys.stdin
    out = out or sys.stdout
    conversation = conversation if conversation is not None else Conversation()
    print("Interactive mode started. Type 'quit' to exit.\n", file=sys.stderr)
    while True:
        print("You: ", end="", file=out, flush=True)
        line = stdin.readline()
        if not line:
            break
        text = line.strip()
        if not text:
            continue
        if text in ("quit", "exit"):
            break
        if text == "reset":
            conversation.reset()
            print("Conversation history reset\n", file=out)
            continue
        if text == "status":
            print_status(conversation, inference.seq_length, out)
            continue
        if text == "help":
            print(HELP_TEXT, file=out)
            continue
        print("Assistant: ", end="", file=out, flush=True)
        ask(inference, text, max_tokens, out=out, conversation=conversation)
        print(file=out)
    return conversation


def main(argv=None):
    parser = build_parser()
    parser.add_argument("prompt", type=str, nargs="?", default=None, help="Prompt text (interactive when omitted)")
    parser.add_argument("--max-tokens", type=int, default=DEFAULT_MAX_TOKENS)
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    inference = load_or_exit(args)
    if inference is None:
        return 1

    with inference:
        if args.prompt:
            ok = ask(inference, args.prompt, args.max_tokens)
            return 0 if ok else 1
        run_interactive(inference, args.max_tokens)
    print("Goodbye!", file=sys.stderr)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
