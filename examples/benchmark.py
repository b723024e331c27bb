import argparse
import json
import sys
import time

from coreml_llama import LlamaInferenceError, RuntimeConfig, load


def bench_latency(inference, prompt: str, tokens: int) -> dict:
    t0 = time.perf_counter()
    _ = inference.generate(prompt, max_tokens=tokens).result()
    dt = time.perf_counter() - t0
    return {"tokens": tokens, "latency_s": dt, "tps": tokens / dt if dt > 0 else 0}


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--model", default="llama-2-7b-chat.mlpackage")
    ap.add_argument("--compute-units", default="all")
    ap.add_argument("--profile", default="./bench_trace.json")
    args = ap.parse_args()

    inference = load(args.model, config=RuntimeConfig(compute_units=args.compute_units))

    prompt_short = "Hello from coreml_llama."
    prompt_long = "Summarize the history of computing. " * 8

    with inference:
        try:
            results = {
                "latency": [
                    bench_latency(inference, prompt_short, 1),
                    bench_latency(inference, prompt_short, 8),
                    bench_latency(inference, prompt_short, 64),
                ],
                "long_prompt": bench_latency(inference, prompt_long, 32),
            }
        except LlamaInferenceError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return 1
        results["profiler_summary"] = inference.profiler.summary()
        inference.profiler.save_chrome_trace(args.profile)
    print(json.dumps(results, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
