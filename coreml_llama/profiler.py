"""
Simple profiling utilities: load/generate latency, token throughput, memory.

Traces can be exported in Chrome tracing format for inspection in
chrome://tracing or Perfetto.
"""

from __future__ import annotations

import json
import os
import resource
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class Profiler:
    enable: bool = True
    events: Dict[str, List[float]] = field(default_factory=dict)
    counters: Dict[str, float] = field(default_factory=dict)
    trace_events: List[Dict[str, Any]] = field(default_factory=list)  # Chrome trace format
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def now(self) -> float:
        return time.perf_counter()

    def mark(self, name: str, t0: float) -> None:
        if not self.enable:
            return
        dt = time.perf_counter() - t0
        with self._lock:
            self.events.setdefault(name, []).append(round(dt, 6))
            self._add_trace_complete(name=name, dur_s=dt, cat="phase")

    def span(self, name: str, cat: str = "phase"):
        """
        Context manager to capture a timed span, recorded into events and chrome trace.
        Usage: with profiler.span("generate"): ...
        """
        profiler = self

        class _Span:
            def __enter__(self_inner):
                self_inner.t0 = time.perf_counter()
                self_inner.ts_us = time.time() * 1e6
                return self_inner

            def __exit__(self_inner, exc_type, exc, tb):
                if not profiler.enable:
                    return False
                dt = time.perf_counter() - self_inner.t0
                with profiler._lock:
                    profiler.events.setdefault(name, []).append(round(dt, 6))
                    profiler._add_trace_complete(name=name, dur_s=dt, cat=cat, ts_us=self_inner.ts_us)
                return False

        return _Span()

    def add_tokens(self, n: int = 1) -> None:
        self._count("tokens", n)

    def add_error(self, n: int = 1) -> None:
        self._count("errors", n)

    def _count(self, key: str, n: int) -> None:
        if not self.enable:
            return
        with self._lock:
            self.counters[key] = self.counters.get(key, 0) + n

    def tokens_per_second(self) -> Optional[float]:
        total = sum(self.events.get("generate_total", []))
        tokens = self.counters.get("tokens", 0)
        if total <= 0 or tokens <= 0:
            return None
        return tokens / total

    def summary(self) -> str:
        if not self.events:
            return ""
        parts = []
        for k, v in self.events.items():
            parts.append(f"{k}: n={len(v)} sum={sum(v):.3f}s avg={(sum(v)/len(v)):.4f}s")
        mem = self._memory_summary()
        if mem:
            parts.append(mem)
        tps = self.tokens_per_second()
        if tps is not None:
            parts.append(f"throughput={tps:.2f} tok/s")
        if self.counters:
            parts.append("counters=" + ",".join(f"{k}:{int(v)}" for k, v in self.counters.items()))
        return " | ".join(parts)

    def _memory_summary(self) -> str:
        usage = resource.getrusage(resource.RUSAGE_SELF)
        # ru_maxrss is bytes on macOS, KB on Linux
        divisor = 1024.0 * 1024.0 if os.uname().sysname == "Darwin" else 1024.0
        return f"max_rss={usage.ru_maxrss / divisor:.1f}MB"

    def _add_trace_complete(self, name: str, dur_s: float, cat: str = "phase", ts_us: Optional[float] = None) -> None:
        if ts_us is None:
            ts_us = time.time() * 1e6 - dur_s * 1e6
        self.trace_events.append({
            "name": name, "cat": cat, "ph": "X", "ts": ts_us, "dur": dur_s * 1e6,
            "pid": os.getpid(), "tid": threading.get_ident(),
        })

    def to_chrome_trace(self) -> str:
        """Return a Chrome trace JSON string."""
        with self._lock:
            return json.dumps({"traceEvents": list(self.trace_events)}, indent=2)

    def save_chrome_trace(self, path: str) -> None:
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "w") as f:
            f.write(self.to_chrome_trace())

    def reset(self) -> None:
        with self._lock:
            self.events.clear()
            self.counters.clear()
            self.trace_events.clear()
