"""Per-run counters for scraper and model calls.

An ingestion run opens a collector with `begin_run()`; provider clients report
into whatever collector is active in the current context, and `end_run()`
closes it and returns a summary suitable for a single structured log line.
Calls made outside a run are dropped.
"""
from __future__ import annotations

import contextvars
import time
from collections import Counter, defaultdict
from typing import Any, Dict, List, Optional


class _CallStats:
    __slots__ = ("count", "codes", "timings", "failures")

    def __init__(self) -> None:
        self.count = 0
        self.codes: Counter = Counter()
        self.timings: List[int] = []
        self.failures = 0


class RunCollector:
    def __init__(self) -> None:
        self.providers: Dict[str, _CallStats] = defaultdict(_CallStats)
        self.routes: Dict[str, Dict[str, _CallStats]] = defaultdict(lambda: defaultdict(_CallStats))
        self.models: Dict[str, _CallStats] = defaultdict(_CallStats)

    def summary(self) -> Dict[str, Any]:
        provider_out: Dict[str, Any] = {}
        for name, stats in self.providers.items():
            block: Dict[str, Any] = {
                "req": stats.count,
                "status": dict(stats.codes),
                "latency": latency_summary(stats.timings),
            }
            paths = self.routes.get(name) or {}
            if paths:
                block["endpoints"] = {
                    path: {"req": ep.count, "status": dict(ep.codes)} for path, ep in paths.items()
                }
            provider_out[name] = block
        llm_out = {
            key: {"calls": stats.count, "errors": stats.failures, "latency": latency_summary(stats.timings)}
            for key, stats in self.models.items()
        }
        return {"provider": provider_out, "llm": llm_out}


metrics_ctx: contextvars.ContextVar[Optional[RunCollector]] = contextvars.ContextVar("preik_run_metrics", default=None)


def now() -> float:
    return time.perf_counter()


def elapsed_ms(t0: float) -> int:
    return int((now() - t0) * 1000)


def _nearest_rank(ordered: List[int], pct: float) -> int:
    idx = int(round(pct / 100.0 * (len(ordered) - 1)))
    return ordered[min(max(idx, 0), len(ordered) - 1)]


def latency_summary(timings: List[int]) -> Dict[str, Optional[int]]:
    if not timings:
        return {"p50": None, "p95": None, "max": None}
    ordered = sorted(timings)
    return {"p50": _nearest_rank(ordered, 50), "p95": _nearest_rank(ordered, 95), "max": ordered[-1]}


def begin_run() -> None:
    metrics_ctx.set(RunCollector())


def end_run() -> Dict[str, Any]:
    collector = metrics_ctx.get()
    metrics_ctx.set(None)
    if collector is None:
        return {"provider": {}, "llm": {}}
    return collector.summary()


def record_http(provider: str, endpoint: str, status: int, latency_ms: int) -> None:
    collector = metrics_ctx.get()
    if collector is None:
        return
    code = str(int(status))
    stats = collector.providers[provider]
    stats.count += 1
    stats.codes[code] += 1
    stats.timings.append(int(latency_ms))
    route = collector.routes[provider][endpoint]
    route.count += 1
    route.codes[code] += 1


def record_llm(provider: str, model: str, *, latency_ms: int = 0, ok: bool = True) -> None:
    collector = metrics_ctx.get()
    if collector is None:
        return
    stats = collector.models[f"{provider}:{model}"]
    stats.count += 1
    if latency_ms:
        stats.timings.append(int(latency_ms))
    if not ok:
        stats.failures += 1
