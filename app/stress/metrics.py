"""WASIM v1.0 – Run Metrics.

Latency bands are cumulative: a 400 ms reply counts in ``lt_1s``, ``lt_5s``
and ``lt_30s``. They answer "how many replied within X", they are not a
histogram partition.
"""

from __future__ import annotations

import math
from typing import Iterable

from app.stress.models import RunOutcome, RunResult, RunStatus, RunSummary

LATENCY_BANDS: tuple[tuple[str, int], ...] = (
    ("lt_1s", 1_000),
    ("lt_5s", 5_000),
    ("lt_30s", 30_000),
)


def percentile(sorted_values: list[int], pct: float) -> int | None:
    """Nearest-rank percentile of an ascending list."""
    if not sorted_values:
        return None
    rank = max(1, math.ceil(pct / 100 * len(sorted_values)))
    return sorted_values[min(rank, len(sorted_values)) - 1]


def band_counts(latencies: Iterable[int]) -> dict[str, int]:
    counts = {name: 0 for name, _ in LATENCY_BANDS}
    for latency in latencies:
        for name, threshold in LATENCY_BANDS:
            if latency < threshold:
                counts[name] += 1
    return counts


def aggregate(
    results: Iterable[RunResult],
    wall_clock_duration_ms: int = 0,
    outcome: RunOutcome | None = None,
    persistence_degraded: bool = False,
) -> RunSummary:
    """Summarize a result set. Pure: same input, same summary."""
    total = success = error = no_response = pending = 0
    latencies: list[int] = []

    for result in results:
        total += 1
        if result.status is RunStatus.SUCCESS:
            success += 1
        elif result.status is RunStatus.ERROR:
            error += 1
        elif result.status is RunStatus.NO_RESPONSE:
            no_response += 1
        else:
            pending += 1
        if result.latency_ms is not None:
            latencies.append(result.latency_ms)

    latencies.sort()
    return RunSummary(
        total_dispatched=total,
        success_count=success,
        error_count=error,
        no_response_count=no_response,
        pending_count=pending,
        latency_bands=band_counts(latencies),
        min_latency_ms=latencies[0] if latencies else None,
        avg_latency_ms=round(sum(latencies) / len(latencies), 1) if latencies else None,
        p50_latency_ms=percentile(latencies, 50),
        p95_latency_ms=percentile(latencies, 95),
        max_latency_ms=latencies[-1] if latencies else None,
        wall_clock_duration_ms=wall_clock_duration_ms,
        outcome=outcome,
        persistence_degraded=persistence_degraded,
    )
