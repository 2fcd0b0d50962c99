"""Attempt-level metrics.

Every dispatch attempt is appended to a daily ``attempts-YYYYMMDD.jsonl``
audit file. A Prometheus text exposition with ``relay_attempts_total`` and
``relay_attempt_latency_seconds`` is kept in memory and rewritten atomically to
``prometheus.prom`` after each record so a node exporter can scrape it.
"""

from __future__ import annotations

import asyncio
import json
import os
import threading
import time
from collections import defaultdict
from typing import Any, Optional

_PROM_FILE = "prometheus.prom"
_HISTOGRAM_BUCKETS: tuple[float, ...] = (0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0)


def _new_histogram_state() -> dict[str, Any]:
    return {"buckets": [0] * (len(_HISTOGRAM_BUCKETS) + 1), "count": 0, "sum": 0.0}


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


class _PromMetrics:
    __slots__ = ("_dir", "_lock", "_counter", "_histogram")

    def __init__(self, dirpath: str) -> None:
        self._dir = dirpath
        self._lock = threading.Lock()
        self._counter: defaultdict[tuple[str, str], int] = defaultdict(int)
        self._histogram: defaultdict[str, dict[str, Any]] = defaultdict(_new_histogram_state)

    def record(self, payload: dict[str, Any]) -> None:
        profile = str(payload.get("profile") or "unknown")
        outcome = str(payload.get("outcome") or "unknown")
        latency_ms = payload.get("latency_ms")

        with self._lock:
            self._counter[(profile, outcome)] += 1
            # skipped attempts never reach a backend and carry no latency
            if isinstance(latency_ms, (int, float)) and not isinstance(latency_ms, bool):
                latency_seconds = max(float(latency_ms) / 1000.0, 0.0)
                hist_state = self._histogram[profile]
                buckets = hist_state["buckets"]
                for idx, bound in enumerate(_HISTOGRAM_BUCKETS):
                    if latency_seconds <= bound:
                        buckets[idx] += 1
                buckets[-1] += 1
                hist_state["count"] += 1
                hist_state["sum"] += latency_seconds
            self._write_locked()

    def render(self) -> str:
        with self._lock:
            return self._render_locked()

    def _render_locked(self) -> str:
        lines: list[str] = [
            "# HELP relay_attempts_total Dispatch attempts by profile and outcome",
            "# TYPE relay_attempts_total counter",
        ]
        for (profile, outcome), value in sorted(self._counter.items()):
            lines.append(
                f'relay_attempts_total{{profile="{_escape_label(profile)}",outcome="{_escape_label(outcome)}"}} {value}'
            )
        lines.append("# HELP relay_attempt_latency_seconds Backend latency of dispatch attempts")
        lines.append("# TYPE relay_attempt_latency_seconds histogram")
        for profile, state in sorted(self._histogram.items()):
            label = _escape_label(profile)
            buckets = state["buckets"]
            for idx, bound in enumerate(_HISTOGRAM_BUCKETS):
                le_value = format(bound, ".6g")
                lines.append(
                    f'relay_attempt_latency_seconds_bucket{{profile="{label}",le="{le_value}"}} {buckets[idx]}'
                )
            lines.append(f'relay_attempt_latency_seconds_bucket{{profile="{label}",le="+Inf"}} {buckets[-1]}')
            lines.append(f'relay_attempt_latency_seconds_count{{profile="{label}"}} {state["count"]}')
            lines.append(f'relay_attempt_latency_seconds_sum{{profile="{label}"}} {state["sum"]}')
        return "\n".join(lines) + "\n"

    def _write_locked(self) -> None:
        os.makedirs(self._dir, exist_ok=True)
        prom_path = os.path.join(self._dir, _PROM_FILE)
        tmp_path = f"{prom_path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as handle:
            handle.write(self._render_locked())
        os.replace(tmp_path, prom_path)


class MetricsLogger:
    def __init__(self, dirpath: str):
        self.dir = dirpath
        os.makedirs(self.dir, exist_ok=True)
        self._lock: Optional[asyncio.Lock] = None
        self._prom = _PromMetrics(self.dir)

    def _file(self) -> str:
        return os.path.join(self.dir, f"attempts-{time.strftime('%Y%m%d')}.jsonl")

    async def write(self, record: dict[str, Any]) -> None:
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            with open(self._file(), "a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, ensure_ascii=False) + "\n")
        self._prom.record(record)

    def render_prometheus(self) -> str:
        return self._prom.render()
