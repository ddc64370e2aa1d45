from __future__ import annotations

import threading

from common.utils import now_utc_iso

from coordinator.models import MetricsSnapshot


class MetricsStore:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._totals = {"requests": 0, "errors": 0, "server_errors": 0}
        self._endpoints: dict[str, dict[str, float | int]] = {}

    def observe(self, *, method: str, route: str, status_code: int, duration_ms: float) -> None:
        key = f"{method} {route}"
        bucket = f"{status_code // 100}xx"
        with self._lock:
            self._totals["requests"] += 1
            if status_code >= 400:
                self._totals["errors"] += 1
            if status_code >= 500:
                self._totals["server_errors"] += 1
            endpoint = self._endpoints.setdefault(
                key,
                {"count": 0, "2xx": 0, "4xx": 0, "5xx": 0, "latency_ms_sum": 0.0},
            )
            endpoint["count"] = int(endpoint["count"]) + 1
            if bucket in ("2xx", "4xx", "5xx"):
                endpoint[bucket] = int(endpoint[bucket]) + 1
            endpoint["latency_ms_sum"] = float(endpoint["latency_ms_sum"]) + duration_ms

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            endpoints: dict[str, dict[str, float | int]] = {}
            for key, value in self._endpoints.items():
                count = int(value["count"])
                endpoints[key] = {
                    **value,
                    "latency_ms_avg": round(float(value["latency_ms_sum"]) / count, 3),
                }
            return MetricsSnapshot(
                generated_at=now_utc_iso(),
                totals=dict(self._totals),
                endpoints=endpoints,
            )
