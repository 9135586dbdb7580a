import threading
from collections import Counter
from typing import List


class MetricsTracker:
    """Process-local request, retrieval and admission counters."""

    def __init__(self):

        self._lock = threading.Lock()

        self._metrics = {
            "total_requests": 0,
            "successful_requests": 0,
            "failed_requests": 0,
            "total_latency": 0.0,
            "avg_latency": 0.0,
        }

        self._latencies: List[float] = []
        self._tiers: Counter = Counter()
        self._denials: Counter = Counter()

    def record_success(self, latency: float):

        with self._lock:

            self._metrics["total_requests"] += 1
            self._metrics["successful_requests"] += 1
            self._metrics["total_latency"] += latency
            self._metrics["avg_latency"] = (
                self._metrics["total_latency"]
                / self._metrics["total_requests"]
            )

            self._latencies.append(latency)

    def record_failure(self):

        with self._lock:
            self._metrics["total_requests"] += 1
            self._metrics["failed_requests"] += 1

    def record_search(self, tier: str):

        with self._lock:
            self._tiers[tier] += 1

    def record_denial(self, window: str):

        with self._lock:
            self._denials[window] += 1

    def get_latency_percentile(self, percentile: float) -> float:

        with self._lock:
            latencies = sorted(self._latencies)

        if not latencies:
            return 0.0

        index = min(int(len(latencies) * percentile / 100), len(latencies) - 1)

        return latencies[index]

    def get_metrics(self) -> dict:

        with self._lock:
            snapshot = dict(self._metrics)
            snapshot["searches_by_tier"] = dict(self._tiers)
            snapshot["admission_denials"] = dict(self._denials)

        snapshot["p95_latency"] = self.get_latency_percentile(95)

        return snapshot


metrics_tracker = MetricsTracker()
