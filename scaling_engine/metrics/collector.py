"""
Metrics Collector
=================
Pull ingestion: định kỳ fetch samples từ một metric source (monitoring backend)
và ghi vào MetricsAggregator.

Collector chạy trên thread riêng nên không bao giờ block evaluation loop.
Source lỗi ở một series không ảnh hưởng các series khác.

Usage:
    >>> source = InMemoryMetricSource()
    >>> collector = MetricsCollector(aggregator, source, interval=15)
    >>> collector.watch('web', 'cpu')
    >>> collector.collect_once()
"""

import logging
import threading
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Protocol, Set, Tuple

import pandas as pd

from ..timeutils import DurationLike, TimestampLike, to_timedelta, to_timestamp
from .aggregator import MetricSample, MetricsAggregator

logger = logging.getLogger(__name__)


class MetricSource(Protocol):
    """Collaborator cung cấp samples (CloudWatch, Prometheus, metrics-server...)."""

    def fetch(
        self,
        target_id: str,
        metric: str,
        since: Optional[pd.Timestamp]
    ) -> Iterable[MetricSample]:
        ...


class InMemoryMetricSource:
    """
    Metric source trong memory, dùng cho tests và host tự push.

    fetch() trả về samples có timestamp > since.
    """

    def __init__(self):
        self._samples: Dict[Tuple[str, str], List[MetricSample]] = defaultdict(list)
        self._lock = threading.Lock()

    def push(self, target_id: str, metric: str, value: float, timestamp: TimestampLike):
        sample = MetricSample(target_id, metric, float(value), to_timestamp(timestamp))
        with self._lock:
            self._samples[(target_id, metric)].append(sample)

    def fetch(
        self,
        target_id: str,
        metric: str,
        since: Optional[pd.Timestamp]
    ) -> List[MetricSample]:
        with self._lock:
            samples = list(self._samples.get((target_id, metric), []))
        if since is not None:
            samples = [s for s in samples if s.timestamp > since]
        return sorted(samples, key=lambda s: s.timestamp)


class MetricsCollector:
    """
    Pull samples từ source cho mọi (target, metric) đang watch.

    Attributes:
        aggregator: MetricsAggregator đích
        source: MetricSource
        interval: Khoảng thời gian giữa 2 lần collect
        stats: Counters 'accepted', 'rejected', 'errors'
    """

    def __init__(
        self,
        aggregator: MetricsAggregator,
        source: MetricSource,
        interval: DurationLike = 15
    ):
        self.aggregator = aggregator
        self.source = source
        self.interval = to_timedelta(interval)
        self.stats = {"accepted": 0, "rejected": 0, "errors": 0}

        self._watched: Set[Tuple[str, str]] = set()
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def watch(self, target_id: str, metric: str):
        with self._lock:
            self._watched.add((target_id, metric))

    def unwatch(self, target_id: str, metric: Optional[str] = None):
        """Bỏ watch một metric, hoặc mọi metric của target nếu metric=None."""
        with self._lock:
            self._watched = {
                (t, m) for t, m in self._watched
                if not (t == target_id and (metric is None or m == metric))
            }

    def watched(self) -> List[Tuple[str, str]]:
        with self._lock:
            return sorted(self._watched)

    def collect_once(self) -> Dict[str, int]:
        """
        Pull một lượt cho mọi series đang watch.

        Returns:
            Dict counters của lượt này: accepted, rejected, errors
        """
        result = {"accepted": 0, "rejected": 0, "errors": 0}

        for target_id, metric in self.watched():
            since = self.aggregator.newest_timestamp(target_id, metric)
            try:
                samples = list(self.source.fetch(target_id, metric, since))
            except Exception:
                logger.exception(f"Metric source failed for {target_id}/{metric}")
                result["errors"] += 1
                continue

            accepted, rejected = self.aggregator.record_many(samples)
            result["accepted"] += accepted
            result["rejected"] += rejected

        for key, value in result.items():
            self.stats[key] += value

        if result["accepted"] or result["rejected"] or result["errors"]:
            logger.debug(f"Collected metrics: {result}")
        return result

    def _run(self):
        while not self._stop.is_set():
            try:
                self.collect_once()
            except Exception:
                logger.exception("Unexpected error in metrics collection")
            self._stop.wait(self.interval.total_seconds())

    def start(self):
        """Chạy collect loop trên daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="metrics-collector", daemon=True)
        self._thread.start()
        logger.info(f"Metrics collector started (interval={self.interval})")

    def stop(self, timeout: Optional[float] = 5.0):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Metrics collector stopped")
