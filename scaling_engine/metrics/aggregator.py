"""
Metrics Aggregator
==================
Module ingest utilization samples và tính windowed statistics.

Chức năng chính:
    - Ghi samples theo (target, metric), reject sample out-of-order
    - Rolling window bounded theo retention của target (lazy eviction khi ghi)
    - Aggregation: mean, max, min, median, percentile (p95, p99, ...)

Concurrency:
    - Mỗi target có một lock riêng, serialize writes với evaluation reads
    - Không có global lock trên hot path

Usage:
    >>> agg = MetricsAggregator(default_retention=pd.Timedelta(hours=1))
    >>> agg.record('web', 'cpu', 72.5, pd.Timestamp('2024-01-01 00:00:00'))
    >>> agg.windowed_statistic('web', 'cpu', pd.Timedelta(minutes=5), 'p95',
    ...                        now=pd.Timestamp('2024-01-01 00:01:00'))
"""

import bisect
import logging
import math
import re
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import numpy as np
import pandas as pd

from ..errors import InvalidSample, NoData
from ..timeutils import DurationLike, TimestampLike, to_timedelta, to_timestamp, utc_now

logger = logging.getLogger(__name__)

_PERCENTILE_RE = re.compile(r"^p(\d+(?:\.\d+)?)$")

_AGGREGATIONS: Dict[str, Callable[[np.ndarray], float]] = {
    "mean": np.mean,
    "max": np.max,
    "min": np.min,
    "median": np.median,
}


def parse_aggregation(name: str) -> Callable[[np.ndarray], float]:
    """
    Parse tên aggregation thành function trên numpy array.

    Args:
        name: 'mean', 'max', 'min', 'median' hoặc 'pNN' (vd: 'p95', 'p99.9')

    Returns:
        Function nhận np.ndarray, trả về float

    Raises:
        ValueError: Nếu tên không hợp lệ
    """
    key = str(name).strip().lower()
    if key in _AGGREGATIONS:
        return _AGGREGATIONS[key]

    match = _PERCENTILE_RE.match(key)
    if match:
        q = float(match.group(1))
        if 0 < q <= 100:
            return lambda values: np.percentile(values, q)

    raise ValueError(f"Unknown aggregation: {name!r}")


@dataclass(frozen=True)
class MetricSample:
    """Một utilization sample. Immutable sau khi record."""
    target_id: str
    metric: str
    value: float
    timestamp: pd.Timestamp


class MetricWindow:
    """
    Buffer samples của một (target, metric), strictly time-ordered.

    Timestamps lưu dạng int64 nanoseconds để bisect nhanh.

    Attributes:
        target_id: Target ID
        metric: Metric name
        first_seen: Timestamp của sample đầu tiên từng được ghi (không bị evict)
    """

    def __init__(self, target_id: str, metric: str):
        self.target_id = target_id
        self.metric = metric
        self.first_seen: Optional[pd.Timestamp] = None
        self._times: List[int] = []
        self._values: List[float] = []

    def __len__(self) -> int:
        return len(self._times)

    @property
    def newest(self) -> Optional[pd.Timestamp]:
        if not self._times:
            return None
        return pd.Timestamp(self._times[-1])

    def append(self, timestamp: pd.Timestamp, value: float):
        ts = timestamp.value
        if self._times and ts <= self._times[-1]:
            raise InvalidSample(
                f"sample for {self.metric} at {timestamp} is not newer than {self.newest}",
                target_id=self.target_id,
            )
        self._times.append(ts)
        self._values.append(value)
        if self.first_seen is None:
            self.first_seen = timestamp

    def evict_before(self, cutoff: pd.Timestamp) -> int:
        """Xoá samples có timestamp < cutoff. Trả về số samples bị xoá."""
        idx = bisect.bisect_left(self._times, cutoff.value)
        if idx:
            del self._times[:idx]
            del self._values[:idx]
        return idx

    def values_between(self, start: pd.Timestamp, end: pd.Timestamp) -> np.ndarray:
        """Values trong [start, end] (inclusive 2 đầu)."""
        lo = bisect.bisect_left(self._times, start.value)
        hi = bisect.bisect_right(self._times, end.value)
        return np.asarray(self._values[lo:hi], dtype=float)

    def samples(self) -> List[MetricSample]:
        return [
            MetricSample(self.target_id, self.metric, v, pd.Timestamp(t))
            for t, v in zip(self._times, self._values)
        ]


class MetricsAggregator:
    """
    Aggregator chính: ghi samples và trả về windowed statistics.

    Attributes:
        default_retention: Retention cho target chưa có policy
        clock: Function trả về 'now' (pd.Timestamp)

    Example:
        >>> agg = MetricsAggregator()
        >>> agg.set_retention('web', pd.Timedelta(minutes=10))
        >>> for i, v in enumerate([40, 60, 80]):
        ...     agg.record('web', 'cpu', v, base + pd.Timedelta(seconds=30 * i))
        >>> agg.windowed_statistic('web', 'cpu', '5min', 'mean', now=base + pd.Timedelta(minutes=1))
        60.0
    """

    def __init__(
        self,
        default_retention: DurationLike = pd.Timedelta(hours=1),
        clock: Callable[[], pd.Timestamp] = utc_now
    ):
        self.default_retention = to_timedelta(default_retention)
        self.clock = clock

        # target_id -> metric -> MetricWindow; dict con chỉ mutate dưới lock của target
        self._windows: Dict[str, Dict[str, MetricWindow]] = {}
        self._retention: Dict[str, pd.Timedelta] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, target_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(target_id)
            if lock is None:
                lock = self._locks[target_id] = threading.Lock()
                self._windows[target_id] = {}
            return lock

    def _existing_lock(self, target_id: str) -> Optional[threading.Lock]:
        # Read path: không tạo entry cho target lạ
        with self._registry_lock:
            return self._locks.get(target_id)

    def _series(self, target_id: str) -> Dict[str, MetricWindow]:
        with self._registry_lock:
            return self._windows.get(target_id, {})

    def retention(self, target_id: str) -> pd.Timedelta:
        return self._retention.get(target_id, self.default_retention)

    def set_retention(self, target_id: str, duration: DurationLike):
        """Set retention = largest window của mọi policy trên target."""
        self._retention[target_id] = to_timedelta(duration)

    def remove_target(self, target_id: str):
        """Xoá toàn bộ samples, retention và lock của target."""
        lock = self._existing_lock(target_id)
        if lock is not None:
            with lock:
                self._series(target_id).clear()
            with self._registry_lock:
                self._locks.pop(target_id, None)
                self._windows.pop(target_id, None)
        self._retention.pop(target_id, None)

    def record(
        self,
        target_id: str,
        metric: str,
        value: float,
        timestamp: TimestampLike
    ) -> MetricSample:
        """
        Ghi một sample.

        Args:
            target_id: Target ID
            metric: Metric name
            value: Giá trị (finite)
            timestamp: Thời điểm đo

        Returns:
            MetricSample đã ghi

        Raises:
            InvalidSample: Nếu sample out-of-order hoặc value không hợp lệ
        """
        try:
            value = float(value)
            ts = to_timestamp(timestamp)
        except (TypeError, ValueError) as e:
            raise InvalidSample(f"malformed sample for {metric}: {e}", target_id=target_id)

        if not math.isfinite(value):
            raise InvalidSample(f"non-finite value for {metric}: {value}", target_id=target_id)

        with self._lock_for(target_id):
            series = self._series(target_id)
            window = series.get(metric)
            if window is None:
                window = series[metric] = MetricWindow(target_id, metric)

            window.append(ts, value)

            # Lazy eviction trên mọi series của target
            cutoff = ts - self.retention(target_id)
            for other in series.values():
                other.evict_before(cutoff)

        return MetricSample(target_id, metric, value, ts)

    def record_many(self, samples: Iterable[MetricSample]) -> Tuple[int, int]:
        """
        Ghi nhiều samples, sample lỗi bị log và bỏ qua.

        Returns:
            Tuple (accepted, rejected)
        """
        accepted = rejected = 0
        for sample in samples:
            try:
                self.record(sample.target_id, sample.metric, sample.value, sample.timestamp)
                accepted += 1
            except InvalidSample as e:
                logger.warning(f"Rejected sample: {e}")
                rejected += 1
        return accepted, rejected

    def _window(self, target_id: str, metric: str) -> Optional[MetricWindow]:
        # Caller phải giữ lock của target
        return self._series(target_id).get(metric)

    def newest_timestamp(self, target_id: str, metric: str) -> Optional[pd.Timestamp]:
        lock = self._existing_lock(target_id)
        if lock is None:
            return None
        with lock:
            window = self._window(target_id, metric)
            return window.newest if window is not None else None

    def observed_since(self, target_id: str, metric: str) -> Optional[pd.Timestamp]:
        """Timestamp của sample đầu tiên từng ghi cho series (None nếu chưa có)."""
        lock = self._existing_lock(target_id)
        if lock is None:
            return None
        with lock:
            window = self._window(target_id, metric)
            return window.first_seen if window is not None else None

    def window_values(
        self,
        target_id: str,
        metric: str,
        window: DurationLike,
        now: Optional[TimestampLike] = None
    ) -> np.ndarray:
        """Values trong [now - window, now]."""
        end = to_timestamp(now) if now is not None else self.clock()
        start = end - to_timedelta(window)

        lock = self._existing_lock(target_id)
        if lock is None:
            return np.asarray([], dtype=float)
        with lock:
            series = self._window(target_id, metric)
            if series is None:
                return np.asarray([], dtype=float)
            return series.values_between(start, end)

    def windowed_statistic(
        self,
        target_id: str,
        metric: str,
        window: DurationLike,
        aggregation: str = "mean",
        now: Optional[TimestampLike] = None
    ) -> float:
        """
        Tính aggregation trên samples trong [now - window, now].

        Args:
            target_id: Target ID
            metric: Metric name
            window: Độ dài window
            aggregation: 'mean', 'max', 'min', 'median', 'pNN'
            now: Thời điểm cuối window (mặc định: clock())

        Returns:
            Giá trị statistic

        Raises:
            NoData: Nếu window không có sample nào
        """
        func = parse_aggregation(aggregation)
        values = self.window_values(target_id, metric, window, now)
        if values.size == 0:
            raise NoData(f"no samples for {metric} in the last {to_timedelta(window)}", target_id=target_id)
        return float(func(values))

    def series(self, target_id: Optional[str] = None) -> List[Tuple[str, str]]:
        """List các (target, metric) đang có samples."""
        with self._registry_lock:
            targets = [t for t in self._windows if target_id is None or t == target_id]

        keys = []
        for tid in targets:
            lock = self._existing_lock(tid)
            if lock is None:
                continue
            with lock:
                keys.extend((tid, metric) for metric, w in self._series(tid).items() if len(w))
        return keys

    def to_dataframe(self, target_id: Optional[str] = None) -> pd.DataFrame:
        """Samples đang retain dưới dạng DataFrame."""
        rows = []
        for tid, metric in self.series(target_id):
            lock = self._existing_lock(tid)
            if lock is None:
                continue
            with lock:
                window = self._window(tid, metric)
                samples = window.samples() if window is not None else []
            rows.extend(
                {"timestamp": s.timestamp, "target_id": s.target_id, "metric": s.metric, "value": s.value}
                for s in samples
            )

        if not rows:
            return pd.DataFrame(columns=["timestamp", "target_id", "metric", "value"])
        return pd.DataFrame(rows).sort_values(["target_id", "metric", "timestamp"]).reset_index(drop=True)
