"""
Test Metrics Module
===================
Unit tests cho MetricsAggregator và MetricsCollector.
"""

import statistics

import pytest
import pandas as pd
import numpy as np
import sys
import os

from hypothesis import given, settings, strategies as st

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from scaling_engine.errors import InvalidSample, NoData
from scaling_engine.metrics import (
    InMemoryMetricSource,
    MetricSample,
    MetricsAggregator,
    MetricsCollector,
    parse_aggregation
)


BASE = pd.Timestamp('2024-01-01 00:00:00')


def at(seconds):
    return BASE + pd.Timedelta(seconds=seconds)


DIRECT_AGGREGATIONS = {
    'mean': statistics.fmean,
    'max': max,
    'min': min,
    'median': statistics.median,
    'p90': lambda values: np.percentile(values, 90),
}


class TestParseAggregation:
    """Test cases cho parse_aggregation."""

    def test_named_aggregations(self):
        """Test mean / max / min / median."""
        values = np.array([10.0, 20.0, 60.0])

        assert parse_aggregation('mean')(values) == 30.0
        assert parse_aggregation('max')(values) == 60.0
        assert parse_aggregation('min')(values) == 10.0
        assert parse_aggregation('median')(values) == 20.0

    def test_percentile(self):
        """Test pNN aggregation."""
        values = np.arange(1, 101, dtype=float)

        assert parse_aggregation('p95')(values) == pytest.approx(np.percentile(values, 95))
        assert parse_aggregation('P99.9')(values) == pytest.approx(np.percentile(values, 99.9))

    @pytest.mark.parametrize('name', ['avg', 'p0', 'p101', '', 'p'])
    def test_invalid_names(self, name):
        """Test tên aggregation không hợp lệ."""
        with pytest.raises(ValueError):
            parse_aggregation(name)


class TestMetricsAggregator:
    """Test cases cho MetricsAggregator."""

    @pytest.fixture
    def aggregator(self):
        """Aggregator với retention 10 phút."""
        agg = MetricsAggregator(default_retention=pd.Timedelta(minutes=10), clock=lambda: at(600))
        return agg

    def test_windowed_mean(self, aggregator):
        """Test mean trên window."""
        for i, value in enumerate([40, 60, 80]):
            aggregator.record('web', 'cpu', value, at(30 * i))

        result = aggregator.windowed_statistic('web', 'cpu', '5min', 'mean', now=at(60))
        assert result == 60.0

    def test_window_excludes_old_samples(self, aggregator):
        """Test samples ngoài window không được tính."""
        aggregator.record('web', 'cpu', 100, at(0))
        aggregator.record('web', 'cpu', 20, at(240))
        aggregator.record('web', 'cpu', 40, at(300))

        # Window [120, 300] chỉ gồm 20 và 40
        result = aggregator.windowed_statistic('web', 'cpu', 180, 'mean', now=at(300))
        assert result == 30.0

    def test_window_bounds_inclusive(self, aggregator):
        """Test sample đúng tại now - window vẫn được tính."""
        aggregator.record('web', 'cpu', 10, at(0))
        aggregator.record('web', 'cpu', 30, at(60))

        result = aggregator.windowed_statistic('web', 'cpu', 60, 'mean', now=at(60))
        assert result == 20.0

    def test_out_of_order_rejected(self, aggregator):
        """Test sample cũ hơn sample mới nhất bị reject."""
        aggregator.record('web', 'cpu', 50, at(60))

        with pytest.raises(InvalidSample):
            aggregator.record('web', 'cpu', 70, at(30))

        # Window không đổi
        assert aggregator.windowed_statistic('web', 'cpu', 120, 'max', now=at(60)) == 50.0

    def test_equal_timestamp_rejected(self, aggregator):
        """Test sample có cùng timestamp bị reject."""
        aggregator.record('web', 'cpu', 50, at(60))

        with pytest.raises(InvalidSample):
            aggregator.record('web', 'cpu', 55, at(60))

    def test_series_are_independent(self, aggregator):
        """Test ordering được check riêng cho từng (target, metric)."""
        aggregator.record('web', 'cpu', 50, at(60))
        aggregator.record('web', 'memory', 10, at(30))
        aggregator.record('api', 'cpu', 20, at(0))

        assert set(aggregator.series()) == {('web', 'cpu'), ('web', 'memory'), ('api', 'cpu')}

    @pytest.mark.parametrize('value', [float('nan'), float('inf'), 'abc'])
    def test_invalid_values_rejected(self, aggregator, value):
        """Test value không hợp lệ bị reject."""
        with pytest.raises(InvalidSample):
            aggregator.record('web', 'cpu', value, at(0))

    def test_empty_window_raises_no_data(self, aggregator):
        """Test window rỗng raise NoData thay vì trả về 0."""
        with pytest.raises(NoData):
            aggregator.windowed_statistic('web', 'cpu', '5min', now=at(0))

        aggregator.record('web', 'cpu', 50, at(0))
        with pytest.raises(NoData):
            aggregator.windowed_statistic('web', 'cpu', 60, now=at(600))

    def test_retention_eviction(self, aggregator):
        """Test samples cũ hơn retention bị evict khi ghi."""
        aggregator.record('web', 'cpu', 90, at(0))
        aggregator.record('web', 'cpu', 10, at(900))

        # Retention 10 phút: sample tại t=0 đã bị evict
        values = aggregator.window_values('web', 'cpu', '1h', now=at(900))
        assert list(values) == [10.0]

    def test_eviction_covers_all_series_of_target(self, aggregator):
        """Test eviction chạy trên mọi metric của target."""
        aggregator.record('web', 'memory', 70, at(0))
        aggregator.record('web', 'cpu', 10, at(900))

        assert len(aggregator.window_values('web', 'memory', '1h', now=at(900))) == 0

    def test_custom_retention(self, aggregator):
        """Test retention riêng theo target."""
        aggregator.set_retention('web', '1h')
        aggregator.record('web', 'cpu', 90, at(0))
        aggregator.record('web', 'cpu', 10, at(900))

        assert aggregator.retention('web') == pd.Timedelta(hours=1)
        assert len(aggregator.window_values('web', 'cpu', '1h', now=at(900))) == 2

    def test_observed_since_survives_eviction(self, aggregator):
        """Test first_seen không bị reset bởi eviction."""
        aggregator.record('web', 'cpu', 90, at(0))
        aggregator.record('web', 'cpu', 10, at(900))

        assert aggregator.observed_since('web', 'cpu') == at(0)
        assert aggregator.newest_timestamp('web', 'cpu') == at(900)
        assert aggregator.observed_since('web', 'disk') is None

    def test_epoch_and_string_timestamps(self, aggregator):
        """Test timestamp dạng epoch seconds và ISO string."""
        sample = aggregator.record('web', 'cpu', 1, 0)
        assert sample.timestamp == pd.Timestamp('1970-01-01')

        sample = aggregator.record('web', 'cpu', 2, '2024-01-01T00:00:00+07:00')
        assert sample.timestamp == pd.Timestamp('2023-12-31 17:00:00')

    def test_remove_target(self, aggregator):
        """Test remove_target xoá samples."""
        aggregator.record('web', 'cpu', 50, at(0))
        aggregator.remove_target('web')

        assert aggregator.series('web') == []
        # Ordering reset cùng với series
        aggregator.record('web', 'cpu', 50, at(0))

    def test_remove_target_releases_entries(self, aggregator):
        """Test remove_target bỏ luôn lock và series map của target."""
        aggregator.record('web', 'cpu', 50, at(0))
        aggregator.set_retention('web', '10min')

        aggregator.remove_target('web')

        assert 'web' not in aggregator._locks
        assert 'web' not in aggregator._windows
        assert aggregator.retention('web') == aggregator.default_retention

    def test_reads_do_not_create_entries(self, aggregator):
        """Test đọc target chưa có sample không làm map lớn thêm."""
        with pytest.raises(NoData):
            aggregator.windowed_statistic('ghost', 'cpu', 60, now=at(0))
        assert aggregator.newest_timestamp('ghost', 'cpu') is None
        assert aggregator.observed_since('ghost', 'cpu') is None
        aggregator.remove_target('ghost')

        assert aggregator._locks == {}
        assert aggregator._windows == {}

    def test_record_many(self, aggregator):
        """Test record_many đếm accepted / rejected."""
        samples = [
            MetricSample('web', 'cpu', 10.0, at(0)),
            MetricSample('web', 'cpu', 20.0, at(30)),
            MetricSample('web', 'cpu', 30.0, at(15)),
        ]
        assert aggregator.record_many(samples) == (2, 1)

    def test_to_dataframe(self, aggregator):
        """Test export samples sang DataFrame."""
        aggregator.record('web', 'cpu', 10, at(0))
        aggregator.record('web', 'cpu', 20, at(30))

        df = aggregator.to_dataframe()
        assert list(df.columns) == ['timestamp', 'target_id', 'metric', 'value']
        assert df['value'].tolist() == [10.0, 20.0]

    def test_default_now_uses_clock(self, aggregator):
        """Test now mặc định lấy từ clock."""
        aggregator.record('web', 'cpu', 42, at(590))

        assert aggregator.windowed_statistic('web', 'cpu', 60) == 42.0

    @settings(max_examples=50, deadline=None)
    @given(
        stale=st.lists(
            st.floats(min_value=0, max_value=1000, allow_nan=False), max_size=20
        ),
        values=st.lists(
            st.floats(min_value=0, max_value=1000, allow_nan=False), min_size=1, max_size=50
        ),
        aggregation=st.sampled_from(sorted(DIRECT_AGGREGATIONS))
    )
    def test_statistic_matches_direct_aggregation(self, stale, values, aggregation):
        """Test statistic bằng aggregation tính trực tiếp, chỉ trên samples trong window."""
        agg = MetricsAggregator(default_retention='1h')
        # Samples cũ vẫn trong retention nhưng nằm ngoài window 100s
        for i, value in enumerate(stale):
            agg.record('web', 'cpu', value, at(i))
        for i, value in enumerate(values):
            agg.record('web', 'cpu', value, at(1000 + i))

        expected = DIRECT_AGGREGATIONS[aggregation](list(values))
        result = agg.windowed_statistic(
            'web', 'cpu', '100s', aggregation, now=at(1000 + len(values) - 1)
        )
        assert result == pytest.approx(expected)


class TestMetricsCollector:
    """Test cases cho MetricsCollector (pull ingestion)."""

    @pytest.fixture
    def setup(self):
        aggregator = MetricsAggregator(default_retention='1h')
        source = InMemoryMetricSource()
        collector = MetricsCollector(aggregator, source, interval=1)
        collector.watch('web', 'cpu')
        return aggregator, source, collector

    def test_collect_once(self, setup):
        """Test pull samples vào aggregator."""
        aggregator, source, collector = setup
        source.push('web', 'cpu', 10, at(0))
        source.push('web', 'cpu', 30, at(30))

        result = collector.collect_once()

        assert result == {'accepted': 2, 'rejected': 0, 'errors': 0}
        assert aggregator.windowed_statistic('web', 'cpu', 60, now=at(30)) == 20.0

    def test_collect_only_new_samples(self, setup):
        """Test lượt sau chỉ fetch samples mới hơn."""
        aggregator, source, collector = setup
        source.push('web', 'cpu', 10, at(0))
        collector.collect_once()
        source.push('web', 'cpu', 30, at(30))

        assert collector.collect_once()['accepted'] == 1
        assert collector.stats['accepted'] == 2

    def test_source_failure_isolated(self, setup):
        """Test source lỗi ở một series không ảnh hưởng series khác."""
        aggregator, source, collector = setup
        collector.watch('broken', 'cpu')
        source.push('web', 'cpu', 10, at(0))

        original_fetch = source.fetch

        def fetch(target_id, metric, since):
            if target_id == 'broken':
                raise ConnectionError("backend down")
            return original_fetch(target_id, metric, since)

        source.fetch = fetch
        result = collector.collect_once()

        assert result['errors'] == 1
        assert result['accepted'] == 1

    def test_unwatch(self, setup):
        """Test unwatch theo target."""
        aggregator, source, collector = setup
        collector.watch('web', 'memory')
        collector.unwatch('web', 'cpu')
        assert collector.watched() == [('web', 'memory')]

        collector.unwatch('web')
        assert collector.watched() == []
