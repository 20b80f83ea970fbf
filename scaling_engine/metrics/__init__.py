"""
Metrics Module
==============
Ingest và aggregate utilization samples.

Classes:
- MetricsAggregator: Rolling windows và windowed statistics
- MetricSample: Một sample (immutable)
- MetricsCollector: Pull samples từ metric source
- InMemoryMetricSource: Source trong memory
"""

from .aggregator import MetricSample, MetricWindow, MetricsAggregator, parse_aggregation
from .collector import InMemoryMetricSource, MetricsCollector, MetricSource

__all__ = [
    'MetricSample',
    'MetricWindow',
    'MetricsAggregator',
    'parse_aggregation',
    'InMemoryMetricSource',
    'MetricsCollector',
    'MetricSource'
]
