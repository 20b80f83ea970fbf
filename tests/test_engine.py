"""
Test Autoscaling Engine
=======================
Integration tests cho control loop: ingest -> evaluate -> reconcile -> audit.
"""

import time

import pytest
import pandas as pd
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from scaling_engine import (
    AutoscalingEngine,
    CooldownActive,
    EffectorFailure,
    EngineConfig,
    InvalidPolicy,
    InvalidSample,
    PolicyKind,
    ReasonCode,
    ResourceRequirements,
    ScalableTarget,
    ScalingEngineError,
    ScalingPolicy,
    TargetKind
)
from scaling_engine.audit import ACTION, DECISION, ERROR
from scaling_engine.effectors import InMemoryEffector
from scaling_engine.metrics import InMemoryMetricSource


BASE = pd.Timestamp('2024-01-01 00:00:00')


class FakeClock:
    def __init__(self, now=BASE):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + pd.Timedelta(**kwargs)


def web_policy(target_id='web', **kwargs):
    options = dict(metric='cpu', target_value=50.0, window='1min', cooldown='5min')
    options.update(kwargs)
    return ScalingPolicy(target_id, **options)


def web_target(target_id='web', capacity=2, min_capacity=1, max_capacity=5):
    return ScalableTarget(target_id, TargetKind.HORIZONTAL, capacity, min_capacity, max_capacity)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def effector():
    return InMemoryEffector()


@pytest.fixture
def engine(clock, effector):
    engine = AutoscalingEngine(EngineConfig(max_workers=4), effector=effector, clock=clock)
    yield engine
    engine.reconciler.shutdown()


class TestEvaluationPass:
    """Test cases cho tick()."""

    def test_scale_out_end_to_end(self, engine, effector, clock):
        """Test CPU 90% trên 2 instances -> scale-out lên 4."""
        engine.register(web_target(), web_policy())
        engine.ingest('web', 'cpu', 90.0, clock.now)

        report = engine.tick()

        assert report.applied['web'].new_capacity == 4
        assert engine.target('web').capacity == 4
        assert effector.calls == [('web', 4)]

    def test_audit_records(self, engine, clock):
        """Test mỗi decision / action sinh audit record đủ fields."""
        engine.register(web_target(), web_policy())
        engine.ingest('web', 'cpu', 90.0, clock.now)
        engine.tick()

        decision = engine.audit.records(event=DECISION)[-1]
        action = engine.audit.records(event=ACTION)[-1]

        assert decision.target_id == 'web'
        assert decision.detail['statistic'] == 90.0
        assert (action.old_value, action.new_value) == (2, 4)
        assert action.reason == 'target-tracking-scale-up'
        assert action.timestamp == clock.now

    def test_no_data_skips_target(self, engine, effector):
        """Test không có sample -> không scale (không coi là 0% CPU)."""
        engine.register(web_target(capacity=3), web_policy())

        report = engine.tick()

        assert report.skipped == {'web': 'insufficient-data'}
        assert report.applied == {}
        assert engine.target('web').capacity == 3
        assert effector.calls == []

    def test_stale_samples_outside_window(self, engine, clock):
        """Test samples cũ hơn window -> insufficient-data."""
        engine.register(web_target(), web_policy())
        engine.ingest('web', 'cpu', 90.0, clock.now)
        clock.advance(minutes=10)

        report = engine.tick()

        assert 'web' in report.skipped

    def test_effector_failure_isolated(self, engine, effector, clock):
        """Test effector lỗi ở target A không ảnh hưởng target B."""
        for tid in ('a', 'b'):
            engine.register(web_target(tid), web_policy(tid))
            engine.ingest(tid, 'cpu', 90.0, clock.now)
        effector.fail_for('a')

        report = engine.tick()

        assert report.rejected['a'].reason == ReasonCode.EFFECTOR_FAILURE
        assert report.applied['b'].new_capacity == 4
        assert engine.target('a').capacity == 2

    def test_unexpected_error_isolated(self, engine, clock, monkeypatch):
        """Test exception ở một target được ghi vào report, các targets khác vẫn chạy."""
        for tid in ('a', 'b'):
            engine.register(web_target(tid), web_policy(tid))
            engine.ingest(tid, 'cpu', 90.0, clock.now)

        original = engine.evaluator.evaluate

        def evaluate(target, policy, statistic, now=None):
            if target.target_id == 'a':
                raise RuntimeError("boom")
            return original(target, policy, statistic, now)

        monkeypatch.setattr(engine.evaluator, 'evaluate', evaluate)
        report = engine.tick()

        assert 'RuntimeError' in report.errors['a']
        assert 'b' in report.applied
        assert engine.audit.records(target_id='a', event=ERROR)

    def test_cooldown_across_ticks(self, engine, clock):
        """Test tick tiếp theo trong cooldown bị reject."""
        engine.register(web_target(), web_policy())
        engine.ingest('web', 'cpu', 90.0, clock.now)
        engine.tick()

        clock.advance(seconds=30)
        engine.ingest('web', 'cpu', 95.0, clock.now)
        report = engine.tick()

        assert report.rejected['web'].reason == ReasonCode.COOLDOWN_ACTIVE
        assert engine.target('web').capacity == 4

    def test_cooldown_uses_tick_time(self, engine, effector):
        """Test tick(now) tường minh: cooldown tính theo 'now' của tick, không theo clock."""
        engine.register(web_target(), web_policy(cooldown='5min'))
        engine.ingest('web', 'cpu', 90.0, BASE)
        first = engine.tick(BASE)

        assert first.applied['web'].timestamp == BASE
        assert engine.target('web').last_scale_time == BASE

        later = BASE + pd.Timedelta(minutes=5, seconds=1)
        engine.ingest('web', 'cpu', 95.0, later)
        report = engine.tick(later)

        # Clock vẫn đứng ở BASE
        assert engine.clock() == BASE
        assert report.applied['web'].new_capacity == 5
        assert report.applied['web'].timestamp == later
        assert effector.calls == [('web', 4), ('web', 5)]

    def test_tick_inside_cooldown_with_explicit_time(self, engine):
        engine.register(web_target(), web_policy(cooldown='5min'))
        engine.ingest('web', 'cpu', 90.0, BASE)
        engine.tick(BASE)

        later = BASE + pd.Timedelta(minutes=4)
        engine.ingest('web', 'cpu', 95.0, later)
        report = engine.tick(later)

        assert report.rejected['web'].reason == ReasonCode.COOLDOWN_ACTIVE
        assert report.rejected['web'].timestamp == later

    def test_tick_report_dataframe(self, engine, clock):
        """Test TickReport.to_dataframe."""
        engine.register(web_target(), web_policy())
        engine.register(web_target('idle'), web_policy('idle'))
        engine.ingest('web', 'cpu', 90.0, clock.now)

        df = engine.tick().to_dataframe().set_index('target_id')

        assert df.loc['web', 'outcome'] == 'applied'
        assert df.loc['idle', 'outcome'] == 'skipped'
        assert df.loc['idle', 'reason'] == 'insufficient-data'

    def test_ingest_out_of_order(self, engine, clock):
        """Test ingest sample cũ raise InvalidSample."""
        engine.register(web_target(), web_policy())
        engine.ingest('web', 'cpu', 50.0, clock.now)

        with pytest.raises(InvalidSample):
            engine.ingest('web', 'cpu', 50.0, clock.now - pd.Timedelta(seconds=1))


class TestVerticalTargets:
    """Test cases cho vertical recommendation qua engine."""

    @pytest.fixture
    def registered(self, engine):
        target = ScalableTarget(
            'api', TargetKind.VERTICAL,
            ResourceRequirements(requests={'cpu': 2.0}, limits={'cpu': 3.0}),
            min_capacity={'cpu': 0.1}, max_capacity={'cpu': 4.0}
        )
        policy = ScalingPolicy(
            'api', kind=PolicyKind.VERTICAL, resource_metrics={'cpu': 'cpu_usage'},
            history_window='1h', cooldown=0
        )
        engine.register(target, policy)
        return engine

    def test_scale_up_immediately(self, registered, clock):
        """Test usage vượt request -> tăng ngay."""
        for i in range(3):
            registered.ingest('api', 'cpu_usage', 3.0, clock.now)
            clock.advance(minutes=1)

        report = registered.tick()

        assert report.applied['api'].new_capacity.requests['cpu'] == pytest.approx(3.6)
        assert report.applied['api'].new_capacity.limits['cpu'] == pytest.approx(5.4)

    def test_transient_dip_held(self, registered, clock):
        """Test usage thấp nhưng chưa đủ history window -> giữ request."""
        for i in range(10):
            registered.ingest('api', 'cpu_usage', 0.5, clock.now)
            clock.advance(minutes=1)

        report = registered.tick()

        assert report.decisions['api'].reason == ReasonCode.TRANSIENT_DIP
        assert registered.target('api').capacity.requests['cpu'] == 2.0

    def test_sustained_low_usage_scales_down(self, registered, clock):
        """Test usage thấp liên tục cả history window -> giảm request."""
        for i in range(15):
            registered.ingest('api', 'cpu_usage', 0.5, clock.now)
            clock.advance(minutes=5)

        report = registered.tick()

        assert report.applied['api'].new_capacity.requests['cpu'] == pytest.approx(0.6)


class TestRegistration:
    """Test cases cho registration và policy config."""

    def test_policy_target_mismatch(self, engine):
        with pytest.raises(InvalidPolicy):
            engine.register(web_target('web'), web_policy('other'))

    def test_policy_kind_mismatch(self, engine):
        """Test vertical policy trên horizontal target bị reject."""
        with pytest.raises(InvalidPolicy):
            engine.register(web_target(), ScalingPolicy('web', kind=PolicyKind.VERTICAL))

    def test_invalid_policy(self, engine):
        """Test scale-down target cao hơn scale-up target bị reject."""
        with pytest.raises(InvalidPolicy):
            engine.register(web_target(), web_policy(scale_up_target=30.0, scale_down_target=70.0))
        assert engine.targets() == {}

    def test_register_from_config(self, engine):
        """Test load policy configuration mapping, entry lỗi không ảnh hưởng entries khác."""
        errors = engine.register_from_config({
            'web': {'metric': 'cpu', 'targetValue': 50, 'cooldown': 300,
                    'minCapacity': 2, 'maxCapacity': 5},
            'bad': {'metric': 'cpu', 'targetValue': -1},
        })

        assert list(errors) == ['bad']
        assert engine.target('web').capacity == 2
        assert engine.policy('web').cooldown == pd.Timedelta(minutes=5)
        assert engine.policy('web').dead_band_percent == engine.config.default_dead_band_percent

    def test_update_policy_keeps_capacity(self, engine, clock):
        """Test update policy không reset capacity và cooldown."""
        engine.register(web_target(), web_policy())
        engine.ingest('web', 'cpu', 90.0, clock.now)
        engine.tick()

        engine.update_policy(web_policy(target_value=70.0))

        assert engine.target('web').capacity == 4
        assert engine.target('web').last_scale_time == clock.now
        assert engine.policy('web').target_value == 70.0

    def test_ingest_unregistered_target(self, engine, clock):
        """Test sample cho target chưa đăng ký bị reject, aggregator không giữ gì."""
        with pytest.raises(InvalidSample):
            engine.ingest('ghost', 'cpu', 50.0, clock.now)

        assert engine.aggregator.series() == []
        assert 'ghost' not in engine.aggregator._locks

    def test_unregister_releases_metrics(self, engine, clock):
        engine.register(web_target(), web_policy())
        engine.ingest('web', 'cpu', 90.0, clock.now)

        engine.unregister('web')

        assert 'web' not in engine.aggregator._locks
        with pytest.raises(InvalidSample):
            engine.ingest('web', 'cpu', 90.0, clock.now)

    def test_unregister(self, engine, clock):
        engine.register(web_target(), web_policy())
        engine.ingest('web', 'cpu', 90.0, clock.now)

        assert engine.unregister('web')
        assert not engine.unregister('web')
        assert engine.tick().decisions == {}


class TestManualScaling:
    """Test cases cho request_capacity."""

    def test_manual_scale(self, engine):
        engine.register(web_target(), web_policy())

        result = engine.request_capacity('web', 3)

        assert result.new_capacity == 3
        assert result.reason == ReasonCode.MANUAL
        assert engine.audit.records(event=ACTION)[-1].detail == {'manual': True}

    def test_manual_scale_in_cooldown(self, engine):
        engine.register(web_target(), web_policy())
        engine.request_capacity('web', 3)

        with pytest.raises(CooldownActive):
            engine.request_capacity('web', 4)

    def test_manual_scale_effector_failure(self, engine, effector):
        engine.register(web_target(), web_policy())
        effector.fail_for('web')

        with pytest.raises(EffectorFailure):
            engine.request_capacity('web', 4)
        assert engine.target('web').capacity == 2

    def test_manual_scale_at_bound(self, engine):
        engine.register(web_target(capacity=5), web_policy())

        with pytest.raises(ScalingEngineError):
            engine.request_capacity('web', 9)


class TestPullIngestion:
    """Test cases cho engine với metric source."""

    def test_collector_feeds_engine(self, clock, effector):
        source = InMemoryMetricSource()
        engine = AutoscalingEngine(EngineConfig(), effector=effector, source=source, clock=clock)
        engine.register(web_target(), web_policy())

        assert engine.collector.watched() == [('web', 'cpu')]

        source.push('web', 'cpu', 90.0, clock.now)
        engine.collector.collect_once()
        report = engine.tick()
        engine.reconciler.shutdown()

        assert report.applied['web'].new_capacity == 4


class TestControlLoop:
    """Smoke tests cho start / stop."""

    def test_start_stop(self, effector):
        engine = AutoscalingEngine(EngineConfig(tick_interval=0.05), effector=effector)
        engine.start()
        try:
            deadline = time.time() + 2
            while engine.tick_count == 0 and time.time() < deadline:
                time.sleep(0.01)
            assert engine.running
        finally:
            engine.stop()
            engine.reconciler.shutdown()

        assert engine.tick_count > 0
        assert not engine.running
