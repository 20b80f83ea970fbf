"""
Autoscaling Engine
==================
Control loop chính: samples -> Aggregator -> statistic -> Evaluator
-> decision -> Reconciler -> action -> Effector.

Scheduling:
    - Một ticker cố định (tick_interval) chạy một evaluation pass trên mọi target
    - Các targets được evaluate song song trên bounded worker pool
    - Lỗi ở một target không abort các targets khác

Usage:
    >>> engine = AutoscalingEngine(EngineConfig(), effector=InMemoryEffector())
    >>> engine.register(target, policy)
    >>> engine.ingest('web', 'cpu', 90.0, now)
    >>> report = engine.tick(now)
    >>> report.applied
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

import pandas as pd

from ..audit import ACTION, DECISION, ERROR, REJECTED, AuditLog, AuditRecord
from ..config import EngineConfig
from ..effectors import DryRunEffector, Effector
from ..errors import InvalidPolicy, InvalidSample, NoData
from ..metrics.aggregator import MetricsAggregator
from ..metrics.collector import MetricsCollector, MetricSource
from ..timeutils import TimestampLike, to_timestamp, utc_now
from .evaluator import PolicyEvaluator, ResourceUsage, Statistic
from .policy_config import load_policy_config
from .policy import (
    Capacity,
    ReasonCode,
    ResourceRequirements,
    ScalableTarget,
    ScaleAction,
    ScalingDecision,
    ScalingPolicy,
    TargetKind,
    validate_policy
)
from .reconciler import AppliedAction, Reconciler, Rejected

logger = logging.getLogger(__name__)


def capacity_value(capacity: Capacity) -> Any:
    """Capacity dạng plain value cho audit / JSON."""
    if isinstance(capacity, ResourceRequirements):
        return capacity.as_dict()
    return capacity


@dataclass
class TickReport:
    """
    Kết quả của một evaluation pass.

    Attributes:
        timestamp: Thời điểm tick
        decisions: Decision của mỗi target đã evaluate
        applied: Actions đã apply
        rejected: Decisions bị reject (cooldown, at-bound, effector failure)
        skipped: Targets bị skip vì không có data
        errors: Lỗi không mong muốn theo target
    """
    timestamp: pd.Timestamp
    decisions: Dict[str, ScalingDecision] = field(default_factory=dict)
    applied: Dict[str, AppliedAction] = field(default_factory=dict)
    rejected: Dict[str, Rejected] = field(default_factory=dict)
    skipped: Dict[str, str] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)

    def to_dataframe(self) -> pd.DataFrame:
        rows = []
        for target_id, decision in self.decisions.items():
            outcome = "noop"
            if target_id in self.applied:
                outcome = "applied"
            elif target_id in self.rejected and not decision.is_noop:
                outcome = "rejected"
            elif target_id in self.skipped:
                outcome = "skipped"

            result = self.applied.get(target_id) or self.rejected.get(target_id)
            rows.append({
                'target_id': target_id,
                'outcome': outcome,
                'action': decision.action.value,
                'current': capacity_value(decision.current),
                'proposed': capacity_value(decision.proposed),
                'reason': (result.reason if result is not None else decision.reason).value
            })
        for target_id, error in self.errors.items():
            rows.append({'target_id': target_id, 'outcome': 'error', 'reason': error})
        return pd.DataFrame(rows)


class AutoscalingEngine:
    """
    Engine chính cho autoscaling decisions.

    State được partition theo target_id: window của Aggregator và
    ScalableTarget của Reconciler, mỗi target có lock riêng.

    Attributes:
        config: EngineConfig
        aggregator: MetricsAggregator
        evaluator: PolicyEvaluator
        reconciler: Reconciler
        collector: MetricsCollector (None nếu không có pull source)
        audit: AuditLog
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        effector: Optional[Effector] = None,
        source: Optional[MetricSource] = None,
        clock: Optional[Callable[[], pd.Timestamp]] = None,
        audit: Optional[AuditLog] = None
    ):
        """
        Khởi tạo engine.

        Args:
            config: Cấu hình engine (mặc định EngineConfig())
            effector: Effector collaborator (mặc định DryRunEffector)
            source: Metric source cho pull ingestion (optional)
            clock: Function trả về 'now' (mặc định: UTC now)
            audit: AuditLog (mặc định tạo mới với config.audit_maxlen)
        """
        self.config = config or EngineConfig()
        self.clock = clock or utc_now

        if effector is None:
            effector = DryRunEffector()
            if not self.config.dry_run:
                logger.warning("No effector injected, falling back to dry-run")

        self.aggregator = MetricsAggregator(self.config.default_retention, clock=self.clock)
        self.evaluator = PolicyEvaluator()
        self.reconciler = Reconciler(
            effector,
            clock=self.clock,
            effector_timeout=self.config.effector_timeout,
            max_workers=self.config.max_workers
        )
        self.collector = (
            MetricsCollector(self.aggregator, source, self.config.collect_interval)
            if source is not None else None
        )
        self.audit = audit or AuditLog(maxlen=self.config.audit_maxlen)

        self._policies: Dict[str, ScalingPolicy] = {}
        self._policy_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.tick_count = 0

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def register(self, target: ScalableTarget, policy: ScalingPolicy) -> ScalableTarget:
        """
        Đăng ký target với policy. Policy cũ (nếu có) bị thay toàn bộ.

        Raises:
            InvalidPolicy: Policy hoặc target sai; target không được quản lý
        """
        if policy.target_id != target.target_id:
            raise InvalidPolicy(
                f"policy is for {policy.target_id!r}", target_id=target.target_id
            )
        validate_policy(policy)
        if policy.is_vertical != target.is_vertical:
            raise InvalidPolicy(
                f"{policy.kind.value} policy does not fit a {TargetKind(target.kind).value} target",
                target_id=target.target_id
            )

        target = self.reconciler.register(target)
        with self._policy_lock:
            self._policies[target.target_id] = policy

        self.aggregator.set_retention(target.target_id, policy.largest_window)
        if self.collector is not None:
            self.collector.unwatch(target.target_id)
            for metric in policy.metrics():
                self.collector.watch(target.target_id, metric)

        logger.info(
            f"Registered {target.target_id} ({policy.kind.value}, capacity={capacity_value(target.capacity)})"
        )
        return target

    def update_policy(self, policy: ScalingPolicy) -> ScalingPolicy:
        """
        Thay policy của target đã đăng ký, giữ nguyên capacity và cooldown state.

        Raises:
            KeyError: Target chưa đăng ký
            InvalidPolicy: Policy mới sai (policy cũ vẫn giữ nguyên)
        """
        target = self.reconciler.get(policy.target_id)
        validate_policy(policy)
        if policy.is_vertical != target.is_vertical:
            raise InvalidPolicy(
                f"{policy.kind.value} policy does not fit a {TargetKind(target.kind).value} target",
                target_id=target.target_id
            )

        with self._policy_lock:
            self._policies[policy.target_id] = policy
        self.aggregator.set_retention(policy.target_id, policy.largest_window)
        if self.collector is not None:
            self.collector.unwatch(policy.target_id)
            for metric in policy.metrics():
                self.collector.watch(policy.target_id, metric)

        logger.info(f"Updated policy of {policy.target_id} ({policy.kind.value})")
        return policy

    def register_from_config(self, mapping: Mapping[str, Mapping[str, Any]]) -> Dict[str, str]:
        """
        Đăng ký mọi target trong policy configuration mapping.

        Returns:
            Dict target_id -> error message cho các entries bị reject
        """
        errors = {}
        for target_id, result in load_policy_config(mapping, self.config.default_dead_band_percent).items():
            if isinstance(result, InvalidPolicy):
                errors[target_id] = result.message
                logger.warning(f"Rejected policy for {target_id}: {result.message}")
                continue
            target, policy = result
            try:
                self.register(target, policy)
            except InvalidPolicy as e:
                errors[target_id] = e.message
                logger.warning(f"Rejected policy for {target_id}: {e.message}")
        return errors

    def unregister(self, target_id: str) -> bool:
        with self._policy_lock:
            policy = self._policies.pop(target_id, None)
        if policy is None:
            return False
        self.reconciler.unregister(target_id)
        self.aggregator.remove_target(target_id)
        if self.collector is not None:
            self.collector.unwatch(target_id)
        logger.info(f"Unregistered {target_id}")
        return True

    def policy(self, target_id: str) -> ScalingPolicy:
        with self._policy_lock:
            return self._policies[target_id]

    def target(self, target_id: str) -> ScalableTarget:
        return self.reconciler.get(target_id)

    def targets(self) -> Dict[str, Tuple[ScalableTarget, ScalingPolicy]]:
        with self._policy_lock:
            policies = dict(self._policies)
        return {tid: (self.reconciler.get(tid), policy) for tid, policy in policies.items()}

    # -------------------------------------------------------------------------
    # Ingestion
    # -------------------------------------------------------------------------

    def ingest(self, target_id: str, metric: str, value: float, timestamp: Optional[TimestampLike] = None):
        """
        Push ingestion một sample.

        Raises:
            InvalidSample: Sample out-of-order, không hợp lệ hoặc target chưa đăng ký
        """
        with self._policy_lock:
            registered = target_id in self._policies
        if not registered:
            logger.warning(f"Rejected sample for unregistered target {target_id}")
            raise InvalidSample(f"target {target_id!r} is not registered", target_id=target_id)

        timestamp = timestamp if timestamp is not None else self.clock()
        try:
            return self.aggregator.record(target_id, metric, value, timestamp)
        except InvalidSample as e:
            logger.warning(f"Rejected sample: {e}")
            raise

    def observe(self, target_id: str, capacity: Capacity):
        """Sync capacity thực tế (vd: sau khi effector fail)."""
        self.reconciler.observe(target_id, capacity)

    # -------------------------------------------------------------------------
    # Evaluation
    # -------------------------------------------------------------------------

    def _statistic(self, target: ScalableTarget, policy: ScalingPolicy, now: pd.Timestamp) -> Statistic:
        """
        Tính statistic cho policy.

        Raises:
            NoData: Window (hoặc mọi resource window) không có sample
        """
        tid = target.target_id
        if not policy.is_vertical:
            return self.aggregator.windowed_statistic(
                tid, policy.metric, policy.window, policy.aggregation, now=now
            )

        usage = {}
        window_start = now - policy.history_window
        for resource, metric in policy.resource_metrics.items():
            values = self.aggregator.window_values(tid, metric, policy.history_window, now=now)
            if values.size == 0:
                continue
            first_seen = self.aggregator.observed_since(tid, metric)
            usage[resource] = ResourceUsage(
                percentile=float(pd.Series(values).quantile(policy.percentile / 100)),
                peak=float(values.max()),
                full_window=first_seen is not None and first_seen <= window_start
            )

        if not usage:
            raise NoData(f"no usage samples in the last {policy.history_window}", target_id=tid)
        return usage

    def evaluate_target(self, target_id: str, now: Optional[TimestampLike] = None) -> ScalingDecision:
        """Evaluate một target (không reconcile)."""
        now = to_timestamp(now) if now is not None else self.clock()
        target = self.reconciler.get(target_id)
        policy = self.policy(target_id)

        try:
            statistic = self._statistic(target, policy, now)
        except NoData as e:
            logger.debug(f"Skipping {target_id}: {e.message}")
            statistic = None

        return self.evaluator.evaluate(target, policy, statistic, now=now)

    def _process_target(self, target_id: str, now: pd.Timestamp, report: TickReport):
        decision = self.evaluate_target(target_id, now)
        report.decisions[target_id] = decision
        self.audit.emit(AuditRecord(
            DECISION, target_id,
            capacity_value(decision.current), capacity_value(decision.proposed),
            decision.reason.value, now,
            detail={'action': decision.action.value, 'statistic': decision.statistic,
                    'suppressed': decision.suppressed}
        ))

        if decision.is_noop:
            if decision.statistic is None:
                report.skipped[target_id] = decision.reason.value
            return

        policy = self.policy(target_id)
        result = self.reconciler.reconcile(target_id, decision, policy.cooldown, now=now)

        if isinstance(result, AppliedAction):
            report.applied[target_id] = result
            self.audit.emit(AuditRecord(
                ACTION, target_id,
                capacity_value(result.old_capacity), capacity_value(result.new_capacity),
                result.reason.value, result.timestamp
            ))
        else:
            report.rejected[target_id] = result
            self.audit.emit(AuditRecord(
                REJECTED, target_id,
                capacity_value(decision.current), capacity_value(result.proposed),
                result.reason.value, result.timestamp,
                detail={'error': result.error} if result.error else {}
            ))

    def _safe_process(self, target_id: str, now: pd.Timestamp, report: TickReport):
        try:
            self._process_target(target_id, now, report)
        except Exception as e:
            logger.exception(f"Unexpected error while processing {target_id}")
            report.errors[target_id] = f"{type(e).__name__}: {e}"
            self.audit.emit(AuditRecord(ERROR, target_id, None, None, type(e).__name__, now,
                                        detail={'error': str(e)}))

    def tick(self, now: Optional[TimestampLike] = None) -> TickReport:
        """
        Một evaluation pass trên mọi target đã đăng ký.

        Args:
            now: Thời điểm tick (mặc định: clock())

        Returns:
            TickReport
        """
        now = to_timestamp(now) if now is not None else self.clock()
        report = TickReport(timestamp=now)
        with self._policy_lock:
            target_ids = list(self._policies)

        # Mỗi worker ghi vào key riêng của target trong report
        if len(target_ids) <= 1 or self.config.max_workers <= 1:
            for target_id in target_ids:
                self._safe_process(target_id, now, report)
        else:
            with ThreadPoolExecutor(
                max_workers=min(self.config.max_workers, len(target_ids)),
                thread_name_prefix="evaluator"
            ) as pool:
                list(pool.map(lambda tid: self._safe_process(tid, now, report), target_ids))

        self.tick_count += 1
        logger.debug(
            f"Tick #{self.tick_count}: {len(report.applied)} applied, {len(report.rejected)} rejected, "
            f"{len(report.skipped)} skipped, {len(report.errors)} errors"
        )
        return report

    def request_capacity(self, target_id: str, capacity: Capacity) -> AppliedAction:
        """
        Manual scaling request (như set desired capacity bằng tay).

        Đi qua cùng Reconciler nên vẫn bị cooldown và bounds.

        Raises:
            KeyError: Target chưa đăng ký
            CooldownActive: Target đang cooling
            EffectorFailure: Effector call thất bại
            ScalingEngineError: Rejected vì lý do khác (vd: at-bound)
        """
        now = self.clock()
        target = self.reconciler.get(target_id)
        policy = self.policy(target_id)

        if isinstance(capacity, ResourceRequirements) != target.is_vertical:
            raise InvalidPolicy("capacity type does not match target kind", target_id=target_id)

        current = target.capacity
        if target.is_vertical:
            grows = any(v > current.requests.get(r, 0.0) for r, v in capacity.requests.items())
            action = ScaleAction.SCALE_UP if grows else ScaleAction.SCALE_DOWN
        else:
            action = ScaleAction.SCALE_OUT if capacity > current else ScaleAction.SCALE_IN
        if capacity == current:
            action = ScaleAction.NONE

        decision = ScalingDecision(
            target_id=target_id,
            current=current,
            proposed=capacity,
            action=action,
            reason=ReasonCode.MANUAL if action != ScaleAction.NONE else ReasonCode.NO_CHANGE,
            timestamp=now
        )
        result = self.reconciler.reconcile(
            target_id, decision, policy.cooldown, now=decision.timestamp
        )

        if isinstance(result, AppliedAction):
            self.audit.emit(AuditRecord(
                ACTION, target_id,
                capacity_value(result.old_capacity), capacity_value(result.new_capacity),
                result.reason.value, result.timestamp, detail={'manual': True}
            ))
            return result

        self.audit.emit(AuditRecord(
            REJECTED, target_id, capacity_value(current), capacity_value(capacity),
            result.reason.value, result.timestamp, detail={'manual': True, 'error': result.error}
        ))
        raise result.to_error()

    # -------------------------------------------------------------------------
    # Control loop
    # -------------------------------------------------------------------------

    def run(self, stop_event: Optional[threading.Event] = None):
        """Chạy control loop cho đến khi stop_event được set."""
        stop_event = stop_event or self._stop
        interval = self.config.tick_interval.total_seconds()

        logger.info(f"Autoscaling engine started (tick interval={self.config.tick_interval})")
        while not stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Unexpected error in autoscaling cycle")
            stop_event.wait(interval)
        logger.info("Autoscaling engine stopped")

    def start(self):
        """Chạy control loop (và metrics collector) trên daemon threads."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        if self.collector is not None:
            self.collector.start()
        self._thread = threading.Thread(target=self.run, args=(self._stop,), name="autoscaler", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = 5.0):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        if self.collector is not None:
            self.collector.stop(timeout)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
