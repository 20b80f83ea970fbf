"""
Autoscaling Policy Module
=========================
Module định nghĩa data model cho decision engine.

Scaling Strategies:
    1. Target-tracking: Giữ metric quanh target value (horizontal)
    2. Step: Cộng / trừ cố định khi vượt ngưỡng (horizontal)
    3. Vertical recommendation: Đề xuất CPU/memory request cho pod

Anti-flapping mechanisms:
    - Dead-band: Vùng dung sai quanh target value, không scale
    - Hysteresis: Target khác nhau cho scale-up và scale-down
    - Cooldown period: Chờ sau mỗi scaling action (enforce ở Reconciler)

Usage:
    >>> target = ScalableTarget('web', TargetKind.HORIZONTAL, capacity=2,
    ...                         min_capacity=1, max_capacity=5)
    >>> policy = ScalingPolicy('web', metric='cpu', target_value=50.0)
    >>> validate_policy(policy)
"""

import logging
import math
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import pandas as pd

from ..errors import InvalidPolicy
from ..metrics.aggregator import parse_aggregation
from ..timeutils import to_timedelta

logger = logging.getLogger(__name__)


class ScaleAction(Enum):
    """Các actions scaling có thể thực hiện."""
    NONE = "none"
    SCALE_OUT = "scale_out"    # Thêm instances
    SCALE_IN = "scale_in"      # Giảm instances
    SCALE_UP = "scale_up"      # Tăng resources của pod
    SCALE_DOWN = "scale_down"  # Giảm resources của pod


class TargetKind(str, Enum):
    """Loại scalable target."""
    HORIZONTAL = "horizontal-group"
    VERTICAL = "vertical-pod"


class PolicyKind(str, Enum):
    """Loại scaling policy."""
    TARGET_TRACKING = "target-tracking"
    STEP = "step"
    VERTICAL = "vertical-recommendation"


class ReasonCode(str, Enum):
    """Reason codes cho decisions, actions và rejections."""
    TARGET_TRACKING_SCALE_UP = "target-tracking-scale-up"
    TARGET_TRACKING_SCALE_DOWN = "target-tracking-scale-down"
    STEP_SCALE_UP = "step-scale-up"
    STEP_SCALE_DOWN = "step-scale-down"
    VERTICAL_SCALE_UP = "vertical-scale-up"
    VERTICAL_SCALE_DOWN = "vertical-scale-down"
    WITHIN_DEAD_BAND = "within-dead-band"
    INSUFFICIENT_DATA = "insufficient-data"
    NO_CHANGE = "no-change"
    TRANSIENT_DIP = "transient-dip"
    COOLDOWN_ACTIVE = "cooldown-active"
    CLAMPED_TO_MIN = "clamped-to-min"
    CLAMPED_TO_MAX = "clamped-to-max"
    AT_BOUND = "at-bound"
    EFFECTOR_FAILURE = "effector-failure"
    MANUAL = "manual"


STABLE = "stable"
COOLING = "cooling"

DEFAULT_RESOURCE_METRICS = {"cpu": "cpu_usage", "memory": "memory_usage"}


@dataclass
class ResourceRequirements:
    """
    CPU/memory requests và limits của một vertical target.

    Attributes:
        requests: Dict resource -> quantity (vd: {'cpu': 0.5, 'memory': 536870912})
        limits: Dict resource -> quantity
    """
    requests: Dict[str, float]
    limits: Dict[str, float] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Dict[str, float]]:
        return {"requests": dict(self.requests), "limits": dict(self.limits)}


Capacity = Union[int, ResourceRequirements]


@dataclass
class ScalableTarget:
    """
    Một scalable unit (instance group hoặc pod).

    Chỉ Reconciler được mutate target (capacity, last_scale_time).

    Attributes:
        target_id: ID của target
        kind: TargetKind
        capacity: Số instances (horizontal) hoặc ResourceRequirements (vertical)
        min_capacity: Bound dưới (int, hoặc dict resource -> min request)
        max_capacity: Bound trên (int, hoặc dict resource -> max request)
        last_scale_time: Thời điểm scale gần nhất (None nếu chưa scale lần nào)
    """
    target_id: str
    kind: TargetKind
    capacity: Capacity
    min_capacity: Union[int, Dict[str, float]] = 1
    max_capacity: Union[int, Dict[str, float]] = 100
    last_scale_time: Optional[pd.Timestamp] = None

    @property
    def is_vertical(self) -> bool:
        return self.kind == TargetKind.VERTICAL

    def state(self, now: pd.Timestamp, cooldown: pd.Timedelta) -> str:
        """Stable hoặc Cooling. Cooling tự hết khi cooldown elapsed."""
        if self.last_scale_time is None:
            return STABLE
        if now - self.last_scale_time < cooldown:
            return COOLING
        return STABLE

    def cooldown_remaining(self, now: pd.Timestamp, cooldown: pd.Timedelta) -> pd.Timedelta:
        if self.last_scale_time is None:
            return pd.Timedelta(0)
        return max(pd.Timedelta(0), cooldown - (now - self.last_scale_time))

    def clamp(self, proposed: Capacity) -> Tuple[Capacity, Optional[ReasonCode]]:
        """
        Clamp proposed capacity về [min, max].

        Args:
            proposed: Capacity đề xuất

        Returns:
            Tuple (clamped capacity, reason nếu có clamp)
        """
        if not self.is_vertical:
            if proposed < self.min_capacity:
                return self.min_capacity, ReasonCode.CLAMPED_TO_MIN
            if proposed > self.max_capacity:
                return self.max_capacity, ReasonCode.CLAMPED_TO_MAX
            return proposed, None

        reason = None
        requests = {}
        limits = {}
        for resource, value in proposed.requests.items():
            lower = self.min_capacity.get(resource, 0.0)
            upper = self.max_capacity.get(resource, math.inf)
            clamped = min(max(value, lower), upper)
            if clamped != value and reason is None:
                reason = ReasonCode.CLAMPED_TO_MIN if clamped == lower else ReasonCode.CLAMPED_TO_MAX

            requests[resource] = clamped
            limit = proposed.limits.get(resource)
            if limit is not None:
                # Giữ nguyên limit-to-request ratio sau khi clamp
                ratio = limit / value if value > 0 else 1.0
                limits[resource] = round(clamped * ratio, 6)

        return ResourceRequirements(requests=requests, limits=limits), reason

    def in_bounds(self, capacity: Optional[Capacity] = None) -> bool:
        """Kiểm tra capacity có nằm trong [min, max] không."""
        capacity = self.capacity if capacity is None else capacity
        if not self.is_vertical:
            return self.min_capacity <= capacity <= self.max_capacity
        return all(
            self.min_capacity.get(r, 0.0) <= v <= self.max_capacity.get(r, math.inf)
            for r, v in capacity.requests.items()
        )


@dataclass(frozen=True)
class ScalingPolicy:
    """
    Cấu hình scaling policy. Immutable sau khi register, update = thay cả policy.

    Attributes:
        target_id: Target mà policy áp dụng
        metric: Metric name (horizontal policies)
        kind: PolicyKind
        target_value: Target value của metric (vd: 50.0 = 50% CPU)
        scale_up_target: Target riêng cho scale-up (target-tracking) hoặc
            ngưỡng scale-up (step). None = dùng target_value
        scale_down_target: Target riêng cho scale-down / ngưỡng scale-down
        dead_band_percent: Vùng dung sai quanh target (vd: 10 = ±10%)
        cooldown: Thời gian chờ tối thiểu giữa 2 actions
        window: Window để tính statistic (horizontal)
        aggregation: 'mean', 'max', 'min', 'median' hoặc 'pNN'
        scale_out_increment: Số instances thêm khi step scale-out
        scale_in_decrement: Số instances giảm khi step scale-in
        resource_metrics: Vertical: resource -> metric name của usage
        percentile: Vertical: percentile của usage dùng làm request
        headroom: Vertical: hệ số nhân thêm vào percentile (vd: 1.2)
        limit_ratio: Vertical: limit = request * limit_ratio
        history_window: Vertical: window dài (hours) để tính percentile
    """
    target_id: str
    metric: str = "cpu_utilization"
    kind: PolicyKind = PolicyKind.TARGET_TRACKING
    target_value: float = 50.0
    scale_up_target: Optional[float] = None
    scale_down_target: Optional[float] = None
    dead_band_percent: float = 10.0
    cooldown: pd.Timedelta = pd.Timedelta(seconds=300)
    window: pd.Timedelta = pd.Timedelta(minutes=5)
    aggregation: str = "mean"
    scale_out_increment: int = 1
    scale_in_decrement: int = 1
    resource_metrics: Mapping[str, str] = field(default_factory=lambda: dict(DEFAULT_RESOURCE_METRICS))
    percentile: float = 95.0
    headroom: float = 1.2
    limit_ratio: float = 1.5
    history_window: pd.Timedelta = pd.Timedelta(hours=8)

    def __post_init__(self):
        # Frozen dataclass: normalize qua object.__setattr__
        object.__setattr__(self, "kind", PolicyKind(self.kind))
        for name in ("cooldown", "window", "history_window"):
            object.__setattr__(self, name, to_timedelta(getattr(self, name)))
        object.__setattr__(self, "resource_metrics", MappingProxyType(dict(self.resource_metrics)))

    @property
    def band(self) -> float:
        return self.dead_band_percent / 100.0

    @property
    def is_vertical(self) -> bool:
        return self.kind == PolicyKind.VERTICAL

    @property
    def effective_up_target(self) -> float:
        """Target (hoặc ngưỡng với step policy) cho scale-up."""
        if self.scale_up_target is not None:
            return self.scale_up_target
        if self.kind == PolicyKind.STEP:
            return self.target_value * (1 + self.band)
        return self.target_value

    @property
    def effective_down_target(self) -> float:
        """Target (hoặc ngưỡng với step policy) cho scale-down."""
        if self.scale_down_target is not None:
            return self.scale_down_target
        if self.kind == PolicyKind.STEP:
            return self.target_value * (1 - self.band)
        return self.target_value

    @property
    def largest_window(self) -> pd.Timedelta:
        return self.history_window if self.is_vertical else self.window

    def metrics(self) -> List[str]:
        """Các metric names mà policy đọc."""
        if self.is_vertical:
            return list(self.resource_metrics.values())
        return [self.metric]

    def with_updates(self, **changes: Any) -> "ScalingPolicy":
        """Tạo policy mới (policy cũ không bị mutate)."""
        return replace(self, **changes)


@dataclass
class ScalingDecision:
    """
    Output của PolicyEvaluator cho một target trong một evaluation cycle.

    Transient: chỉ sống trong một cycle, ngoài audit log thì không persist.
    """
    target_id: str
    current: Capacity
    proposed: Capacity
    action: ScaleAction
    reason: ReasonCode
    timestamp: pd.Timestamp
    statistic: Any = None
    suppressed: bool = False  # True nếu scale-down bị bỏ để ưu tiên scale-up

    @property
    def is_noop(self) -> bool:
        return self.action == ScaleAction.NONE


def validate_policy(policy: ScalingPolicy) -> ScalingPolicy:
    """
    Validate policy lúc registration.

    Args:
        policy: ScalingPolicy

    Returns:
        Chính policy đó nếu hợp lệ

    Raises:
        InvalidPolicy: Nếu policy sai
    """
    tid = policy.target_id

    def fail(message: str):
        raise InvalidPolicy(message, target_id=tid)

    if not tid:
        fail("target_id must be non-empty")
    if not _is_positive(policy.target_value):
        fail(f"target_value must be > 0, got {policy.target_value}")
    for name in ("scale_up_target", "scale_down_target"):
        value = getattr(policy, name)
        if value is not None and not _is_positive(value):
            fail(f"{name} must be > 0, got {value}")
    if not 0 <= policy.dead_band_percent < 100:
        fail(f"dead_band_percent must be in [0, 100), got {policy.dead_band_percent}")
    if policy.cooldown < pd.Timedelta(0):
        fail(f"cooldown must be >= 0, got {policy.cooldown}")
    if policy.window <= pd.Timedelta(0) or policy.history_window <= pd.Timedelta(0):
        fail("window and history_window must be > 0")

    try:
        parse_aggregation(policy.aggregation)
    except ValueError as e:
        fail(str(e))

    if policy.is_vertical:
        if not policy.resource_metrics:
            fail("vertical policy needs at least one resource")
        if not 0 < policy.percentile <= 100:
            fail(f"percentile must be in (0, 100], got {policy.percentile}")
        if not _is_positive(policy.headroom):
            fail(f"headroom must be > 0, got {policy.headroom}")
        if not (math.isfinite(policy.limit_ratio) and policy.limit_ratio >= 1):
            fail(f"limit_ratio must be >= 1, got {policy.limit_ratio}")
    else:
        if not policy.metric:
            fail("metric must be non-empty")
        if policy.effective_down_target > policy.effective_up_target:
            fail(
                f"scale-down target {policy.effective_down_target} is above "
                f"scale-up target {policy.effective_up_target}"
            )
        if policy.kind == PolicyKind.STEP and (
            policy.scale_out_increment < 1 or policy.scale_in_decrement < 1
        ):
            fail("step sizes must be >= 1")

    return policy


def validate_target(target: ScalableTarget) -> ScalableTarget:
    """
    Validate bounds của target và clamp initial capacity nếu cần.

    Raises:
        InvalidPolicy: Nếu bounds sai hoặc kind không khớp capacity
    """
    tid = target.target_id
    target.kind = TargetKind(target.kind)

    if target.is_vertical:
        if not isinstance(target.capacity, ResourceRequirements):
            raise InvalidPolicy("vertical target needs ResourceRequirements capacity", target_id=tid)
        target.min_capacity = dict(target.min_capacity) if isinstance(target.min_capacity, dict) else {}
        target.max_capacity = dict(target.max_capacity) if isinstance(target.max_capacity, dict) else {}
        for resource, lower in target.min_capacity.items():
            upper = target.max_capacity.get(resource, math.inf)
            if lower < 0 or upper < lower:
                raise InvalidPolicy(f"invalid bounds for {resource}: [{lower}, {upper}]", target_id=tid)
    else:
        if isinstance(target.capacity, ResourceRequirements):
            raise InvalidPolicy("horizontal target needs an integer capacity", target_id=tid)
        if target.min_capacity < 0 or target.max_capacity < target.min_capacity:
            raise InvalidPolicy(
                f"invalid bounds [{target.min_capacity}, {target.max_capacity}]", target_id=tid
            )
        target.capacity = int(target.capacity)

    if not target.in_bounds():
        clamped, reason = target.clamp(target.capacity)
        logger.warning(f"Initial capacity of {tid} outside bounds, {reason.value}: {clamped}")
        target.capacity = clamped

    return target


def _is_positive(value: float) -> bool:
    return value is not None and math.isfinite(value) and value > 0
