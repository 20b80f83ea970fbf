"""
Policy Evaluator
================
Áp dụng scaling policy lên statistic đã aggregate, trả về ScalingDecision.

Policy kinds:
    1. Target-tracking: desired = ceil(current * statistic / target)
       - Dead-band quanh target: không scale (chống flapping)
       - Scale-up và scale-down có target riêng, loại trừ nhau trong một cycle
       - Nếu cả 2 cùng fire: ưu tiên scale-up (availability > cost)
    2. Step: +scale_out_increment / -scale_in_decrement khi vượt ngưỡng
    3. Vertical recommendation: request = percentile(usage) * headroom,
       limit = request * limit_ratio, tính riêng cho từng resource
       - Tăng: áp dụng ngay
       - Giảm: chỉ khi usage thấp liên tục trong toàn bộ history window

Usage:
    >>> evaluator = PolicyEvaluator()
    >>> decision = evaluator.evaluate(target, policy, statistic=90.0, now=now)
    >>> decision.proposed
    4
"""

import math
from dataclasses import asdict, dataclass
from typing import Dict, Optional, Union

import pandas as pd

from ..timeutils import utc_now
from .policy import (
    PolicyKind,
    ReasonCode,
    ResourceRequirements,
    ScalableTarget,
    ScaleAction,
    ScalingDecision,
    ScalingPolicy
)


@dataclass
class ResourceUsage:
    """
    Usage summary của một resource trên history window (vertical policies).

    Attributes:
        percentile: Percentile của usage (vd: p95)
        peak: Usage cao nhất trong window
        full_window: True nếu đã quan sát đủ toàn bộ history window
    """
    percentile: float
    peak: float
    full_window: bool


Statistic = Union[float, Dict[str, ResourceUsage], None]


def _ceil_ratio(current: int, statistic: float, target: float) -> int:
    # Round trước khi ceil để 2 * 75 / 50 không thành 3.0000000001 -> 4
    return int(math.ceil(round(current * statistic / target, 9)))


class PolicyEvaluator:
    """
    Evaluator chung cho mọi policy kinds.

    Horizontal và vertical chia sẻ cùng contract evaluate(); kind của policy
    chọn nhánh tính toán.
    """

    def evaluate(
        self,
        target: ScalableTarget,
        policy: ScalingPolicy,
        statistic: Statistic,
        now: Optional[pd.Timestamp] = None
    ) -> ScalingDecision:
        """
        Tính scaling decision cho một target.

        Args:
            target: ScalableTarget (đọc capacity hiện tại)
            policy: ScalingPolicy
            statistic: float (horizontal), Dict[resource, ResourceUsage] (vertical),
                hoặc None khi window không có data
            now: Timestamp của decision

        Returns:
            ScalingDecision (no-op nếu không cần scale)
        """
        now = now if now is not None else utc_now()

        if statistic is None:
            return self._noop(target, ReasonCode.INSUFFICIENT_DATA, now)

        if policy.kind == PolicyKind.TARGET_TRACKING:
            return self._evaluate_target_tracking(target, policy, statistic, now)
        if policy.kind == PolicyKind.STEP:
            return self._evaluate_step(target, policy, statistic, now)
        return self._evaluate_vertical(target, policy, statistic, now)

    def _noop(
        self,
        target: ScalableTarget,
        reason: ReasonCode,
        now: pd.Timestamp,
        statistic: Statistic = None
    ) -> ScalingDecision:
        return ScalingDecision(
            target_id=target.target_id,
            current=target.capacity,
            proposed=target.capacity,
            action=ScaleAction.NONE,
            reason=reason,
            timestamp=now,
            statistic=statistic
        )

    def _horizontal_decision(
        self,
        target: ScalableTarget,
        desired: int,
        reason: ReasonCode,
        now: pd.Timestamp,
        statistic: float,
        suppressed: bool = False
    ) -> ScalingDecision:
        current = target.capacity
        if desired == current:
            return self._noop(target, ReasonCode.NO_CHANGE, now, statistic)

        return ScalingDecision(
            target_id=target.target_id,
            current=current,
            proposed=desired,
            action=ScaleAction.SCALE_OUT if desired > current else ScaleAction.SCALE_IN,
            reason=reason,
            timestamp=now,
            statistic=statistic,
            suppressed=suppressed
        )

    def _evaluate_target_tracking(
        self,
        target: ScalableTarget,
        policy: ScalingPolicy,
        statistic: float,
        now: pd.Timestamp
    ) -> ScalingDecision:
        up_target = policy.effective_up_target
        down_target = policy.effective_down_target
        band = policy.band

        scale_up = statistic > up_target * (1 + band)
        scale_down = statistic < down_target * (1 - band)

        if not scale_up and not scale_down:
            return self._noop(target, ReasonCode.WITHIN_DEAD_BAND, now, statistic)

        # Group rỗng vẫn phải scale-up được
        current = max(target.capacity, 1)

        if scale_up:
            desired = max(_ceil_ratio(current, statistic, up_target), target.capacity + 1)
            return self._horizontal_decision(
                target, desired, ReasonCode.TARGET_TRACKING_SCALE_UP, now, statistic,
                suppressed=scale_down
            )

        desired = min(_ceil_ratio(current, statistic, down_target), target.capacity)
        return self._horizontal_decision(
            target, desired, ReasonCode.TARGET_TRACKING_SCALE_DOWN, now, statistic
        )

    def _evaluate_step(
        self,
        target: ScalableTarget,
        policy: ScalingPolicy,
        statistic: float,
        now: pd.Timestamp
    ) -> ScalingDecision:
        scale_up = statistic >= policy.effective_up_target
        scale_down = statistic <= policy.effective_down_target

        if scale_up:
            return self._horizontal_decision(
                target, target.capacity + policy.scale_out_increment,
                ReasonCode.STEP_SCALE_UP, now, statistic, suppressed=scale_down
            )
        if scale_down:
            return self._horizontal_decision(
                target, max(target.capacity - policy.scale_in_decrement, 0),
                ReasonCode.STEP_SCALE_DOWN, now, statistic
            )
        return self._noop(target, ReasonCode.WITHIN_DEAD_BAND, now, statistic)

    def _evaluate_vertical(
        self,
        target: ScalableTarget,
        policy: ScalingPolicy,
        usage: Dict[str, ResourceUsage],
        now: pd.Timestamp
    ) -> ScalingDecision:
        current: ResourceRequirements = target.capacity
        requests = dict(current.requests)
        limits = dict(current.limits)

        increased = decreased = held = False

        for resource in policy.resource_metrics:
            summary = usage.get(resource)
            if summary is None:
                continue

            recommended = round(summary.percentile * policy.headroom, 6)
            existing = current.requests.get(resource)

            if existing is None or recommended > existing:
                increased = True
            elif recommended < existing:
                # Chỉ giảm khi usage thấp liên tục trong toàn bộ window
                if not (summary.full_window and summary.peak < existing):
                    held = True
                    continue
                decreased = True
            else:
                continue

            requests[resource] = recommended
            limits[resource] = round(recommended * policy.limit_ratio, 6)

        statistic = {r: asdict(u) for r, u in usage.items()}

        if not increased and not decreased:
            reason = ReasonCode.TRANSIENT_DIP if held else ReasonCode.NO_CHANGE
            return self._noop(target, reason, now, statistic)

        return ScalingDecision(
            target_id=target.target_id,
            current=current,
            proposed=ResourceRequirements(requests=requests, limits=limits),
            action=ScaleAction.SCALE_UP if increased else ScaleAction.SCALE_DOWN,
            reason=ReasonCode.VERTICAL_SCALE_UP if increased else ReasonCode.VERTICAL_SCALE_DOWN,
            timestamp=now,
            statistic=statistic
        )
