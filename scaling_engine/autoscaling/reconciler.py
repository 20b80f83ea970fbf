"""
Reconciler
==========
Áp dụng ScalingDecision lên state của target với cooldown, bounds và
effector call.

State machine mỗi target: Stable -> Cooling -> Stable
    - Cooling bắt đầu khi có action (hoặc effector call đã được gửi đi)
    - Cooling tự hết khi cooldown elapsed, check lại ở lần reconcile tiếp theo

Flow của reconcile():
    1. Decision no-op: reject với reason của chính decision
    2. Cooldown còn active: reject 'cooldown-active', không đổi state
    3. Clamp về [min, max]; clamp xong bằng capacity hiện tại: reject 'at-bound'
    4. Gọi effector đúng một lần (có timeout). Lỗi: vẫn vào Cooling để
       tránh duplicate action, capacity giữ nguyên, reject 'effector-failure'
    5. Thành công: update capacity, vào Cooling, trả về AppliedAction

Concurrency:
    - Mỗi target một lock; các targets khác nhau không tranh chấp
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Union

import pandas as pd

from ..effectors import Effector
from ..errors import CooldownActive, EffectorFailure, ScalingEngineError
from ..timeutils import DurationLike, TimestampLike, to_timedelta, to_timestamp, utc_now
from .policy import (
    COOLING,
    Capacity,
    ReasonCode,
    ScalableTarget,
    ScalingDecision,
    validate_target
)

logger = logging.getLogger(__name__)


@dataclass
class AppliedAction:
    """Record của một scaling action đã apply thành công."""
    target_id: str
    old_capacity: Capacity
    new_capacity: Capacity
    reason: ReasonCode
    timestamp: pd.Timestamp


@dataclass
class Rejected:
    """Decision không được apply."""
    target_id: str
    reason: ReasonCode
    timestamp: pd.Timestamp
    proposed: Optional[Capacity] = None
    error: Optional[str] = None

    def to_error(self) -> ScalingEngineError:
        """Exception tương ứng, cho host muốn raise thay vì xử lý value."""
        if self.reason == ReasonCode.COOLDOWN_ACTIVE:
            return CooldownActive("cooldown still active", target_id=self.target_id)
        if self.reason == ReasonCode.EFFECTOR_FAILURE:
            return EffectorFailure(self.error or "effector failed", target_id=self.target_id)
        return ScalingEngineError(f"decision rejected: {self.reason.value}", target_id=self.target_id)


ReconcileResult = Union[AppliedAction, Rejected]


class Reconciler:
    """
    Sở hữu state của mọi ScalableTarget và enforce cooldown / bounds.

    Attributes:
        effector: Effector collaborator
        clock: Function trả về 'now'
        effector_timeout: Timeout cho một effector call (None = chờ vô hạn)

    Example:
        >>> reconciler = Reconciler(InMemoryEffector())
        >>> reconciler.register(target)
        >>> result = reconciler.reconcile('web', decision, cooldown=pd.Timedelta(minutes=5))
    """

    def __init__(
        self,
        effector: Effector,
        clock: Callable[[], pd.Timestamp] = utc_now,
        effector_timeout: Optional[DurationLike] = 30,
        max_workers: int = 4
    ):
        self.effector = effector
        self.clock = clock
        self.effector_timeout = (
            to_timedelta(effector_timeout).total_seconds() if effector_timeout is not None else None
        )

        self._targets: Dict[str, ScalableTarget] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="effector")

    def register(self, target: ScalableTarget) -> ScalableTarget:
        """
        Đăng ký (hoặc thay) target. Cooldown state của target cũ được giữ lại.

        Raises:
            InvalidPolicy: Nếu bounds của target sai
        """
        target = validate_target(target)
        with self._registry_lock:
            previous = self._targets.get(target.target_id)
            if previous is not None and target.last_scale_time is None:
                target.last_scale_time = previous.last_scale_time
            self._targets[target.target_id] = target
            self._locks.setdefault(target.target_id, threading.Lock())
        return target

    def unregister(self, target_id: str) -> Optional[ScalableTarget]:
        with self._registry_lock:
            self._locks.pop(target_id, None)
            return self._targets.pop(target_id, None)

    def get(self, target_id: str) -> ScalableTarget:
        with self._registry_lock:
            return self._targets[target_id]

    def targets(self) -> List[str]:
        with self._registry_lock:
            return list(self._targets)

    def _lock_for(self, target_id: str) -> threading.Lock:
        with self._registry_lock:
            if target_id not in self._targets:
                raise KeyError(target_id)
            return self._locks[target_id]

    def observe(self, target_id: str, capacity: Capacity):
        """Sync capacity quan sát được từ hệ thống bên ngoài."""
        with self._lock_for(target_id):
            target = self._targets[target_id]
            if not target.in_bounds(capacity):
                logger.warning(f"Observed capacity of {target_id} outside bounds: {capacity}")
            target.capacity = capacity

    def reconcile(
        self,
        target_id: str,
        decision: ScalingDecision,
        cooldown: DurationLike,
        now: Optional[TimestampLike] = None
    ) -> ReconcileResult:
        """
        Reconcile một decision.

        Args:
            target_id: Target ID
            decision: ScalingDecision từ evaluator
            cooldown: Cooldown của policy
            now: Thời điểm reconcile (mặc định: clock())

        Returns:
            AppliedAction nếu đã apply, ngược lại Rejected
        """
        cooldown = to_timedelta(cooldown)
        now = to_timestamp(now) if now is not None else self.clock()

        with self._lock_for(target_id):
            target = self._targets[target_id]

            if decision.is_noop:
                return Rejected(target_id, decision.reason, now, proposed=decision.proposed)

            if target.state(now, cooldown) == COOLING:
                remaining = target.cooldown_remaining(now, cooldown)
                logger.debug(f"Cooldown active for {target_id}: {remaining} remaining")
                return Rejected(target_id, ReasonCode.COOLDOWN_ACTIVE, now, proposed=decision.proposed)

            proposed, clamp_reason = target.clamp(decision.proposed)
            reason = clamp_reason or decision.reason
            if clamp_reason is not None:
                logger.warning(
                    f"Decision for {target_id} clamped ({clamp_reason.value}): "
                    f"{decision.proposed} -> {proposed}"
                )

            old_capacity = target.capacity
            if proposed == old_capacity:
                return Rejected(target_id, ReasonCode.AT_BOUND, now, proposed=proposed)

            # Effector call đã gửi đi thì coi như đã scale (at-most-once)
            target.last_scale_time = now
            try:
                self._apply(target_id, proposed)
            except EffectorFailure as e:
                logger.warning(f"Effector failed for {target_id}: {e.message}")
                return Rejected(
                    target_id, ReasonCode.EFFECTOR_FAILURE, now, proposed=proposed, error=e.message
                )

            target.capacity = proposed
            logger.info(f"Scaled {target_id}: {old_capacity} -> {proposed} ({reason.value})")
            return AppliedAction(target_id, old_capacity, proposed, reason, now)

    def _apply(self, target_id: str, value: Capacity):
        """Gọi effector một lần, chuyển mọi lỗi / timeout thành EffectorFailure."""
        future = self._executor.submit(self.effector.apply, target_id, value)
        try:
            ok = future.result(timeout=self.effector_timeout)
        except FutureTimeoutError:
            future.cancel()
            raise EffectorFailure(
                f"effector timed out after {self.effector_timeout}s", target_id=target_id
            )
        except Exception as e:
            raise EffectorFailure(f"effector raised {type(e).__name__}: {e}", target_id=target_id)

        if ok is False:
            raise EffectorFailure("effector reported failure", target_id=target_id)

    def shutdown(self):
        self._executor.shutdown(wait=False)
