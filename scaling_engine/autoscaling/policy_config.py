"""
Policy Configuration
====================
Parse policy configuration mapping (target_id -> options) thành
ScalableTarget + ScalingPolicy.

Options (camelCase hoặc snake_case):
    metric, targetValue, scaleUpTarget, scaleDownTarget, cooldown,
    minCapacity, maxCapacity, deadBandPercent, kind, initialCapacity,
    window, aggregation, scaleOutIncrement, scaleInDecrement,
    resourceMetrics, percentile, headroom, limitRatio, historyWindow,
    requests, limits

Usage:
    >>> results = load_policy_config({
    ...     'web': {'metric': 'cpu', 'targetValue': 50, 'minCapacity': 1, 'maxCapacity': 5}
    ... })
    >>> target, policy = results['web']
"""

import json
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, Field, ValidationError

from ..errors import InvalidPolicy
from .policy import (
    DEFAULT_RESOURCE_METRICS,
    PolicyKind,
    ResourceRequirements,
    ScalableTarget,
    ScalingPolicy,
    TargetKind,
    validate_policy
)

Duration = Union[float, str]


class PolicyConfig(BaseModel):
    """Options của một target trong policy configuration mapping."""
    kind: PolicyKind = PolicyKind.TARGET_TRACKING
    metric: str = "cpu_utilization"
    target_value: float = Field(default=50.0, alias="targetValue")
    scale_up_target: Optional[float] = Field(default=None, alias="scaleUpTarget")
    scale_down_target: Optional[float] = Field(default=None, alias="scaleDownTarget")
    cooldown: Duration = 300
    min_capacity: Union[int, Dict[str, float]] = Field(default=1, alias="minCapacity")
    max_capacity: Union[int, Dict[str, float]] = Field(default=10, alias="maxCapacity")
    dead_band_percent: Optional[float] = Field(default=None, alias="deadBandPercent")
    initial_capacity: Optional[int] = Field(default=None, alias="initialCapacity")
    window: Duration = 300
    aggregation: str = "mean"
    scale_out_increment: int = Field(default=1, alias="scaleOutIncrement")
    scale_in_decrement: int = Field(default=1, alias="scaleInDecrement")
    resource_metrics: Dict[str, str] = Field(
        default_factory=lambda: dict(DEFAULT_RESOURCE_METRICS), alias="resourceMetrics"
    )
    percentile: float = 95.0
    headroom: float = 1.2
    limit_ratio: float = Field(default=1.5, alias="limitRatio")
    history_window: Duration = Field(default="8h", alias="historyWindow")
    requests: Dict[str, float] = Field(default_factory=dict)
    limits: Dict[str, float] = Field(default_factory=dict)

    class Config:
        populate_by_name = True
        extra = "forbid"
        json_schema_extra = {
            "example": {
                "metric": "cpu_utilization",
                "targetValue": 50,
                "scaleUpTarget": 50,
                "scaleDownTarget": 30,
                "cooldown": 300,
                "minCapacity": 1,
                "maxCapacity": 5,
                "deadBandPercent": 10
            }
        }

    def to_target_and_policy(
        self,
        target_id: str,
        default_dead_band_percent: float = 10.0
    ) -> Tuple[ScalableTarget, ScalingPolicy]:
        """
        Build domain objects.

        Raises:
            InvalidPolicy: Nếu options không khớp kind hoặc policy sai
        """
        dead_band = self.dead_band_percent
        if dead_band is None:
            dead_band = default_dead_band_percent

        try:
            policy = ScalingPolicy(
                target_id=target_id,
                metric=self.metric,
                kind=self.kind,
                target_value=self.target_value,
                scale_up_target=self.scale_up_target,
                scale_down_target=self.scale_down_target,
                dead_band_percent=dead_band,
                cooldown=self.cooldown,
                window=self.window,
                aggregation=self.aggregation,
                scale_out_increment=self.scale_out_increment,
                scale_in_decrement=self.scale_in_decrement,
                resource_metrics=self.resource_metrics,
                percentile=self.percentile,
                headroom=self.headroom,
                limit_ratio=self.limit_ratio,
                history_window=self.history_window
            )
        except (TypeError, ValueError) as e:
            raise InvalidPolicy(str(e), target_id=target_id)
        validate_policy(policy)

        if policy.is_vertical:
            if not isinstance(self.min_capacity, dict) or not isinstance(self.max_capacity, dict):
                raise InvalidPolicy(
                    "vertical targets need per-resource minCapacity/maxCapacity", target_id=target_id
                )
            target = ScalableTarget(
                target_id=target_id,
                kind=TargetKind.VERTICAL,
                capacity=ResourceRequirements(requests=dict(self.requests), limits=dict(self.limits)),
                min_capacity=dict(self.min_capacity),
                max_capacity=dict(self.max_capacity)
            )
        else:
            if isinstance(self.min_capacity, dict) or isinstance(self.max_capacity, dict):
                raise InvalidPolicy(
                    "horizontal targets need integer minCapacity/maxCapacity", target_id=target_id
                )
            initial = self.initial_capacity if self.initial_capacity is not None else self.min_capacity
            target = ScalableTarget(
                target_id=target_id,
                kind=TargetKind.HORIZONTAL,
                capacity=initial,
                min_capacity=self.min_capacity,
                max_capacity=self.max_capacity
            )

        return target, policy


ConfigResult = Union[Tuple[ScalableTarget, ScalingPolicy], InvalidPolicy]


def parse_policy_config(
    target_id: str,
    options: Mapping[str, Any],
    default_dead_band_percent: float = 10.0
) -> Tuple[ScalableTarget, ScalingPolicy]:
    """
    Parse options của một target.

    Raises:
        InvalidPolicy: Options sai (pydantic validation error hoặc policy sai)
    """
    try:
        config = PolicyConfig.model_validate(dict(options))
    except ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise InvalidPolicy(details, target_id=target_id)
    return config.to_target_and_policy(target_id, default_dead_band_percent)


def load_policy_config(
    mapping: Mapping[str, Mapping[str, Any]],
    default_dead_band_percent: float = 10.0
) -> Dict[str, ConfigResult]:
    """
    Parse toàn bộ mapping. Entry lỗi không làm hỏng các entries khác.

    Args:
        mapping: target_id -> options
        default_dead_band_percent: Dead-band khi option không set

    Returns:
        Dict target_id -> (target, policy) hoặc InvalidPolicy
    """
    results: Dict[str, ConfigResult] = {}
    for target_id, options in mapping.items():
        try:
            results[target_id] = parse_policy_config(target_id, options, default_dead_band_percent)
        except InvalidPolicy as e:
            results[target_id] = e
    return results


def load_policy_file(path: str) -> Dict[str, Dict[str, Any]]:
    """
    Đọc policy configuration mapping từ JSON file.

    File có thể là mapping trực tiếp, hoặc {"targets": {...}}.
    """
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise InvalidPolicy(f"policy file {path} must contain a JSON object")
    return data.get("targets", data)
