"""
Autoscaling Module
==================
Decision engine với horizontal (target-tracking, step) và vertical scaling.

Classes:
- AutoscalingEngine: Control loop chính
- PolicyEvaluator: Policy -> ScalingDecision
- Reconciler: Cooldown, bounds và effector call
- ScalableTarget: Target được scale
- ScalingPolicy: Cấu hình scaling policy
- AutoscalingSimulator: Replay metrics đã ghi để test policies

Enums:
- ScaleAction: NONE, SCALE_OUT, SCALE_IN, SCALE_UP, SCALE_DOWN
- PolicyKind, TargetKind, ReasonCode
"""

from .policy import (
    PolicyKind,
    ReasonCode,
    ResourceRequirements,
    ScalableTarget,
    ScaleAction,
    ScalingDecision,
    ScalingPolicy,
    TargetKind,
    validate_policy,
    validate_target
)
from .policy_config import PolicyConfig, load_policy_config, load_policy_file, parse_policy_config
from .evaluator import PolicyEvaluator, ResourceUsage
from .reconciler import AppliedAction, Reconciler, Rejected
from .engine import AutoscalingEngine, TickReport
from .simulator import AutoscalingSimulator

__all__ = [
    'AutoscalingEngine',
    'TickReport',
    'PolicyEvaluator',
    'ResourceUsage',
    'Reconciler',
    'AppliedAction',
    'Rejected',
    'ScalableTarget',
    'ScalingPolicy',
    'ScalingDecision',
    'ResourceRequirements',
    'ScaleAction',
    'PolicyKind',
    'TargetKind',
    'ReasonCode',
    'PolicyConfig',
    'load_policy_config',
    'load_policy_file',
    'parse_policy_config',
    'validate_policy',
    'validate_target',
    'AutoscalingSimulator'
]
