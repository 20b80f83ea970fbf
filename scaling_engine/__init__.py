"""
AUTOSCALING DECISION ENGINE
===========================
Engine ra quyết định autoscaling: ingest utilization metrics, áp dụng
target-tracking / step / vertical policies và reconcile actions với
cooldown, bounds và effector bên ngoài (cloud API, orchestrator).

Modules:
- metrics: Aggregator (rolling windows) và collector (pull ingestion)
- autoscaling: Policy, evaluator, reconciler, engine, simulator
- effectors: Effector collaborators (in-memory, dry-run)
- audit: Structured audit records
- config: Cấu hình engine
"""

__version__ = "1.0.0"
__author__ = "Autoscaling Analysis Team"

from .autoscaling import (
    AutoscalingEngine,
    PolicyKind,
    ReasonCode,
    ResourceRequirements,
    ScalableTarget,
    ScaleAction,
    ScalingPolicy,
    TargetKind
)
from .config import EngineConfig
from .errors import (
    CooldownActive,
    EffectorFailure,
    InvalidPolicy,
    InvalidSample,
    NoData,
    ScalingEngineError
)

__all__ = [
    'AutoscalingEngine',
    'EngineConfig',
    'PolicyKind',
    'ReasonCode',
    'ResourceRequirements',
    'ScalableTarget',
    'ScaleAction',
    'ScalingPolicy',
    'TargetKind',
    'CooldownActive',
    'EffectorFailure',
    'InvalidPolicy',
    'InvalidSample',
    'NoData',
    'ScalingEngineError'
]
