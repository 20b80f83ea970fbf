"""
Engine Errors
=============
Exception hierarchy của decision engine.

Không có lỗi nào fatal cho process:
    - InvalidSample: sample stale / out-of-order, bị reject và log
    - NoData: window rỗng, bỏ qua evaluation của target trong tick này
    - InvalidPolicy: policy sai, reject lúc registration
    - CooldownActive: informational, target vừa scale xong
    - EffectorFailure: external apply call thất bại, chờ tick sau
"""

from typing import Optional


class ScalingEngineError(Exception):
    """Base class cho mọi lỗi của engine."""

    reason = "engine-error"

    def __init__(self, message: str, target_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.target_id = target_id

    def __str__(self) -> str:
        if self.target_id is not None:
            return f"[{self.target_id}] {self.message}"
        return self.message


class InvalidSample(ScalingEngineError):
    """Sample có timestamp không mới hơn sample mới nhất, hoặc value không hợp lệ."""

    reason = "invalid-sample"


class NoData(ScalingEngineError):
    """Window không có sample nào. Caller phải skip evaluation, không coi là 0."""

    reason = "insufficient-data"


class InvalidPolicy(ScalingEngineError):
    """Policy hoặc target config sai, bị reject lúc registration."""

    reason = "invalid-policy"


class CooldownActive(ScalingEngineError):
    """Target vẫn đang trong cooldown."""

    reason = "cooldown-active"


class EffectorFailure(ScalingEngineError):
    """Effector call thất bại hoặc timeout."""

    reason = "effector-failure"
