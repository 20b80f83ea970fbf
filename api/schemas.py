"""
API Schemas
===========
Pydantic schemas cho FastAPI endpoints của decision engine.
"""

from pydantic import BaseModel, Field
from typing import List, Optional, Dict, Any, Union
from datetime import datetime

from scaling_engine.autoscaling.policy import ResourceRequirements


# =============================================================================
# Common Schemas
# =============================================================================

class ResourceRequirementsModel(BaseModel):
    """CPU/memory requests và limits của vertical target."""
    requests: Dict[str, float]
    limits: Dict[str, float] = Field(default_factory=dict)

    class Config:
        json_schema_extra = {
            "example": {
                "requests": {"cpu": 0.5, "memory": 536870912},
                "limits": {"cpu": 0.75, "memory": 805306368}
            }
        }

    def to_domain(self) -> ResourceRequirements:
        return ResourceRequirements(requests=dict(self.requests), limits=dict(self.limits))


CapacityModel = Union[int, ResourceRequirementsModel]


def capacity_to_domain(capacity: CapacityModel):
    """Convert capacity từ request body sang domain value."""
    if isinstance(capacity, ResourceRequirementsModel):
        return capacity.to_domain()
    return capacity


# =============================================================================
# Target Schemas
# =============================================================================

class TargetResponse(BaseModel):
    """State của một scalable target và policy của nó."""
    target_id: str
    kind: str
    capacity: Any
    min_capacity: Any
    max_capacity: Any
    state: str
    last_scale_time: Optional[datetime] = None
    cooldown_remaining_seconds: float = 0.0
    policy: Dict[str, Any]


class TargetListResponse(BaseModel):
    """Danh sách targets đã đăng ký."""
    count: int
    targets: List[TargetResponse]


class ObserveRequest(BaseModel):
    """Sync capacity quan sát được từ hệ thống bên ngoài."""
    capacity: CapacityModel

    class Config:
        json_schema_extra = {
            "example": {"capacity": 3}
        }


class ScaleRequest(BaseModel):
    """Manual scaling request (set desired capacity)."""
    capacity: CapacityModel

    class Config:
        json_schema_extra = {
            "example": {"capacity": 4}
        }


class ScaleResponse(BaseModel):
    """Kết quả của scaling action đã apply."""
    target_id: str
    old_capacity: Any
    new_capacity: Any
    reason: str
    timestamp: datetime


# =============================================================================
# Metrics Schemas
# =============================================================================

class SampleIn(BaseModel):
    """Một utilization sample."""
    target_id: str
    metric: str
    value: float
    timestamp: Optional[Union[float, datetime]] = Field(
        default=None,
        description="Epoch seconds hoặc ISO datetime (mặc định: thời điểm nhận)"
    )


class SampleBatchRequest(BaseModel):
    """Request schema cho push ingestion."""
    samples: List[SampleIn] = Field(min_length=1)

    class Config:
        json_schema_extra = {
            "example": {
                "samples": [
                    {"target_id": "web", "metric": "cpu_utilization", "value": 72.5,
                     "timestamp": "2024-01-01T00:00:00Z"},
                    {"target_id": "web", "metric": "cpu_utilization", "value": 80.1,
                     "timestamp": "2024-01-01T00:00:15Z"}
                ]
            }
        }


class SampleBatchResponse(BaseModel):
    """Response schema cho push ingestion."""
    accepted: int
    rejected: int
    errors: List[str] = Field(default_factory=list)


# =============================================================================
# Evaluation Schemas
# =============================================================================

class TickRequest(BaseModel):
    """Request schema cho một evaluation pass."""
    timestamp: Optional[Union[float, datetime]] = Field(
        default=None,
        description="Thời điểm tick (mặc định: now)"
    )


class DecisionOut(BaseModel):
    """Outcome của một target trong tick."""
    target_id: str
    outcome: str
    action: Optional[str] = None
    current: Any = None
    proposed: Any = None
    reason: str


class TickResponse(BaseModel):
    """Response schema cho tick endpoint."""
    timestamp: datetime
    applied: int
    rejected: int
    skipped: int
    errors: int
    decisions: List[DecisionOut]


# =============================================================================
# Audit & Health Schemas
# =============================================================================

class AuditRecordOut(BaseModel):
    """Một audit record."""
    event: str
    target_id: str
    old_value: Any = None
    new_value: Any = None
    reason: str
    timestamp: datetime
    detail: Dict[str, Any] = Field(default_factory=dict)


class AuditResponse(BaseModel):
    """Response schema cho audit endpoint."""
    records: List[AuditRecordOut]
    stats: Dict[str, int]


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    timestamp: datetime
    version: str
    targets: int
    running: bool
    dry_run: bool
    tick_count: int
