"""
FastAPI Application
===================
Host process cho Autoscaling Decision Engine.

Endpoints:
    - GET /health: Health check
    - GET /targets: List targets đã đăng ký
    - POST /targets/{target_id}: Đăng ký / thay policy của target
    - GET /targets/{target_id}: State của target
    - DELETE /targets/{target_id}: Huỷ đăng ký target
    - GET /targets/{target_id}/evaluate: Xem decision hiện tại (không apply)
    - POST /targets/{target_id}/observe: Sync capacity quan sát được
    - POST /targets/{target_id}/scale: Manual scaling request
    - POST /samples: Push ingestion utilization samples
    - POST /tick: Chạy một evaluation pass
    - GET /audit: Audit records gần nhất

Config qua environment variables (prefix SCALER_), xem EngineConfig.

Run:
    uvicorn api.main:app --reload --port 8000
"""

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from dataclasses import fields
from datetime import datetime
from typing import Any, Dict, Optional
import pandas as pd
import sys
import os

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from scaling_engine import __version__
from scaling_engine.autoscaling import AutoscalingEngine, PolicyConfig, load_policy_file
from scaling_engine.autoscaling.engine import TickReport, capacity_value
from scaling_engine.autoscaling.policy import ScalableTarget, ScalingDecision, ScalingPolicy
from scaling_engine.config import EngineConfig
from scaling_engine.errors import (
    CooldownActive, EffectorFailure, InvalidPolicy, InvalidSample, ScalingEngineError
)
from scaling_engine.logging_utils import get_logger
from scaling_engine.timeutils import to_timestamp

from api.schemas import (
    HealthResponse,
    TargetResponse, TargetListResponse,
    ObserveRequest, ScaleRequest, ScaleResponse, capacity_to_domain,
    SampleBatchRequest, SampleBatchResponse,
    TickRequest, TickResponse, DecisionOut,
    AuditRecordOut, AuditResponse
)

logger = get_logger("api")

# =============================================================================
# App Configuration
# =============================================================================

app = FastAPI(
    title="Autoscaling Decision Engine API",
    description="""
    API cho decision engine autoscaling.

    ## Features
    - **Ingestion**: Push utilization samples theo (target, metric)
    - **Policies**: Target-tracking, step và vertical recommendation
    - **Reconciliation**: Cooldown, bounds và effector calls
    - **Audit**: Structured records cho mọi decision và action
    """,
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc"
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# =============================================================================
# Global State (engine)
# =============================================================================

ENGINE_CACHE = {
    "engine": None,
    "started_at": None
}


def get_engine() -> AutoscalingEngine:
    """Tạo engine từ environment config nếu chưa có trong cache."""
    if ENGINE_CACHE["engine"] is None:
        config = EngineConfig.from_env()
        ENGINE_CACHE["engine"] = AutoscalingEngine(config)
        ENGINE_CACHE["started_at"] = datetime.now()
    return ENGINE_CACHE["engine"]


def set_engine(engine: Optional[AutoscalingEngine]):
    """Thay engine (dùng cho tests hoặc host embed)."""
    ENGINE_CACHE["engine"] = engine
    ENGINE_CACHE["started_at"] = datetime.now() if engine is not None else None


def _to_datetime(value: Optional[pd.Timestamp]) -> Optional[datetime]:
    return value.to_pydatetime() if value is not None else None


def policy_to_dict(policy: ScalingPolicy) -> Dict[str, Any]:
    """Serialize policy cho JSON response (durations = giây)."""
    data = {f.name: getattr(policy, f.name) for f in fields(policy)}
    data["kind"] = policy.kind.value
    data["resource_metrics"] = dict(policy.resource_metrics)
    for name in ("cooldown", "window", "history_window"):
        data[name] = getattr(policy, name).total_seconds()
    return data


def target_to_response(target: ScalableTarget, policy: ScalingPolicy, now: pd.Timestamp) -> TargetResponse:
    return TargetResponse(
        target_id=target.target_id,
        kind=target.kind.value,
        capacity=capacity_value(target.capacity),
        min_capacity=target.min_capacity,
        max_capacity=target.max_capacity,
        state=target.state(now, policy.cooldown),
        last_scale_time=_to_datetime(target.last_scale_time),
        cooldown_remaining_seconds=target.cooldown_remaining(now, policy.cooldown).total_seconds(),
        policy=policy_to_dict(policy)
    )


def decision_to_out(decision: ScalingDecision, outcome: str, reason: Optional[str] = None) -> DecisionOut:
    return DecisionOut(
        target_id=decision.target_id,
        outcome=outcome,
        action=decision.action.value,
        current=capacity_value(decision.current),
        proposed=capacity_value(decision.proposed),
        reason=reason or decision.reason.value
    )


def report_to_response(report: TickReport) -> TickResponse:
    decisions = []
    for target_id, decision in report.decisions.items():
        if target_id in report.applied:
            decisions.append(decision_to_out(decision, "applied", report.applied[target_id].reason.value))
        elif target_id in report.rejected:
            decisions.append(decision_to_out(decision, "rejected", report.rejected[target_id].reason.value))
        elif target_id in report.skipped:
            decisions.append(decision_to_out(decision, "skipped"))
        else:
            decisions.append(decision_to_out(decision, "noop"))
    for target_id, error in report.errors.items():
        decisions.append(DecisionOut(target_id=target_id, outcome="error", reason=error))

    return TickResponse(
        timestamp=report.timestamp.to_pydatetime(),
        applied=len(report.applied),
        rejected=len(report.rejected),
        skipped=len(report.skipped),
        errors=len(report.errors),
        decisions=decisions
    )


def _lookup(engine: AutoscalingEngine, target_id: str):
    try:
        return engine.target(target_id), engine.policy(target_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Target not found: {target_id}")


# =============================================================================
# Startup / Shutdown Events
# =============================================================================

@app.on_event("startup")
async def startup_event():
    """Setup logging, load policy file và (optional) chạy control loop."""
    engine = get_engine()
    config = engine.config
    get_logger("scaling_engine", level=config.log_level_value, log_file=config.log_file)

    logger.info("Starting Autoscaling Decision Engine API...")
    if config.policy_file:
        errors = engine.register_from_config(load_policy_file(config.policy_file))
        logger.info(f"Loaded {len(engine.targets())} targets from {config.policy_file}, {len(errors)} rejected")

    if config.autostart:
        engine.start()
    logger.info("API ready!")


@app.on_event("shutdown")
async def shutdown_event():
    engine = ENGINE_CACHE["engine"]
    if engine is not None and engine.running:
        engine.stop()


# =============================================================================
# Health Endpoint
# =============================================================================

@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check():
    """
    Health check endpoint.

    Trả về trạng thái của engine và control loop.
    """
    engine = get_engine()
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(),
        version=__version__,
        targets=len(engine.targets()),
        running=engine.running,
        dry_run=engine.config.dry_run,
        tick_count=engine.tick_count
    )


# =============================================================================
# Target Endpoints
# =============================================================================

@app.get("/targets", response_model=TargetListResponse, tags=["Targets"])
async def list_targets():
    """Liệt kê mọi target đã đăng ký."""
    engine = get_engine()
    now = engine.clock()
    targets = [
        target_to_response(target, policy, now)
        for target, policy in engine.targets().values()
    ]
    return TargetListResponse(count=len(targets), targets=targets)


@app.post("/targets/{target_id}", response_model=TargetResponse, tags=["Targets"])
async def register_target(target_id: str, config: PolicyConfig):
    """
    Đăng ký target với policy.

    Nếu target đã tồn tại: thay policy và bounds, giữ capacity hiện tại
    và cooldown state.
    """
    engine = get_engine()
    try:
        target, policy = config.to_target_and_policy(target_id, engine.config.default_dead_band_percent)
        if target_id in engine.targets():
            existing = engine.target(target_id)
            if existing.is_vertical == target.is_vertical:
                target.capacity = existing.capacity
        target = engine.register(target, policy)
    except InvalidPolicy as e:
        raise HTTPException(status_code=422, detail=e.message)

    return target_to_response(target, policy, engine.clock())


@app.get("/targets/{target_id}", response_model=TargetResponse, tags=["Targets"])
async def get_target(target_id: str):
    """State hiện tại của target."""
    engine = get_engine()
    target, policy = _lookup(engine, target_id)
    return target_to_response(target, policy, engine.clock())


@app.delete("/targets/{target_id}", tags=["Targets"])
async def delete_target(target_id: str):
    """Huỷ đăng ký target và xoá samples của nó."""
    engine = get_engine()
    if not engine.unregister(target_id):
        raise HTTPException(status_code=404, detail=f"Target not found: {target_id}")
    return {"target_id": target_id, "deleted": True}


@app.get("/targets/{target_id}/evaluate", response_model=DecisionOut, tags=["Targets"])
async def evaluate_target(target_id: str):
    """Decision mà tick tiếp theo sẽ đưa ra cho target (không reconcile)."""
    engine = get_engine()
    _lookup(engine, target_id)
    decision = engine.evaluate_target(target_id)
    return decision_to_out(decision, "preview")


@app.post("/targets/{target_id}/observe", response_model=TargetResponse, tags=["Targets"])
async def observe_capacity(target_id: str, request: ObserveRequest):
    """Sync capacity thực tế của target (vd: sau khi scale ngoài engine)."""
    engine = get_engine()
    target, policy = _lookup(engine, target_id)
    capacity = capacity_to_domain(request.capacity)
    if isinstance(capacity, int) == target.is_vertical:
        raise HTTPException(status_code=422, detail="capacity type does not match target kind")

    engine.observe(target_id, capacity)
    return target_to_response(engine.target(target_id), policy, engine.clock())


@app.post("/targets/{target_id}/scale", response_model=ScaleResponse, tags=["Targets"])
async def scale_target(target_id: str, request: ScaleRequest):
    """
    Manual scaling request.

    Vẫn đi qua cooldown và bounds:
        - 409 nếu target đang cooling hoặc đã ở bound
        - 502 nếu effector call thất bại
    """
    engine = get_engine()
    _lookup(engine, target_id)

    try:
        result = engine.request_capacity(target_id, capacity_to_domain(request.capacity))
    except InvalidPolicy as e:
        raise HTTPException(status_code=422, detail=e.message)
    except CooldownActive as e:
        raise HTTPException(status_code=409, detail=e.message)
    except EffectorFailure as e:
        raise HTTPException(status_code=502, detail=e.message)
    except ScalingEngineError as e:
        raise HTTPException(status_code=409, detail=e.message)

    return ScaleResponse(
        target_id=target_id,
        old_capacity=capacity_value(result.old_capacity),
        new_capacity=capacity_value(result.new_capacity),
        reason=result.reason.value,
        timestamp=result.timestamp.to_pydatetime()
    )


# =============================================================================
# Metrics Endpoints
# =============================================================================

@app.post("/samples", response_model=SampleBatchResponse, tags=["Metrics"])
async def ingest_samples(request: SampleBatchRequest):
    """
    Push ingestion utilization samples.

    Sample out-of-order hoặc không hợp lệ bị reject riêng lẻ,
    các samples còn lại vẫn được ghi.
    """
    engine = get_engine()
    accepted = 0
    errors = []

    for sample in request.samples:
        try:
            engine.ingest(sample.target_id, sample.metric, sample.value, sample.timestamp)
            accepted += 1
        except InvalidSample as e:
            errors.append(str(e))

    return SampleBatchResponse(accepted=accepted, rejected=len(errors), errors=errors)


# =============================================================================
# Evaluation Endpoints
# =============================================================================

@app.post("/tick", response_model=TickResponse, tags=["Autoscaling"])
async def run_tick(request: Optional[TickRequest] = None):
    """Chạy một evaluation pass trên mọi target."""
    engine = get_engine()
    timestamp = request.timestamp if request is not None else None

    try:
        now = to_timestamp(timestamp) if timestamp is not None else None
    except (TypeError, ValueError) as e:
        raise HTTPException(status_code=422, detail=f"Invalid timestamp: {e}")

    return report_to_response(engine.tick(now))


@app.get("/audit", response_model=AuditResponse, tags=["Audit"])
async def get_audit(
    target_id: Optional[str] = Query(default=None, description="Lọc theo target"),
    event: Optional[str] = Query(default=None, description="decision, action, rejected, error"),
    limit: int = Query(default=100, ge=1, le=10000)
):
    """Audit records gần nhất."""
    engine = get_engine()
    records = engine.audit.records(target_id=target_id, event=event, limit=limit)

    return AuditResponse(
        records=[
            AuditRecordOut(
                event=r.event,
                target_id=r.target_id,
                old_value=r.old_value,
                new_value=r.new_value,
                reason=r.reason,
                timestamp=r.timestamp.to_pydatetime(),
                detail=r.detail
            )
            for r in records
        ],
        stats=engine.audit.get_stats()
    )


# =============================================================================
# Main
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
