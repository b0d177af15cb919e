"""
Admin and status API for the abuse guard.

Provides REST endpoints for evaluating requests, managing penalties,
whitelist/blacklist entries, appeals and the job trigger policy table.
"""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field, field_validator

from ..gatekeeper import AbuseGatekeeper
from ..penalties.models import PenaltySeverity
from ..rate_limiting.job_policy import JobTypeConfig

router = APIRouter(prefix="/abuse", tags=["abuse"])


def get_gatekeeper(request: Request) -> AbuseGatekeeper:
    """Resolve the gatekeeper built by the application context."""
    gatekeeper = getattr(request.app.state, "gatekeeper", None)
    if gatekeeper is None:
        raise HTTPException(status_code=503, detail="Abuse guard is not initialized")
    return gatekeeper


# Request/Response models
class EvaluateRequest(BaseModel):
    """Request model for evaluating an action."""

    user_id: str = Field(..., min_length=1, description="User performing the action")
    action: str = Field(..., min_length=1, description="Action being performed")
    job_name: str | None = Field(None, description="Job to trigger, if any")
    job_type: str | None = Field(None, description="Job category")
    channel: str | None = Field(None, description="Originating channel")


class PenaltyRequest(BaseModel):
    """Request model for applying a penalty."""

    reason: str = Field(..., min_length=1, description="Why the penalty is issued")
    severity: str = Field("MEDIUM", description="LOW, MEDIUM, HIGH or CRITICAL")

    @field_validator("severity")
    @classmethod
    def validate_severity(cls, v: str) -> str:
        name = v.strip().upper()
        if name not in PenaltySeverity.__members__:
            raise ValueError(f"Unknown severity: {v}")
        return name


class RevokeRequest(BaseModel):
    """Request model for revoking a penalty."""

    revoked_by: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1)


class ListEntryRequest(BaseModel):
    """Request model for whitelist/blacklist changes."""

    added_by: str | None = None
    reason: str | None = None


class AppealSubmitRequest(BaseModel):
    """Request model for submitting an appeal."""

    penalty_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1)


class AppealReviewRequest(BaseModel):
    """Request model for reviewing an appeal."""

    approved: bool
    reviewed_by: str = Field(..., min_length=1)
    notes: str | None = None


class JobTypeConfigRequest(BaseModel):
    """Request model for setting a job type policy."""

    max_requests_per_user: int = Field(..., gt=0)
    window_size_seconds: int = Field(..., gt=0)
    cooldown_seconds: int = Field(..., ge=0)
    global_max_requests: int | None = Field(None, gt=0)
    global_window_seconds: int | None = Field(None, gt=0)


@router.post("/evaluate")
async def evaluate(body: EvaluateRequest, gatekeeper: AbuseGatekeeper = Depends(get_gatekeeper)) -> dict[str, Any]:
    """Run an action through every gate."""
    decision = await gatekeeper.evaluate(
        body.user_id, body.action, job_name=body.job_name, job_type=body.job_type, channel=body.channel
    )
    return decision.to_dict()


@router.get("/users/{user_id}/status")
async def get_user_status(user_id: str, gatekeeper: AbuseGatekeeper = Depends(get_gatekeeper)) -> dict[str, Any]:
    """Penalty standing, job quotas and activity metrics for a user."""
    overview = await gatekeeper.get_user_overview(user_id)
    overview["access"] = (await gatekeeper.penalties.is_user_allowed(user_id)).to_dict()
    return overview


@router.post("/users/{user_id}/penalties", status_code=201)
async def apply_penalty(
    user_id: str, body: PenaltyRequest, gatekeeper: AbuseGatekeeper = Depends(get_gatekeeper)
) -> dict[str, Any]:
    """Apply an escalated penalty to a user."""
    penalty = await gatekeeper.penalties.apply_penalty(user_id, body.reason, PenaltySeverity[body.severity])
    return penalty.to_dict()


@router.post("/penalties/{penalty_id}/revoke")
async def revoke_penalty(
    penalty_id: str, body: RevokeRequest, gatekeeper: AbuseGatekeeper = Depends(get_gatekeeper)
) -> dict[str, Any]:
    """Revoke a penalty; unknown ids are a no-op."""
    penalty = await gatekeeper.penalties.revoke_penalty(penalty_id, body.revoked_by, body.reason)
    return {"revoked": penalty is not None, "penalty": penalty.to_dict() if penalty else None}


@router.delete("/users/{user_id}/cooldowns/{job_name}")
async def reset_cooldown(
    user_id: str, job_name: str, gatekeeper: AbuseGatekeeper = Depends(get_gatekeeper)
) -> dict[str, Any]:
    """Clear a (user, job) cooldown."""
    await gatekeeper.job_policy.reset_cooldown(user_id, job_name)
    return {"user_id": user_id, "job_name": job_name, "reset": True}


@router.get("/whitelist")
async def get_whitelist(gatekeeper: AbuseGatekeeper = Depends(get_gatekeeper)) -> dict[str, Any]:
    return {"users": gatekeeper.penalties.get_whitelist()}


@router.put("/whitelist/{user_id}")
async def add_to_whitelist(
    user_id: str, body: ListEntryRequest | None = None, gatekeeper: AbuseGatekeeper = Depends(get_gatekeeper)
) -> dict[str, Any]:
    entry = body or ListEntryRequest()
    await gatekeeper.penalties.add_to_whitelist(user_id, entry.added_by, entry.reason)
    return {"user_id": user_id, "whitelisted": True}


@router.delete("/whitelist/{user_id}")
async def remove_from_whitelist(user_id: str, gatekeeper: AbuseGatekeeper = Depends(get_gatekeeper)) -> dict[str, Any]:
    removed = await gatekeeper.penalties.remove_from_whitelist(user_id)
    return {"user_id": user_id, "removed": removed}


@router.get("/blacklist")
async def get_blacklist(gatekeeper: AbuseGatekeeper = Depends(get_gatekeeper)) -> dict[str, Any]:
    return {"users": gatekeeper.penalties.get_blacklist()}


@router.put("/blacklist/{user_id}")
async def add_to_blacklist(
    user_id: str, body: ListEntryRequest | None = None, gatekeeper: AbuseGatekeeper = Depends(get_gatekeeper)
) -> dict[str, Any]:
    entry = body or ListEntryRequest()
    await gatekeeper.penalties.add_to_blacklist(user_id, entry.added_by, entry.reason)
    return {"user_id": user_id, "blacklisted": True}


@router.delete("/blacklist/{user_id}")
async def remove_from_blacklist(user_id: str, gatekeeper: AbuseGatekeeper = Depends(get_gatekeeper)) -> dict[str, Any]:
    removed = await gatekeeper.penalties.remove_from_blacklist(user_id)
    return {"user_id": user_id, "removed": removed}


@router.post("/appeals", status_code=201)
async def submit_appeal(
    body: AppealSubmitRequest, gatekeeper: AbuseGatekeeper = Depends(get_gatekeeper)
) -> dict[str, Any]:
    """Submit an appeal against a penalty."""
    appeal = await gatekeeper.penalties.submit_appeal(body.penalty_id, body.user_id, body.reason)
    return appeal.to_dict()


@router.post("/appeals/{penalty_id}/review")
async def review_appeal(
    penalty_id: str, body: AppealReviewRequest, gatekeeper: AbuseGatekeeper = Depends(get_gatekeeper)
) -> dict[str, Any]:
    """Approve or deny a pending appeal."""
    appeal = await gatekeeper.penalties.review_appeal(penalty_id, body.approved, body.reviewed_by, body.notes)
    return appeal.to_dict()


@router.get("/appeals/pending")
async def get_pending_appeals(gatekeeper: AbuseGatekeeper = Depends(get_gatekeeper)) -> dict[str, Any]:
    return {"appeals": [a.to_dict() for a in gatekeeper.penalties.get_pending_appeals()]}


@router.get("/job-types")
async def get_job_types(gatekeeper: AbuseGatekeeper = Depends(get_gatekeeper)) -> dict[str, Any]:
    return {name: cfg.to_dict() for name, cfg in gatekeeper.job_policy.get_job_configs().items()}


@router.put("/job-types/{job_type}")
async def set_job_type(
    job_type: str, body: JobTypeConfigRequest, gatekeeper: AbuseGatekeeper = Depends(get_gatekeeper)
) -> dict[str, Any]:
    """Add or replace a job type policy."""
    config = JobTypeConfig(job_type=job_type, **body.model_dump())
    gatekeeper.job_policy.set_job_config(config)
    return config.to_dict()


@router.get("/statistics")
async def get_statistics(gatekeeper: AbuseGatekeeper = Depends(get_gatekeeper)) -> dict[str, Any]:
    return {
        "gate": gatekeeper.get_metrics(),
        "penalties": gatekeeper.penalties.get_statistics(),
        "activity": gatekeeper.activity.get_statistics(),
        "storage": gatekeeper.job_policy.get_storage_status(),
    }


@router.get("/flagged-users")
async def get_flagged_users(
    limit: int = Query(50, ge=1, le=1000), gatekeeper: AbuseGatekeeper = Depends(get_gatekeeper)
) -> dict[str, Any]:
    return {"users": [m.to_dict() for m in gatekeeper.activity.get_flagged_users(limit)]}


@router.get("/events")
async def get_events(
    limit: int = Query(100, ge=1, le=1000),
    user_id: str | None = None,
    gatekeeper: AbuseGatekeeper = Depends(get_gatekeeper),
) -> dict[str, Any]:
    return {"events": [e.to_dict() for e in gatekeeper.get_recent_events(limit, user_id)]}
