"""Quota API endpoints."""

from fastapi import APIRouter, HTTPException, Request

from plantgate.auth import CurrentSubject
from plantgate.exceptions import TransientStorageFailure
from plantgate.models.entitlements import BonusResult, QuotaStatus
from plantgate.services.identification_gate import IdentificationGate

router = APIRouter(prefix="/quota", tags=["quota"])


def _get_gate(request: Request) -> IdentificationGate:
    gate = getattr(request.app.state, "identification_gate", None)
    if gate is None:
        raise HTTPException(status_code=503, detail="Quota service unavailable")
    return gate


@router.get("", response_model=QuotaStatus)
async def quota_status(request: Request, subject: CurrentSubject) -> QuotaStatus:
    """Remaining scans for the badge. May be stale when a store is unreachable."""
    gate = _get_gate(request)
    try:
        return await gate.remaining(subject)
    except TransientStorageFailure:
        raise HTTPException(status_code=503, detail="Could not load your scan balance. Try again shortly.")


@router.post("/bonus", response_model=BonusResult)
async def earn_bonus(request: Request, subject: CurrentSubject) -> BonusResult:
    """Credit one bonus scan after a fully-watched rewarded ad."""
    gate = _get_gate(request)
    try:
        return await gate.record_earned_bonus(subject)
    except TransientStorageFailure:
        raise HTTPException(status_code=503, detail="Could not record the bonus. Try again shortly.")
