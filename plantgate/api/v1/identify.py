"""Guarded plant identification endpoint."""

import structlog
from fastapi import APIRouter, File, HTTPException, Request, UploadFile
from pydantic import BaseModel

from plantgate.auth import CurrentSubject
from plantgate.exceptions import (
    ExternalServiceRateLimited,
    ExternalServiceUnavailable,
    IdentificationTimeout,
    NoPlantIdentified,
    TransientStorageFailure,
)
from plantgate.models.entitlements import (
    GateAllowed,
    GateDecision,
    GateDeniedFreeExhausted,
    GateDeniedSubscriptionExhausted,
    PlanTier,
    Subject,
)
from plantgate.models.identification import IdentificationResult, ImageHandle
from plantgate.services.identification_gate import IdentificationGate
from plantgate.services.plant_identifier import PlantIdentifier
from plantgate.services.scan_history import ScanHistoryService

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["identification"])


class IdentifyResponse(BaseModel):
    """Successful identification."""

    attempt_id: str
    plan_tier: PlanTier
    remaining: int
    counted: bool
    result: IdentificationResult


def _get_gate(request: Request) -> IdentificationGate:
    gate = getattr(request.app.state, "identification_gate", None)
    if gate is None:
        raise HTTPException(status_code=503, detail="Quota service unavailable")
    return gate


def _get_identifier(request: Request) -> PlantIdentifier:
    identifier = getattr(request.app.state, "plant_identifier", None)
    if identifier is None:
        raise HTTPException(status_code=503, detail="Plant identification is not configured")
    return identifier


def _payment_required_error(decision: GateDecision) -> HTTPException:
    if isinstance(decision, GateDeniedSubscriptionExhausted):
        detail = {
            "code": "subscription_exhausted",
            "message": "You have used all scans included in your plan today.",
            "plan_tier": decision.plan_tier.value,
            "resets_at": decision.resets_at.isoformat(),
        }
    elif isinstance(decision, GateDeniedFreeExhausted):
        detail = {
            "code": "free_exhausted",
            "message": "You have used your free scans for today.",
            "remaining": decision.remaining,
            "can_earn_bonus": decision.can_earn_bonus,
            "resets_at": decision.resets_at.isoformat(),
        }
    else:
        raise TypeError(f"Not a denial: {decision!r}")
    return HTTPException(status_code=402, detail=detail)


async def _record_history(request: Request, subject: Subject, result: IdentificationResult) -> None:
    history: ScanHistoryService | None = getattr(request.app.state, "scan_history", None)
    if history is None:
        return
    try:
        await history.record_scan(subject, result)
    except TransientStorageFailure:
        logger.warning("identification_history_not_saved", subject_key=subject.key)


@router.post("/identify", response_model=IdentifyResponse)
async def identify_plant(
    request: Request,
    subject: CurrentSubject,
    image: UploadFile = File(...),
) -> IdentifyResponse:
    """
    Identify the plant in an uploaded photo.

    One scan is counted only when a plant was identified. Running out of
    scans (402), an unreachable store (503), a saturated provider (429) and
    a provider timeout (504) are reported separately.
    """
    gate = _get_gate(request)
    identifier = _get_identifier(request)

    content = await image.read()
    if not content:
        raise HTTPException(status_code=400, detail="Empty image upload")
    handle = ImageHandle(
        content=content,
        mime_type=image.content_type or "image/jpeg",
        filename=image.filename or "plant.jpg",
    )

    try:
        outcome = await gate.identify(subject, handle, identifier)
    except TransientStorageFailure:
        raise HTTPException(
            status_code=503,
            detail="Could not check your scan balance. Please try again shortly.",
        )
    except ExternalServiceRateLimited:
        raise HTTPException(
            status_code=429,
            detail="The identification service is busy. Please try again in a moment.",
        )
    except IdentificationTimeout:
        raise HTTPException(status_code=504, detail="Identification timed out. Please try again.")
    except ExternalServiceUnavailable:
        raise HTTPException(
            status_code=503,
            detail="The identification service is unavailable. Please try again later.",
        )
    except NoPlantIdentified as e:
        raise HTTPException(status_code=422, detail=str(e))

    decision = outcome.decision
    if not isinstance(decision, GateAllowed):
        raise _payment_required_error(decision)

    logger.info(
        "identification_completed",
        attempt_id=decision.attempt_id,
        species=outcome.result.top.species_name if outcome.result.top else None,
        counted=outcome.counted,
    )
    await _record_history(request, subject, outcome.result)
    return IdentifyResponse(
        attempt_id=decision.attempt_id,
        plan_tier=decision.plan_tier,
        remaining=max(0, decision.remaining - 1) if outcome.counted else decision.remaining,
        counted=outcome.counted,
        result=outcome.result,
    )
