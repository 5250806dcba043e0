"""Scan history API endpoints."""

from fastapi import APIRouter, HTTPException, Request, Response

from plantgate.auth import CurrentSubject
from plantgate.exceptions import TransientStorageFailure
from plantgate.models.history import ScanHistory
from plantgate.services.scan_history import ScanHistoryService

router = APIRouter(prefix="/history", tags=["history"])

_STORE_UNAVAILABLE = "Could not load your scan history. Try again shortly."


def _get_history_service(request: Request) -> ScanHistoryService:
    service = getattr(request.app.state, "scan_history", None)
    if service is None:
        raise HTTPException(status_code=503, detail="History service unavailable")
    return service


@router.get("", response_model=ScanHistory)
async def list_history(request: Request, subject: CurrentSubject) -> ScanHistory:
    """Recent scans, newest first, and the lifetime scan count."""
    service = _get_history_service(request)
    try:
        return await service.list_history(subject)
    except TransientStorageFailure:
        raise HTTPException(status_code=503, detail=_STORE_UNAVAILABLE)


@router.delete("/{record_id}", status_code=204)
async def remove_from_history(record_id: str, request: Request, subject: CurrentSubject) -> Response:
    service = _get_history_service(request)
    try:
        removed = await service.remove_scan(subject, record_id)
    except TransientStorageFailure:
        raise HTTPException(status_code=503, detail=_STORE_UNAVAILABLE)
    if not removed:
        raise HTTPException(status_code=404, detail="Scan not found in your history")
    return Response(status_code=204)
