"""
Subject resolution for FastAPI endpoints.

A Bearer token is verified via Supabase auth.get_user() and yields an
authenticated subject. Without a token the request is a guest, identified by
the X-Guest-Id header (or the single local guest when absent).
"""

from typing import Annotated

import structlog
from fastapi import Depends, Header, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from plantgate.constants import GUEST_ID_HEADER, LOCAL_DEVICE_ID
from plantgate.models.entitlements import Subject

logger = structlog.get_logger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)


async def _verify_token(request: Request, token: str) -> Subject:
    supabase = getattr(request.app.state, "supabase", None)
    if supabase is None:
        raise HTTPException(status_code=503, detail="Authentication service unavailable")

    try:
        response = await supabase.auth.get_user(token)
        user = response.user if response else None
        if user is None:
            raise HTTPException(status_code=401, detail="Invalid or expired token")
        return Subject.authenticated(str(user.id))
    except HTTPException:
        raise
    except Exception as e:
        logger.warning("auth_token_verification_failed", error=str(e))
        raise HTTPException(status_code=401, detail="Invalid or expired token")


async def get_current_subject(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
    guest_id: str | None = Header(default=None, alias=GUEST_ID_HEADER),
) -> Subject:
    """
    FastAPI dependency resolving who the request's quota belongs to.

    Raises:
        HTTPException 503: Bearer token sent but Supabase is not configured.
        HTTPException 401: Token is invalid, expired, or user not found.
    """
    if credentials is not None:
        subject = await _verify_token(request, credentials.credentials)
    else:
        subject = Subject.guest(guest_id.strip() if guest_id else LOCAL_DEVICE_ID)

    structlog.contextvars.bind_contextvars(subject_key=subject.key)
    return subject


async def get_authenticated_subject(
    subject: Subject = Depends(get_current_subject),
) -> Subject:
    """Same as get_current_subject, but guests are rejected with 401."""
    if subject.is_guest:
        raise HTTPException(status_code=401, detail="Sign in to manage subscriptions")
    return subject


CurrentSubject = Annotated[Subject, Depends(get_current_subject)]
AuthenticatedSubject = Annotated[Subject, Depends(get_authenticated_subject)]
