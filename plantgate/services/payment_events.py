"""
Verification of signed "subscription activated" events.

The payment collaborator signs the raw request body with HMAC-SHA256 using
the shared webhook secret and sends the hex digest in `X-Payment-Signature`.
"""

import hashlib
import hmac

import structlog
from pydantic import ValidationError

from plantgate.exceptions import ConfigurationError, InvalidSubscriptionError
from plantgate.models.entitlements import SubscriptionActivation

logger = structlog.get_logger(__name__)


def sign_payload(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 digest of `body`."""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(sig_header: str | None, body: bytes, secret: str) -> bool:
    """Return True if the signature header matches the body."""
    if not sig_header:
        return False
    return hmac.compare_digest(sign_payload(body, secret), sig_header.strip().lower())


def parse_activation_event(
    body: bytes, sig_header: str | None, secret: str
) -> SubscriptionActivation:
    """
    Verify and decode an activation event.

    Raises:
        ConfigurationError: If no webhook secret is configured.
        InvalidSubscriptionError: If the signature is missing or wrong, or the
            body is not a valid activation event.
    """
    if not secret:
        raise ConfigurationError("Payment webhook secret is not configured")
    if not sig_header:
        raise InvalidSubscriptionError("Missing payment signature")
    if not verify_signature(sig_header, body, secret):
        logger.warning("payment_signature_invalid", body_size=len(body))
        raise InvalidSubscriptionError("Invalid payment signature")

    try:
        return SubscriptionActivation.model_validate_json(body)
    except ValidationError as exc:
        logger.warning("payment_event_invalid", errors=exc.error_count())
        raise InvalidSubscriptionError("Malformed activation event") from exc
