import hmac
from typing import Iterable, Optional

from fastapi import Request

from kommo_bridge.logging_config import get_logger, mask_secret
from kommo_bridge.services.alert_service import alert_warning
from kommo_bridge.services.errors import AuthError

logger = get_logger("auth")


def secrets_match(expected: str, provided: Optional[str]) -> bool:
    if not expected or not provided:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.strip().encode("utf-8"))


def get_request_secret(
    request: Request,
    header_name: str,
    query_names: Iterable[str] = ("secret",),
) -> Optional[str]:
    header_secret = request.headers.get(header_name)
    if header_secret:
        return header_secret.strip()
    for name in query_names:
        query_secret = request.query_params.get(name)
        if query_secret:
            return query_secret.strip()
    return None


def check_secret(expected: str, provided: Optional[str], *, surface: str, required: bool = False) -> None:
    """Raise AuthError on mismatch.

    With no expected secret configured the surface stays open (and alerts), unless
    ``required`` is set.
    """
    if not expected:
        if required:
            logger.warning("Secret not configured", extra={"context": {"surface": surface}})
            raise AuthError(f"{surface}: secret not configured")
        alert_warning("Webhook secret not configured", {"surface": surface})
        return
    if not secrets_match(expected, provided):
        logger.warning(
            "Invalid secret",
            extra={"context": {"surface": surface, "expected": mask_secret(expected), "provided": mask_secret(provided)}},
        )
        raise AuthError(f"{surface}: invalid secret")
