"""Bearer-secret check for scheduler-invoked endpoints."""

from __future__ import annotations

import hmac
import logging

log = logging.getLogger(__name__)

_BEARER = "Bearer "


def verify_bearer(authorization: str | None, secret: str) -> bool:
    """Constant-time check of ``Authorization: Bearer <secret>``.

    Fails closed: with no secret configured every request is rejected.
    """
    if not secret:
        log.error("Cron secret not configured, rejecting request")
        return False
    if not authorization or not authorization.startswith(_BEARER):
        return False
    presented = authorization[len(_BEARER):]
    return hmac.compare_digest(presented.encode("utf-8"), secret.encode("utf-8"))
