"""Role policy and the ordered authorization pipeline for exports."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from flask import jsonify
from flask.typing import ResponseReturnValue

from ..config import EXPORT_ROLE_DOMAINS, RATE_LIMIT_SCOPES
from ..session_client import SessionUser
from .rate_limit import RateLimiter
from .tokens import verify_token

logger = logging.getLogger(__name__)

ALLOWED = "allowed"
RATE_LIMITED = "rate_limited"
UNAUTHORIZED = "unauthorized"
FORBIDDEN = "forbidden"


def is_allowed(role: Optional[str], domain: str) -> bool:
    if not role:
        return False
    return domain in EXPORT_ROLE_DOMAINS.get(role.upper(), frozenset())


@dataclass(frozen=True)
class AccessOutcome:
    status: str
    identity: str
    role: Optional[str] = None
    token_payload: Optional[Dict[str, Any]] = None
    retry_after: Optional[int] = None

    @property
    def allowed(self) -> bool:
        return self.status == ALLOWED

    @property
    def via_token(self) -> bool:
        return self.token_payload is not None


class ExportGate:
    """Rate limit, then authenticate, then check the domain policy."""

    def __init__(self, limiter: RateLimiter, secret: str) -> None:
        self._limiter = limiter
        self._secret = secret

    def admit(
        self,
        session_user: Optional[SessionUser],
        token: Optional[str],
        fallback_identity: str,
        scope: str = "export",
    ) -> AccessOutcome:
        payload = verify_token(token, self._secret) if token else None
        token_subject = str(payload.get("uid") or "") if payload else ""
        if session_user is not None:
            identity = session_user.id
        else:
            identity = token_subject or fallback_identity or "anon"
        role = session_user.role if session_user is not None else None

        result = self._limiter.check(scope, identity)
        if not result.allowed:
            _, window = RATE_LIMIT_SCOPES[scope]
            logger.warning("Rate limit exceeded scope=%s identity=%s", scope, identity)
            return AccessOutcome(
                RATE_LIMITED, identity, role, payload, retry_after=window
            )

        if payload is None and session_user is None:
            return AccessOutcome(UNAUTHORIZED, identity)
        return AccessOutcome(ALLOWED, identity, role, payload)

    def authorize_domain(self, outcome: AccessOutcome, domain: str) -> AccessOutcome:
        if not outcome.allowed or outcome.via_token:
            return outcome
        if is_allowed(outcome.role, domain):
            return outcome
        logger.warning(
            "Export of %s denied for identity=%s role=%s",
            domain,
            outcome.identity,
            outcome.role,
        )
        return AccessOutcome(FORBIDDEN, outcome.identity, outcome.role)


def outcome_response(outcome: AccessOutcome) -> ResponseReturnValue:
    """Translate a rejected outcome into its HTTP response."""
    if outcome.status == RATE_LIMITED:
        retry_after = str(outcome.retry_after or 60)
        response = jsonify(
            {
                "error": "Too Many Requests",
                "retryAfter": outcome.retry_after,
            }
        )
        return response, 429, {"Retry-After": retry_after}
    if outcome.status == UNAUTHORIZED:
        return jsonify({"error": "Unauthorized"}), 401
    if outcome.status == FORBIDDEN:
        return jsonify({"error": "Forbidden: export type not allowed"}), 403
    raise ValueError(f"outcome {outcome.status!r} is not a rejection")


__all__ = [
    "AccessOutcome",
    "ExportGate",
    "is_allowed",
    "outcome_response",
]
