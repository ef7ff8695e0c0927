"""Signed capability tokens granting export access without a session."""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import time
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple
from urllib.parse import urlencode

from ..config import TOKEN_DEFAULT_TTL, TOKEN_MAX_TTL, TOKEN_MIN_TTL

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


def _signature(secret: str, payload_b64: str) -> str:
    return hmac.new(
        secret.encode("utf-8"), payload_b64.encode("utf-8"), hashlib.sha256
    ).hexdigest()


def sign_token(payload: Mapping[str, Any], secret: str) -> str:
    """Serialize ``payload`` as ``base64(json).hex(hmac_sha256)``."""
    payload_b64 = base64.b64encode(
        json.dumps(dict(payload), separators=(",", ":")).encode("utf-8")
    ).decode("ascii")
    return f"{payload_b64}.{_signature(secret, payload_b64)}"


def verify_token(
    token: Optional[str], secret: str, now_ms: Optional[int] = None
) -> Optional[Dict[str, Any]]:
    """Return the token payload, or ``None`` when the token is not valid."""
    if not token:
        return None
    try:
        payload_b64, signature = token.split(".")
        expected = _signature(secret, payload_b64)
        if not hmac.compare_digest(signature, expected):
            logger.info("Rejected export token with bad signature")
            return None
        payload = json.loads(base64.b64decode(payload_b64, validate=True))
        if not isinstance(payload, dict):
            return None
        expires_at = payload.get("exp")
        current = _now_ms() if now_ms is None else now_ms
        if expires_at is not None and current > int(expires_at):
            logger.info(
                "Rejected expired export token for uid=%s", payload.get("uid")
            )
            return None
        return payload
    except (ValueError, TypeError, OverflowError, binascii.Error, UnicodeDecodeError):
        return None


def clamp_ttl(raw_seconds: Any) -> int:
    try:
        seconds = int(float(raw_seconds))
    except (TypeError, ValueError):
        seconds = TOKEN_DEFAULT_TTL
    return max(TOKEN_MIN_TTL, min(TOKEN_MAX_TTL, seconds))


def build_signed_export(
    secret: str,
    user_id: str,
    domain: str,
    export_format: str = "csv",
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    columns: Optional[Sequence[str]] = None,
    stream: bool = True,
    expires_in_seconds: Any = TOKEN_DEFAULT_TTL,
    now_ms: Optional[int] = None,
) -> Tuple[str, str]:
    """Sign a download token and return it with the matching export URL."""
    current = _now_ms() if now_ms is None else now_ms
    payload = {
        "t": domain,
        "f": export_format,
        "sd": start_date or None,
        "ed": end_date or None,
        "c": list(columns) if columns else None,
        "s": bool(stream),
        "uid": user_id,
        "exp": current + clamp_ttl(expires_in_seconds) * 1000,
    }
    token = sign_token(payload, secret)

    params: Dict[str, str] = {"type": domain, "format": export_format}
    if payload["sd"]:
        params["startDate"] = str(payload["sd"])
    if payload["ed"]:
        params["endDate"] = str(payload["ed"])
    if payload["c"]:
        params["columns"] = ",".join(payload["c"])
    if payload["s"]:
        params["stream"] = "true"
    params["token"] = token
    return token, f"/api/export?{urlencode(params)}"


__all__ = ["build_signed_export", "clamp_ttl", "sign_token", "verify_token"]
