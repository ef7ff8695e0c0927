"""HTTP client helpers for resolving the caller's application session."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import requests  # type: ignore[import-untyped]
from flask import Request, current_app

logger = logging.getLogger(__name__)

_FORWARDED_HEADERS = ("Cookie", "Authorization")


@dataclass(frozen=True)
class SessionUser:
    id: str
    role: str


def _forwarded_headers(request: Request) -> Dict[str, str]:
    headers: Dict[str, str] = {"Accept": "application/json"}
    for name in _FORWARDED_HEADERS:
        value = request.headers.get(name)
        if value:
            headers[name] = value
    return headers


def _parse_session_payload(payload: Any) -> Optional[SessionUser]:
    if not isinstance(payload, Mapping):
        return None
    user = payload.get("user")
    if not isinstance(user, Mapping):
        return None
    user_id = str(user.get("id") or "").strip()
    if not user_id:
        return None
    role = str(user.get("role") or "").strip().upper()
    return SessionUser(id=user_id, role=role)


def fetch_session(
    url: str, headers: Mapping[str, str], timeout: float
) -> Optional[SessionUser]:
    logger.debug("GET %s (session lookup)", url)
    response = requests.get(url, headers=dict(headers), timeout=timeout)
    if response.status_code in {401, 403, 404}:
        return None
    response.raise_for_status()
    try:
        payload = response.json()
    except ValueError:
        logger.warning("Session lookup at %s returned a non-JSON body", url)
        return None
    return _parse_session_payload(payload)


def lookup_session(request: Request) -> Optional[SessionUser]:
    """Resolve the session behind ``request`` or ``None`` when there is none."""
    settings = current_app.config["EXPORT_SETTINGS"]
    url = settings.session_lookup_url
    if not url:
        return None
    headers = _forwarded_headers(request)
    if len(headers) == 1:
        return None
    try:
        return fetch_session(url, headers, settings.session_lookup_timeout)
    except requests.RequestException as error:
        logger.warning("Session lookup at %s failed (%s)", url, error)
        return None


__all__ = ["SessionUser", "fetch_session", "lookup_session"]
