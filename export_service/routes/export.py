"""Blueprint for report export, token signing and export analytics."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from flask import Blueprint, Response, current_app, jsonify, request, stream_with_context

from ..config import (
    BUFFERED_EXPORT_LIMIT,
    DEFAULT_CURRENCY,
    DEFAULT_EXPORT_DOMAIN,
    DEFAULT_EXPORT_FORMAT,
    DEFAULT_LOCALE,
    EXPORT_DOMAINS,
    EXPORT_FORMATS,
    EXPORT_MANAGER_ROLES,
)
from ..db import session_scope
from ..services.access import ExportGate, outcome_response
from ..services.adapters import DateRange, get_adapter, normalize_rows, select_columns
from ..services.audit import clamp_days, export_analytics
from ..models import utc_now
from ..services.formatting import ExportFormatters, resolve_currency, resolve_locale
from ..services.renderers import render_csv, render_pdf
from ..services.streaming import gzip_chunks, iter_csv_export
from ..services.tokens import build_signed_export
from ..session_client import lookup_session

bp = Blueprint("export", __name__, url_prefix="/api")
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExportRequest:
    domain: str
    format: str
    date_range: DateRange
    columns: Optional[Tuple[str, ...]]
    locale: str
    currency: str
    streamed: bool
    compress: bool

    def filters(self, via_token: bool) -> Dict[str, Any]:
        payload: Dict[str, Any] = dict(self.date_range.as_filters())
        payload.update(
            {
                "columns": list(self.columns) if self.columns else None,
                "stream": self.streamed,
                "token": via_token,
                "locale": self.locale,
                "currency": self.currency,
            }
        )
        return payload


def _bad_request(message: str):
    return jsonify({"error": message}), 400


def parse_iso_date(raw_value: Any) -> Tuple[Optional[date], bool]:
    """Return ``(date, ok)``; blank input is ``(None, True)``."""
    text = str(raw_value or "").strip()
    if not text:
        return None, True
    try:
        return date.fromisoformat(text), True
    except ValueError:
        pass
    try:
        # full timestamps such as 2024-03-05T10:00:00Z
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date(), True
    except ValueError:
        return None, False


def parse_columns(raw_columns: Any) -> Optional[Tuple[str, ...]]:
    if raw_columns is None:
        return None
    if isinstance(raw_columns, str):
        parts = raw_columns.split(",")
    else:
        parts = [str(part) for part in raw_columns]
    columns = tuple(part.strip() for part in parts if part and part.strip())
    return columns or None


def parse_export_request(
    args: Mapping[str, Any], accept_encoding: str
) -> Tuple[Optional[ExportRequest], Optional[Any]]:
    domain = str(args.get("type") or DEFAULT_EXPORT_DOMAIN).strip().lower()
    if domain not in EXPORT_DOMAINS:
        logger.warning("GET /api/export unsupported type=%r", args.get("type"))
        return None, _bad_request("Unsupported type")
    export_format = str(args.get("format") or DEFAULT_EXPORT_FORMAT).strip().lower()
    if export_format not in EXPORT_FORMATS:
        logger.warning("GET /api/export unsupported format=%r", args.get("format"))
        return None, _bad_request("Unsupported format")

    start, start_ok = parse_iso_date(args.get("startDate"))
    end, end_ok = parse_iso_date(args.get("endDate"))
    if not (start_ok and end_ok):
        logger.warning(
            "GET /api/export malformed date range start=%r end=%r",
            args.get("startDate"),
            args.get("endDate"),
        )
        return None, _bad_request("startDate and endDate must be ISO dates")

    locale = str(args.get("locale") or DEFAULT_LOCALE).strip()
    if resolve_locale(locale) is None:
        logger.warning("Unknown locale %r; using %s", locale, DEFAULT_LOCALE)
        locale = DEFAULT_LOCALE
    currency = str(args.get("currency") or DEFAULT_CURRENCY).strip().upper()
    if resolve_currency(currency) is None:
        logger.warning("Unknown currency %r; using %s", currency, DEFAULT_CURRENCY)
        currency = DEFAULT_CURRENCY

    streamed = str(args.get("stream") or "").strip().lower() == "true"
    if export_format == "pdf":
        streamed = False
    compress = streamed and "gzip" in accept_encoding.lower()

    return (
        ExportRequest(
            domain=domain,
            format=export_format,
            date_range=DateRange.from_dates(start, end),
            columns=parse_columns(args.get("columns")),
            locale=locale,
            currency=currency,
            streamed=streamed,
            compress=compress,
        ),
        None,
    )


def client_identity() -> str:
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.headers.get("X-Real-IP") or request.remote_addr or "anon"


def _gate() -> ExportGate:
    return current_app.extensions["export_gate"]


def _attachment_headers(domain: str, extension: str) -> Dict[str, str]:
    return {"Content-Disposition": f"attachment; filename={domain}-export.{extension}"}


def _streamed_csv_response(export: ExportRequest, headers: List[str]) -> Response:
    adapter = get_adapter(export.domain)
    chunks = iter_csv_export(
        current_app.extensions["export_sessions"],
        adapter,
        export.date_range,
        headers,
        ExportFormatters(export.locale, export.currency),
    )
    response_headers = _attachment_headers(export.domain, "csv")
    if export.compress:
        chunks = gzip_chunks(chunks)
        response_headers["Content-Encoding"] = "gzip"
    return Response(
        stream_with_context(chunks),
        mimetype="text/csv",
        headers=response_headers,
    )


def _buffered_response(export: ExportRequest) -> Response:
    adapter = get_adapter(export.domain)
    formatters = ExportFormatters(export.locale, export.currency)
    with session_scope(current_app.extensions["export_sessions"]) as session:
        records = adapter.fetch_buffered(
            session, export.date_range, BUFFERED_EXPORT_LIMIT
        )
        rows, skipped = normalize_rows(adapter, records, formatters)
        summary = adapter.summarize(records, formatters) if export.format == "pdf" else {}
    headers = select_columns(adapter.headers, export.columns)
    logger.info(
        "/api/export %s %s buffered %d rows (skipped=%d)",
        export.domain,
        export.format,
        len(rows),
        skipped,
    )

    if export.format == "csv":
        response_headers = _attachment_headers(export.domain, "csv")
        if skipped:
            response_headers["X-Export-Skipped"] = str(skipped)
        body = render_csv(headers, rows)
        return Response(body, mimetype="text/csv", headers=response_headers)

    pdf_summary: Dict[str, str] = {
        "Rows": str(len(rows)),
        "GeneratedAt": utc_now().isoformat(timespec="seconds") + "Z",
        "RangeStart": export.date_range.as_filters()["startDate"] or "—",
        "RangeEnd": export.date_range.as_filters()["endDate"] or "—",
        "Locale": export.locale,
    }
    pdf_summary.update(summary)
    body = render_pdf(
        f"{export.domain.upper()} Export",
        headers,
        [[row[header] for header in headers] for row in rows],
        pdf_summary,
    )
    return Response(
        body,
        mimetype="application/pdf",
        headers=_attachment_headers(export.domain, "pdf"),
    )


@bp.route("/export", methods=["GET"])
def api_export():
    try:
        session_user = lookup_session(request)
        outcome = _gate().admit(
            session_user, request.args.get("token"), client_identity()
        )
        logger.info(
            "GET /api/export identity=%s type=%s format=%s stream=%s token=%s",
            outcome.identity,
            request.args.get("type"),
            request.args.get("format"),
            request.args.get("stream"),
            bool(request.args.get("token")),
        )
        if not outcome.allowed:
            return outcome_response(outcome)

        export, error = parse_export_request(
            request.args, request.headers.get("Accept-Encoding", "")
        )
        if error is not None:
            return error
        assert export is not None

        outcome = _gate().authorize_domain(outcome, export.domain)
        if not outcome.allowed:
            return outcome_response(outcome)

        current_app.extensions["audit_sink"].record(
            outcome.identity,
            export.domain,
            export.format,
            export.filters(outcome.via_token),
        )

        if export.format == "csv" and export.streamed:
            headers = select_columns(get_adapter(export.domain).headers, export.columns)
            return _streamed_csv_response(export, headers)
        return _buffered_response(export)
    except Exception:
        logger.exception("GET /api/export failed")
        return jsonify({"error": "Internal error"}), 500


@bp.route("/export/sign", methods=["POST"])
def api_export_sign():
    try:
        session_user = lookup_session(request)
        outcome = _gate().admit(session_user, None, client_identity(), scope="write")
        if not outcome.allowed:
            return outcome_response(outcome)
        assert session_user is not None

        data = request.get_json(silent=True) or {}
        domain = str(data.get("type") or "").strip().lower()
        logger.info("POST /api/export/sign user=%s type=%s", session_user.id, domain)
        if not domain:
            return _bad_request("type required")
        if domain not in EXPORT_DOMAINS:
            return _bad_request("Unsupported type")
        export_format = str(data.get("format") or DEFAULT_EXPORT_FORMAT).lower()
        if export_format not in EXPORT_FORMATS:
            return _bad_request("Unsupported format")

        token, url = build_signed_export(
            current_app.config["EXPORT_SETTINGS"].export_secret,
            session_user.id,
            domain,
            export_format,
            start_date=data.get("startDate"),
            end_date=data.get("endDate"),
            columns=parse_columns(data.get("columns")),
            stream=bool(data.get("stream", True)),
            expires_in_seconds=data.get("expiresInSeconds", 900),
        )
        return jsonify({"token": token, "url": url})
    except Exception:
        logger.exception("POST /api/export/sign failed")
        return jsonify({"error": "Internal error"}), 500


@bp.route("/export/analytics", methods=["GET"])
def api_export_analytics():
    try:
        session_user = lookup_session(request)
        if session_user is None:
            return jsonify({"error": "Unauthorized"}), 401
        if session_user.role not in EXPORT_MANAGER_ROLES:
            logger.warning(
                "GET /api/export/analytics denied for role=%s", session_user.role
            )
            return jsonify({"error": "Forbidden"}), 403
        days = clamp_days(request.args.get("days"))
        with session_scope(current_app.extensions["export_sessions"]) as session:
            payload = export_analytics(session, days)
        logger.info(
            "GET /api/export/analytics days=%d total=%d", days, payload["total"]
        )
        return jsonify(payload)
    except Exception:
        logger.exception("GET /api/export/analytics failed")
        return jsonify({"error": "Internal error"}), 500
