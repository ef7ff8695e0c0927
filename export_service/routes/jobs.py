"""Blueprint for queued export jobs that resolve to signed download URLs."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy import select

from ..config import (
    DEFAULT_EXPORT_FORMAT,
    EXPORT_DOMAINS,
    EXPORT_FORMATS,
    EXPORT_JOB_LIST_LIMIT,
    EXPORT_MANAGER_ROLES,
)
from ..db import session_scope
from ..models import ExportJob
from ..services.access import outcome_response
from ..services.tokens import build_signed_export
from ..session_client import lookup_session
from .export import client_identity, parse_columns

bp = Blueprint("jobs", __name__, url_prefix="/api")
logger = logging.getLogger(__name__)


def _load_params(raw: str) -> Dict[str, Any]:
    try:
        params = json.loads(raw or "{}")
    except ValueError:
        logger.warning("Export job has unreadable params %r", raw)
        return {}
    return params if isinstance(params, dict) else {}


def _complete_job(job: ExportJob) -> str:
    params = _load_params(job.params)
    columns = params.get("columns")
    token, url = build_signed_export(
        current_app.config["EXPORT_SETTINGS"].export_secret,
        job.user_id,
        job.type,
        job.format,
        start_date=params.get("startDate"),
        end_date=params.get("endDate"),
        columns=columns if isinstance(columns, list) else None,
        stream=bool(params.get("stream")),
    )
    job.status = "DONE"
    job.token = token
    return url


def _serialize_job(job: ExportJob) -> Dict[str, Any]:
    return {
        "id": job.id,
        "type": job.type,
        "format": job.format,
        "status": job.status,
        "createdAt": job.created_at.isoformat() if job.created_at else None,
        "updatedAt": job.updated_at.isoformat() if job.updated_at else None,
    }


@bp.route("/export/jobs", methods=["POST"])
def api_create_export_job():
    try:
        session_user = lookup_session(request)
        outcome = current_app.extensions["export_gate"].admit(
            session_user, None, client_identity(), scope="write"
        )
        if not outcome.allowed:
            return outcome_response(outcome)
        assert session_user is not None

        data = request.get_json(silent=True) or {}
        domain = str(data.get("type") or "").strip().lower()
        export_format = str(data.get("format") or DEFAULT_EXPORT_FORMAT).lower()
        logger.info(
            "POST /api/export/jobs user=%s type=%s format=%s",
            session_user.id,
            domain,
            export_format,
        )
        if not domain:
            return jsonify({"error": "type required"}), 400
        if domain not in EXPORT_DOMAINS or export_format not in EXPORT_FORMATS:
            return jsonify({"error": "Unsupported type or format"}), 400

        columns = parse_columns(data.get("columns"))
        params = {
            "startDate": data.get("startDate"),
            "endDate": data.get("endDate"),
            "columns": list(columns) if columns else None,
            "stream": bool(data.get("stream", True)),
        }
        with session_scope(current_app.extensions["export_sessions"]) as session:
            job = ExportJob(
                user_id=session_user.id,
                type=domain,
                format=export_format,
                params=json.dumps(params),
                status="PENDING",
            )
            session.add(job)
            session.flush()
            url = _complete_job(job)
            job_id = job.id
        return jsonify({"jobId": job_id, "status": "DONE", "url": url})
    except Exception:
        logger.exception("POST /api/export/jobs failed")
        return jsonify({"error": "Internal error"}), 500


@bp.route("/export/jobs", methods=["GET"])
def api_list_export_jobs():
    try:
        session_user = lookup_session(request)
        if session_user is None:
            return jsonify({"error": "Unauthorized"}), 401
        with session_scope(current_app.extensions["export_sessions"]) as session:
            jobs = session.execute(
                select(ExportJob)
                .where(ExportJob.user_id == session_user.id)
                .order_by(ExportJob.created_at.desc(), ExportJob.id.desc())
                .limit(EXPORT_JOB_LIST_LIMIT)
            ).scalars()
            payload = [_serialize_job(job) for job in jobs]
        return jsonify({"jobs": payload})
    except Exception:
        logger.exception("GET /api/export/jobs failed")
        return jsonify({"error": "Internal error"}), 500


@bp.route("/export/jobs/run", methods=["POST"])
def api_run_export_job():
    try:
        session_user = lookup_session(request)
        outcome = current_app.extensions["export_gate"].admit(
            session_user, None, client_identity(), scope="write"
        )
        if not outcome.allowed:
            return outcome_response(outcome)
        assert session_user is not None
        if session_user.role not in EXPORT_MANAGER_ROLES:
            logger.warning(
                "POST /api/export/jobs/run denied for role=%s", session_user.role
            )
            return jsonify({"error": "Forbidden"}), 403

        with session_scope(current_app.extensions["export_sessions"]) as session:
            job = session.execute(
                select(ExportJob)
                .where(ExportJob.status == "PENDING")
                .order_by(ExportJob.created_at.asc(), ExportJob.id.asc())
                .limit(1)
            ).scalar_one_or_none()
            if job is None:
                return jsonify({"message": "No pending jobs"})
            url = _complete_job(job)
            job_id = job.id
        logger.info("Processed export job %s", job_id)
        return jsonify({"jobId": job_id, "status": "DONE", "url": url})
    except Exception:
        logger.exception("POST /api/export/jobs/run failed")
        return jsonify({"error": "Internal error"}), 500
