"""Best-effort export audit trail and the analytics built on it."""

from __future__ import annotations

import json
import logging
import threading
from collections import Counter
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime, timedelta
from typing import Any, Dict, Mapping, Optional, Set

from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from ..config import ANALYTICS_DEFAULT_DAYS, ANALYTICS_MAX_DAYS, AUDIT_WORKERS
from ..db import session_scope
from ..models import ExportLog, utc_now

logger = logging.getLogger(__name__)


class AuditSink:
    """Write :class:`ExportLog` rows without ever failing the caller."""

    def __init__(self, session_factory: sessionmaker, workers: int = AUDIT_WORKERS):
        self._session_factory = session_factory
        self._executor = ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="export-audit"
        )
        self._pending: Set[Future] = set()
        self._lock = threading.Lock()

    def _write(
        self, identity: str, domain: str, export_format: str, filters: Mapping[str, Any]
    ) -> None:
        try:
            with session_scope(self._session_factory) as session:
                session.add(
                    ExportLog(
                        user_id=identity,
                        type=domain,
                        format=export_format,
                        filters=json.dumps(dict(filters), default=str),
                    )
                )
        except Exception:
            logger.warning(
                "Failed to record export audit entry for %s (%s)",
                identity,
                domain,
                exc_info=True,
            )

    def record(
        self, identity: str, domain: str, export_format: str, filters: Mapping[str, Any]
    ) -> Optional[Future]:
        try:
            future = self._executor.submit(
                self._write, identity, domain, export_format, dict(filters)
            )
        except RuntimeError:
            logger.warning("Audit executor unavailable; dropping entry for %s", identity)
            return None
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def wait(self, timeout: Optional[float] = None) -> None:
        with self._lock:
            pending = set(self._pending)
        if pending:
            wait(pending, timeout=timeout)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)


def clamp_days(raw_days: Any) -> int:
    try:
        days = int(float(raw_days))
    except (TypeError, ValueError):
        days = ANALYTICS_DEFAULT_DAYS
    return min(ANALYTICS_MAX_DAYS, max(1, days))


def export_analytics(
    session: Session, days: int, now: Optional[datetime] = None
) -> Dict[str, Any]:
    current = now or utc_now()
    since = current - timedelta(days=days)

    type_rows = session.execute(
        select(ExportLog.type, func.count(ExportLog.id))
        .where(ExportLog.created_at >= since)
        .group_by(ExportLog.type)
        .order_by(ExportLog.type)
    ).all()
    type_counts = [{"type": row[0], "count": row[1]} for row in type_rows]

    created = session.execute(
        select(ExportLog.created_at)
        .where(ExportLog.created_at >= since)
        .order_by(ExportLog.created_at.asc())
    ).scalars()
    daily: Counter[str] = Counter(stamp.date().isoformat() for stamp in created)
    top_days = [
        {"day": day, "count": count}
        for day, count in sorted(daily.items(), key=lambda item: (-item[1], item[0]))[:5]
    ]

    return {
        "since": since.date().isoformat(),
        "days": days,
        "typeCounts": type_counts,
        "daily": dict(sorted(daily.items())),
        "topDays": top_days,
        "total": sum(daily.values()),
    }


__all__ = ["AuditSink", "clamp_days", "export_analytics"]
