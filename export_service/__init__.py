"""Export service application factory."""

from __future__ import annotations

from typing import Optional

from flask import Flask

from .config import Settings, load_environment, load_settings
from .db import create_schema, create_session_factory, init_engine
from .logging import configure_logging
from .routes import export, jobs
from .services.access import ExportGate
from .services.audit import AuditSink
from .services.rate_limit import RateLimiter, create_redis_client


def create_app(settings: Optional[Settings] = None) -> Flask:
    """Create and configure the Flask application."""
    if settings is None:
        load_environment()
        settings = load_settings()
    configure_logging()

    app = Flask(__name__)
    app.config["EXPORT_SETTINGS"] = settings

    engine = init_engine(settings.database_url)
    create_schema(engine)
    session_factory = create_session_factory(engine)
    limiter = RateLimiter(create_redis_client(settings.redis_url, settings.redis_enabled))

    app.extensions["export_engine"] = engine
    app.extensions["export_sessions"] = session_factory
    app.extensions["rate_limiter"] = limiter
    app.extensions["export_gate"] = ExportGate(limiter, settings.export_secret)
    app.extensions["audit_sink"] = AuditSink(session_factory)

    app.register_blueprint(export.bp)
    app.register_blueprint(jobs.bp)

    return app
