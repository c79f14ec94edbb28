# backend/reportflow/__init__.py
import logging

from flask import Flask, jsonify, request

from .config import Config
from .errors import ReportFlowError
from .extensions import db, migrate


def _is_memory_sqlite(uri: str) -> bool:
    return uri in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in uri


def create_app(test_config=None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if test_config:
        app.config.update(test_config)

    # StaticPool (in-memory SQLite) takes no pool_timeout
    engine_options = dict(app.config.get("SQLALCHEMY_ENGINE_OPTIONS") or {})
    if _is_memory_sqlite(app.config["SQLALCHEMY_DATABASE_URI"]):
        engine_options.pop("pool_timeout", None)
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = engine_options

    logging.getLogger("reportflow").setLevel(app.config.get("LOG_LEVEL", "INFO"))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Live channel + dispatcher live for the lifetime of the app
    from .services.realtime import LiveChannel
    from .services.notification_dispatcher import NotificationDispatcher, RetryWorker
    from .services.notification_service import CHANNEL_EXTENSION_KEY, DISPATCHER_EXTENSION_KEY

    channel = LiveChannel()
    dispatcher = NotificationDispatcher.from_config(app.config, channel)
    app.extensions[CHANNEL_EXTENSION_KEY] = channel
    app.extensions[DISPATCHER_EXTENSION_KEY] = dispatcher

    # Register blueprints
    from .routes.system import system_bp
    from .routes.reports import reports_bp
    from .routes.notifications import notifications_bp
    from .routes.audit import audit_bp
    from .routes.users import users_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(reports_bp)
    app.register_blueprint(notifications_bp)
    app.register_blueprint(audit_bp)
    app.register_blueprint(users_bp)

    @app.errorhandler(ReportFlowError)
    def handle_domain_error(e: ReportFlowError):
        if e.status_code >= 500:
            app.logger.warning("%s on %s %s: %s", e.kind, request.method, request.path, e.detail)
        return jsonify(e.to_dict()), e.status_code

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    if app.config.get("NOTIFY_RETRY_WORKER_ENABLED") and not app.config.get("TESTING"):
        worker = RetryWorker(app, dispatcher, float(app.config["NOTIFY_RETRY_INTERVAL_SECONDS"]))
        worker.start()
        app.extensions["reportflow.retry_worker"] = worker

    return app
