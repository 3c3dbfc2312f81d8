import logging
import os
import traceback
from datetime import timedelta

from flask import Flask, g, jsonify, request, session
from dotenv import load_dotenv
from werkzeug.exceptions import HTTPException

from app.central.config import is_production, load_config
from app.central.constants import PUBLIC_PATH_PREFIXES
from app.central.db import init_db, missing_tables, teardown_db_session
from app.central.routes import bp as routes_bp
from app.central.auth import bp as auth_bp, load_current_user
from app.central.admin import bp as admin_bp
from app.central.modules.subscriptions.routes import bp as subscriptions_bp
from app.central.modules.payments.routes import bp as payment_bp, webhook_bp
from app.central.modules.feature_flags.routes import admin_bp as features_admin_bp, bp as features_bp
from app.central.modules.messages.routes import bp as messages_bp
from app.central.modules.supergod.routes import bp as supergod_bp

# Mutating requests allowed without a CSRF token
_CSRF_EXEMPT_BLUEPRINTS = ("auth", "webhook")


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    production = is_production(app.config.get("ENV"))

    from app.central.security import apply_cors_headers, validate_csrf

    # Production guardrails (fail fast with clear logs)
    if production:
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")
        if not app.config.get("PAYMENT_WEBHOOK_SECRET") and app.config.get("PAYMENT_API_KEY"):
            app.logger.warning("PAYMENT_API_KEY is set but PAYMENT_WEBHOOK_SECRET is not; webhooks will be rejected.")

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    @app.before_request
    def _cors_preflight():
        if request.method == "OPTIONS":
            return "", 204
        return None

    app.before_request(load_current_user)

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(PUBLIC_PATH_PREFIXES):
            return None
        session.permanent = True
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            if request.blueprint in _CSRF_EXEMPT_BLUEPRINTS:
                return None
            if not validate_csrf(request):
                return jsonify({"message": "CSRF token missing or invalid."}), 400
        return None

    @app.after_request
    def _cors(response):
        return apply_cors_headers(
            response,
            request.headers.get("Origin"),
            app.config.get("CORS_ORIGINS") or [],
            is_production(app.config.get("ENV")),
        )

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/api")
    app.register_blueprint(subscriptions_bp, url_prefix="/api/subscription")
    app.register_blueprint(webhook_bp, url_prefix="/api/webhook")
    app.register_blueprint(features_bp, url_prefix="/api/features")
    app.register_blueprint(messages_bp, url_prefix="/api/messages")
    app.register_blueprint(features_admin_bp, url_prefix="/api/admin/features")
    app.register_blueprint(admin_bp, url_prefix="/api/admin")
    app.register_blueprint(payment_bp, url_prefix="/api/payment")
    # These routes have their own supergod guard
    app.register_blueprint(supergod_bp, url_prefix="/api/supergod")

    app.teardown_appcontext(teardown_db_session)

    # Schema drift is logged, not enforced; `alembic upgrade head` fixes it.
    try:
        missing = missing_tables(app.extensions["sqlalchemy_engine"])
        if missing:
            app.logger.warning("DB schema out of date; run `alembic upgrade head`. Missing tables: %s", ", ".join(missing))
    except Exception as e:
        app.logger.error("Schema health check failed: %s", e)

    @app.errorhandler(HTTPException)
    def _err_http(e: HTTPException):  # type: ignore[no-redef]
        return jsonify({"message": e.description or e.name}), e.code

    @app.errorhandler(Exception)
    def _err_500(e: Exception):  # type: ignore[no-redef]
        from app.central.syslog import log_error

        rid = getattr(g, "request_id", None)
        app.logger.exception("Unhandled 500 (request_id=%s)", rid)
        log_error(str(e), f"{request.method} {request.path}", traceback.format_exc())
        body = {"message": "An unexpected error occurred"}
        if not is_production(app.config.get("ENV")):
            body["error"] = str(e)
        return jsonify(body), 500

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
