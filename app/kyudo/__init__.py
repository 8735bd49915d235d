import logging
from datetime import timedelta

from flask import Flask, g, jsonify, request, session
from dotenv import load_dotenv

from app.kyudo.config import load_config
from app.kyudo.db import init_db, teardown_db_session
from app.kyudo.errors import register_error_handlers
from app.kyudo.routes import bp as routes_bp
from app.kyudo.auth import bp as auth_bp, load_current_user
from app.kyudo.admin import bp as admin_bp, logs_bp
from app.kyudo.modules.profiles.admin import bp as profiles_bp
from app.kyudo.modules.surveys.admin import bp as surveys_bp
from app.kyudo.modules.bows.admin import bp as bows_bp
from app.kyudo.modules.invoices.admin import bp as invoices_bp
from app.kyudo.modules.calendar.admin import bp as calendar_bp


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True
    # Profile fields and labels are Japanese; keep them readable in responses.
    app.json.ensure_ascii = False

    level = logging.getLevelName(app.config.get("LOG_LEVEL") or "INFO")
    if isinstance(level, int):
        app.logger.setLevel(level)
        logging.getLogger("app.kyudo").setLevel(level)

    from app.kyudo.security import ensure_csrf_token, validate_csrf

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        import os
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(admin_bp, url_prefix="/admin")
    app.register_blueprint(logs_bp, url_prefix="/logs")
    app.register_blueprint(profiles_bp)
    app.register_blueprint(surveys_bp)
    app.register_blueprint(bows_bp)
    app.register_blueprint(invoices_bp)
    app.register_blueprint(calendar_bp)

    app.before_request(load_current_user)

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(("/health", "/healthz")):
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            # Login is the only state-changing call made before a token can be fetched.
            if request.endpoint == "auth.login_post":
                return None
            # No session: let require_login answer 401.
            if g.auth is None:
                return None
            if not validate_csrf(request):
                return jsonify({"error": "csrf token missing or invalid"}), 400
        return None

    app.teardown_appcontext(teardown_db_session)
    register_error_handlers(app)

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
