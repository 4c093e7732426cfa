import logging
import os
from datetime import timedelta
from decimal import Decimal

from dotenv import load_dotenv
from flask import Flask, flash, g, redirect, render_template, request, url_for

from app.lims.config import load_config
from app.lims.db import init_db, teardown_db_session
from app.lims.security import install_csrf
from app.lims.routes import bp as routes_bp
from app.lims.auth import bp as auth_bp, load_current_user
from app.lims.admin import bp as admin_bp
from app.lims.modules.customers.admin import bp as customers_bp
from app.lims.modules.sample_types.admin import bp as sample_types_bp
from app.lims.modules.samples.admin import bp as samples_bp
from app.lims.modules.reports.admin import bp as reports_bp
from app.lims.modules.accounts.admin import bp as accounts_bp
from app.lims.modules.users.admin import bp as users_bp
from app.lims.modules.zoho_sync.admin import bp as zoho_sync_bp
from app.lims.modules.portal.routes import bp as portal_bp

logger = logging.getLogger(__name__)


def _configure_logging(app: Flask) -> None:
    level = (os.environ.get("LOG_LEVEL") or ("DEBUG" if app.debug else "INFO")).upper()
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    app.logger.setLevel(level)


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__, template_folder="templates", static_folder="static")
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True
    _configure_logging(app)

    install_csrf(app)

    @app.context_processor
    def _inject_permissions() -> dict:
        from app.lims.rbac import user_has_permission

        def has_perm(key: str) -> bool:
            return user_has_permission(getattr(g, "current_user", None), key)

        def menu_visible(item: str) -> bool:
            u = getattr(g, "current_user", None)
            return bool(u) and item not in u.hidden_menu_items

        return {"has_perm": has_perm, "menu_visible": menu_visible}

    @app.template_filter("dateformat")
    def _dateformat_filter(value, format: str = "%Y-%m-%d") -> str:
        if value is None:
            return "—"
        if hasattr(value, "strftime"):
            return value.strftime(format)
        return str(value)

    @app.template_filter("money")
    def _money_filter(value) -> str:
        if value is None:
            return "—"
        return f"{Decimal(str(value)):,.2f}"

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not str(app.config.get("DATABASE_URL") or "").strip():
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        if hasattr(os, "register_at_fork"):

            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = [
            key
            for key in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY")
            if not app.config.get(key)
        ]
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(admin_bp, url_prefix="/admin")
    app.register_blueprint(customers_bp, url_prefix="/admin")
    app.register_blueprint(sample_types_bp, url_prefix="/admin")
    app.register_blueprint(samples_bp, url_prefix="/admin")
    app.register_blueprint(reports_bp, url_prefix="/admin")
    app.register_blueprint(accounts_bp, url_prefix="/admin")
    app.register_blueprint(users_bp, url_prefix="/admin")
    app.register_blueprint(zoho_sync_bp, url_prefix="/admin")
    app.register_blueprint(portal_bp, url_prefix="/portal")

    app.before_request(load_current_user)
    app.teardown_appcontext(teardown_db_session)

    @app.errorhandler(400)
    def _err_400(e):  # type: ignore[no-redef]
        return render_template("errors/400.html", message=getattr(e, "description", None)), 400

    @app.errorhandler(403)
    def _err_403(e):  # type: ignore[no-redef]
        missing = getattr(g, "missing_permission", None)
        return render_template("errors/403.html", missing_permission=missing), 403

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return render_template("errors/404.html"), 404

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        limit_mb = (app.config.get("MAX_CONTENT_LENGTH") or 0) // (1024 * 1024)
        flash(f"File too large. Maximum size is {limit_mb}MB.", "danger")
        referrer = request.referrer
        if referrer and referrer.startswith(request.host_url):
            return redirect(referrer), 302
        return redirect(url_for("admin.index")), 302

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return render_template("errors/500.html"), 500

    logger.info("create_app() complete; app ready to serve")
    return app
