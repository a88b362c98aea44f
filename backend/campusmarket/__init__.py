import os
import subprocess
import click
from pathlib import Path
from flask import Flask, jsonify, request, g
from sqlalchemy import text
from werkzeug.exceptions import HTTPException

from campusmarket.extensions import db, migrate, cors
from campusmarket.integrations.payments.factory import payment_health
from campusmarket.segments.segment_auto_release import auto_release_bp
from campusmarket.segments.segment_orders_api import orders_bp
from campusmarket.utils.clock import SystemClock
from campusmarket.utils.feature_flags import get_all_flags
from campusmarket.utils.observability import init_sentry, install_request_observers


MIGRATIONS_DIR = Path(__file__).resolve().parents[1] / "migrations"


def _resolve_alembic_head() -> str:
    try:
        from alembic.config import Config
        from alembic.script import ScriptDirectory

        cfg = Config(str(MIGRATIONS_DIR / "alembic.ini"))
        cfg.set_main_option("script_location", str(MIGRATIONS_DIR))
        script = ScriptDirectory.from_config(cfg)
        heads = script.get_heads()
        return heads[0] if heads else "unknown"
    except Exception:
        return "unknown"


def _resolve_git_sha() -> str:
    for env_key in ("GIT_SHA", "SOURCE_VERSION"):
        val = (os.getenv(env_key) or "").strip()
        if val:
            return val
    try:
        repo_root = Path(__file__).resolve().parents[2]
        out = subprocess.check_output(
            ["git", "rev-parse", "HEAD"],
            cwd=str(repo_root),
            stderr=subprocess.DEVNULL,
        )
        return out.decode().strip()
    except Exception:
        return "unknown"


def _env_int(name: str, default: int, *, minimum: int = 1, maximum: int = 100000) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        value = int(default)
    else:
        try:
            value = int(raw)
        except ValueError:
            value = int(default)
    if value < minimum:
        value = minimum
    if value > maximum:
        value = maximum
    return value


def create_app():
    app = Flask(__name__)
    init_sentry(app)

    env = (os.getenv("CAMPUSMARKET_ENV", "dev") or "dev").strip().lower()
    is_prod = env in ("prod", "production")

    # Production safety checks
    if is_prod:
        secret = (os.getenv("SECRET_KEY") or "").strip()
        if not secret or len(secret) < 16:
            raise RuntimeError("SECRET_KEY must be set and at least 16 chars in production")
        if not (os.getenv("DATABASE_URL") or "").strip() and not (os.getenv("SQLALCHEMY_DATABASE_URI") or "").strip():
            raise RuntimeError("DATABASE_URL (or SQLALCHEMY_DATABASE_URI) must be set in production")
        if not (os.getenv("AUTO_RELEASE_CRON_SECRET") or "").strip():
            raise RuntimeError("AUTO_RELEASE_CRON_SECRET must be set in production")

    # Basic config
    app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", "dev-secret")
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["CAMPUSMARKET_ENV"] = env

    # Payments and order settings
    app.config["PAYMENTS_PROVIDER"] = (os.getenv("PAYMENTS_PROVIDER") or ("stripe" if is_prod else "mock")).strip().lower()
    app.config["PAYMENTS_CURRENCY"] = (os.getenv("PAYMENTS_CURRENCY") or "usd").strip().lower()
    app.config["PAYMENTS_TIMEOUT_SECONDS"] = _env_int("PAYMENTS_TIMEOUT_SECONDS", 10, minimum=1, maximum=60)
    app.config["ORDER_FEE_BPS"] = _env_int("ORDER_FEE_BPS", 0, minimum=0, maximum=5000)
    app.config["AUTO_RELEASE_BATCH_LIMIT"] = _env_int("AUTO_RELEASE_BATCH_LIMIT", 200, minimum=1, maximum=5000)
    app.config["AUTO_RELEASE_CRON_SECRET"] = (os.getenv("AUTO_RELEASE_CRON_SECRET") or "").strip()

    # Ensure instance dir exists for SQLite paths
    instance_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "instance"))
    os.makedirs(instance_dir, exist_ok=True)

    # Database config
    database_url = os.getenv("SQLALCHEMY_DATABASE_URI") or os.getenv("DATABASE_URL")
    if not database_url:
        database_url = f"sqlite:///{os.path.join(instance_dir, 'campusmarket.db').replace(os.sep, '/')}"
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)
    app.config["SQLALCHEMY_DATABASE_URI"] = database_url
    engine_options = {
        "pool_pre_ping": True,
        "pool_reset_on_return": "rollback",
        "pool_recycle": _env_int("DB_POOL_RECYCLE_SECONDS", 1800, minimum=60, maximum=86400),
    }
    if not database_url.startswith("sqlite://"):
        engine_options.update(
            {
                "pool_size": _env_int("DB_POOL_SIZE", 10, minimum=1, maximum=200),
                "max_overflow": _env_int("DB_MAX_OVERFLOW", 20, minimum=0, maximum=500),
                "pool_timeout": _env_int("DB_POOL_TIMEOUT_SECONDS", 30, minimum=1, maximum=300),
            }
        )
        app.logger.info(
            "db_pooling_enabled pool_size=%s max_overflow=%s pool_timeout=%s pool_recycle=%s",
            int(engine_options.get("pool_size", 0) or 0),
            int(engine_options.get("max_overflow", 0) or 0),
            int(engine_options.get("pool_timeout", 0) or 0),
            int(engine_options.get("pool_recycle", 0) or 0),
        )
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = engine_options

    # CORS configuration
    cors_origins = (os.getenv("CORS_ORIGINS") or "").strip()
    if is_prod:
        origins = [o.strip() for o in cors_origins.split(",") if o.strip()]
    else:
        origins = ["*"] if not cors_origins else [o.strip() for o in cors_origins.split(",") if o.strip()]
    cors.init_app(app, resources={r"/api/*": {"origins": origins}})

    # Init extensions
    db.init_app(app)
    migrate.init_app(app, db, directory=str(MIGRATIONS_DIR))
    install_request_observers(app)
    app.extensions["clock"] = SystemClock()

    @app.errorhandler(HTTPException)
    def _api_http_exception(error: HTTPException):
        if not request.path.startswith("/api/"):
            return error
        payload = {
            "ok": False,
            "error": error.name,
            "message": error.description or error.name,
            "status": int(error.code or 500),
        }
        rid = (getattr(g, "request_id", "") or "").strip()
        if rid:
            payload["trace_id"] = rid
        return jsonify(payload), int(error.code or 500)

    @app.errorhandler(Exception)
    def _api_unhandled_exception(error: Exception):
        app.logger.exception("unhandled_exception path=%s", request.path)
        payload = {
            "ok": False,
            "error": "InternalServerError",
            "message": "Internal server error",
        }
        if request.path.startswith("/api/"):
            payload["status"] = 500
            rid = (getattr(g, "request_id", "") or "").strip()
            if rid:
                payload["trace_id"] = rid
        return jsonify(payload), 500

    # Register API routes
    app.register_blueprint(orders_bp)
    app.register_blueprint(auto_release_bp)

    # Health check
    @app.get("/api/health")
    def health():
        db_state = "ok"
        db_error = None
        try:
            with db.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            db_state = "fail"
            msg = str(e)
            if msg:
                db_error = (msg[:300] + "...") if len(msg) > 300 else msg
        payload = {
            "ok": True,
            "service": "campusmarket-backend",
            "env": env,
            "db": db_state,
            "payments": payment_health(app.config),
            "flags": get_all_flags(),
            "git_sha": _resolve_git_sha(),
            "alembic_head": _resolve_alembic_head(),
        }
        if db_error:
            payload["db_error"] = db_error
        return jsonify(payload)

    @app.get("/api/version")
    def version():
        return jsonify({
            "ok": True,
            "alembic_head": _resolve_alembic_head(),
            "git_sha": _resolve_git_sha(),
        })

    @app.teardown_request
    def _cleanup_db_session(exc):
        try:
            if exc is not None:
                db.session.rollback()
        finally:
            db.session.remove()

    @app.cli.command("auto-release")
    @click.option("--limit", "limit", type=int, required=False, help="Maximum orders to process")
    def auto_release_command(limit: int | None):
        """Run one auto-release batch now."""
        from campusmarket.jobs.auto_release_runner import AutoReleaseScanError, run_auto_release

        try:
            result = run_auto_release(limit=limit)
        except AutoReleaseScanError as exc:
            raise click.ClickException(str(exc))
        click.echo(
            f"auto_release scanned={result['scanned']} processed={result['processed']} "
            f"skipped={result['skipped']} errors={result['errors']}"
        )
        for detail in result["errorDetails"]:
            click.echo(f"  {detail}")

    return app
