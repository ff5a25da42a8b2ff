from models.base import init_engine_and_session, Base
import os
import logging
from logging.handlers import RotatingFileHandler
from time import time

import click
from flask import Flask, request, g, jsonify
from dotenv import load_dotenv
from sqlalchemy import text
from werkzeug.exceptions import HTTPException

from controllers.payments import payments_bp
from models import schema  # noqa: F401 - register tables on Base.metadata
from models.presale_store import SqlPresaleStore
from services.datetimex import parse_iso_to_utc
from services.metrics import init_app as init_metrics, REQUEST_COUNT, REQUEST_LATENCY
from services.payments.registry import get_provider
from services.payments.service import PaymentService

# --- Load .env exactly once, here ---
# If you run "python app.py", this ensures variables are loaded.
# If you use "flask run", Flask will also load .env automatically (when python-dotenv is installed).
load_dotenv()


def _env_bool(name: str, default: bool = False) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return str(v).strip().lower() in ("1", "true", "yes", "on")


def _init_logging(app: Flask) -> None:
    # default on in containers
    log_to_stdout = os.getenv("LOG_TO_STDOUT", "1") == "1"
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.INFO)

    if log_to_stdout:
        handler = logging.StreamHandler()
    else:
        log_dir = os.path.join(os.path.dirname(__file__), "log")
        try:
            os.makedirs(log_dir, exist_ok=True)
            handler = RotatingFileHandler(
                os.path.join(log_dir, "app.log"),
                maxBytes=5 * 1024 * 1024,
                backupCount=5,
                encoding="utf-8",
            )
        except OSError:
            # If file logging fails (e.g., in a container), fall back to stdout
            handler = logging.StreamHandler()

    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s [%(name)s] %(message)s"
    ))

    # avoid duplicate handlers on reload
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    app.logger.setLevel(logging.INFO)


def create_app(test_config: dict | None = None):
    app = Flask(__name__, instance_relative_config=True)

    # ---- Base config from environment (no hardcoded secrets) ----
    APP_ENV = os.getenv("APP_ENV", "development").lower()

    # SECRET_KEY:
    # - In production: must be provided
    # - In dev: fall back to a random key each run
    secret_key = os.getenv("FLASK_SECRET_KEY")
    if not secret_key and APP_ENV == "production":
        raise RuntimeError("FLASK_SECRET_KEY must be set in production (.env)")
    if not secret_key:
        secret_key = os.urandom(32)  # dev-only fallback

    app.config.from_mapping(
        SECRET_KEY=secret_key,
        APP_ENV=APP_ENV,
        PAYMENTS_DRIVER=os.getenv("PAYMENTS_DRIVER", "simulated"),
        DEFAULT_CURRENCY=os.getenv("DEFAULT_CURRENCY", "USD").upper(),
    )
    if test_config:
        app.config.update(test_config)

    _init_logging(app)

    # ---- DB ----
    engine, _Session = init_engine_and_session()
    if _env_bool("AUTO_CREATE_SCHEMA", True):
        Base.metadata.create_all(engine, checkfirst=True)

    # ---- Payments: provider picked once, injected into the service ----
    with app.app_context():
        provider = app.config.get("PAYMENT_PROVIDER") or get_provider()
    app.extensions["payments"] = PaymentService(
        SqlPresaleStore(), provider, default_currency=app.config["DEFAULT_CURRENCY"])
    app.logger.info("Payments provider: %s", provider.name)

    # ---- Blueprints ----
    app.register_blueprint(payments_bp)

    # Prometheus
    if _env_bool("METRICS_ENABLED", True):
        init_metrics(app)

    # ---- Errors ----

    @app.errorhandler(HTTPException)
    def http_error(e):
        app.logger.warning("%s %s %s", e.code, request.method, request.path)
        return jsonify({"error": e.description}), e.code

    @app.errorhandler(Exception)
    def internal_error(e):
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        return jsonify({"error": "internal server error"}), 500

    # ---- Routes ----
    @app.before_request
    def _start_timer():
        g._t0 = time()

    @app.after_request
    def _log_request(resp):
        ms = (time() - getattr(g, "_t0", time())) * 1000
        app.logger.info("%s %s %s %s %.1fms",
                        request.remote_addr, request.method, request.full_path, resp.status_code, ms)

        # --- Skip self-scrapes to keep series clean ---
        if (request.path or "").startswith("/metrics"):
            return resp

        endpoint = (request.endpoint or "").replace(".", "_") or "unknown"
        REQUEST_COUNT.labels(
            method=request.method, endpoint=endpoint, status=str(resp.status_code)).inc()
        REQUEST_LATENCY.labels(
            endpoint=endpoint, method=request.method).observe(ms / 1000.0)
        return resp

    @app.get("/healthz")
    def healthz():
        # Liveness: process is up, Flask can serve a simple request
        return jsonify(status="ok"), 200

    @app.get("/readyz")
    def readyz():
        # Readiness: app can talk to the DB
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return jsonify(status="ok"), 200
        except Exception as e:
            app.logger.exception("Readiness check failed")
            return jsonify(status="error", error=str(e)), 500

    # ---- CLI (cron: `flask --app app reconcile`) ----
    @app.cli.command("reconcile")
    @click.option("--at", "at", default=None, help="Reference time (ISO 8601); default now.")
    def reconcile_command(at):
        """Settle every round whose deadline has passed."""
        reference = parse_iso_to_utc(at) if at else None
        if at and reference is None:
            raise click.BadParameter(f"invalid timestamp: {at}", param_hint="--at")
        result = app.extensions["payments"].run_nightly_reconciliation(reference)
        click.echo(
            f"processed={result.processed_rounds} assignments={result.assignments} "
            f"refunds={result.refunds} skipped={result.skipped}")

    return app


if __name__ == "__main__":
    # TIP: use APP_ENV=production FLASK_SECRET_KEY=... when deploying
    app = create_app()
    app.run(host="0.0.0.0", port=8000, debug=(
        app.config["APP_ENV"] != "production"))
