import os

from flask import Flask, jsonify
from sqlalchemy import text

from payfesa.config import Config
from payfesa.extensions import db, migrate, cors
from payfesa.errors import SettlementError


def create_app(overrides=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if overrides:
        app.config.update(overrides)

    env = (app.config.get("ENV_NAME") or "dev").strip().lower()

    # Production safety checks
    if env in ("prod", "production"):
        secret = (app.config.get("SECRET_KEY") or "").strip()
        if not secret or len(secret) < 16:
            raise RuntimeError("SECRET_KEY must be set and at least 16 chars in production")
        if not (os.getenv("DATABASE_URL") or "").strip() and not (os.getenv("SQLALCHEMY_DATABASE_URI") or "").strip():
            raise RuntimeError("DATABASE_URL (or SQLALCHEMY_DATABASE_URI) must be set in production")

    database_url = app.config["SQLALCHEMY_DATABASE_URI"]
    if database_url.startswith("sqlite:///") and ":memory:" not in database_url:
        os.makedirs(app.config["INSTANCE_DIR"], exist_ok=True)
    if database_url.startswith("postgresql"):
        # Every store call is blocking I/O; bound it so a batch never stalls on one statement.
        timeout_ms = int(app.config.get("STORE_STATEMENT_TIMEOUT_MS") or 0)
        if timeout_ms > 0:
            engine_opts = dict(app.config.get("SQLALCHEMY_ENGINE_OPTIONS") or {})
            engine_opts.setdefault("connect_args", {"options": f"-c statement_timeout={timeout_ms}"})
            app.config["SQLALCHEMY_ENGINE_OPTIONS"] = engine_opts

    app.logger.setLevel((app.config.get("LOG_LEVEL") or "INFO").upper())

    # CORS configuration
    cors_origins = (app.config.get("CORS_ORIGINS") or "").strip()
    if env in ("prod", "production"):
        origins = [o.strip() for o in cors_origins.split(",") if o.strip()]
    else:
        origins = ["*"] if not cors_origins else [o.strip() for o in cors_origins.split(",") if o.strip()]
    cors.init_app(app, resources={r"/api/*": {"origins": origins}})

    # Init extensions
    db.init_app(app)
    migrate.init_app(app, db)

    from payfesa import models  # noqa: F401
    from payfesa.segments.segment_paychangu_webhook import webhooks_bp
    from payfesa.segments.segment_payouts import payouts_bp
    from payfesa.segments.segment_wallet import wallet_bp
    from payfesa.segments.segment_admin_settlement import admin_settlement_bp
    from payfesa.jobs import register_commands

    app.register_blueprint(webhooks_bp)
    app.register_blueprint(payouts_bp)
    app.register_blueprint(wallet_bp)
    app.register_blueprint(admin_settlement_bp)
    register_commands(app)

    @app.errorhandler(SettlementError)
    def _settlement_error(err: SettlementError):
        return jsonify({"ok": False, "message": err.message, "category": err.category}), err.status_code

    # Health check
    @app.get("/api/health")
    def health():
        db_state = "ok"
        try:
            db.session.execute(text("SELECT 1"))
        except Exception:
            db_state = "fail"
        return jsonify({
            "ok": True,
            "service": "payfesa-settlement",
            "env": env,
            "db": db_state,
            "gateway_configured": bool(app.config.get("PAYCHANGU_SECRET_KEY")),
        })

    return app
