import os
from flask import Flask, jsonify, request

# Load .env only for local/dev. In prod, env vars come from the platform.
if os.getenv("APP_ENV", "development") != "production":
    from dotenv import load_dotenv
    load_dotenv(".env", override=False)


from .config import get_config
from .errors import SubflowError
from .extensions import db, limiter
from .observability import init_logging, init_sentry


def create_app(overrides=None):
    app = Flask(__name__)

    # ---- Rate limiting storage ----
    app_env = (os.getenv("APP_ENV", "development") or "development").lower()
    use_redis = app_env in ("staging", "production")
    storage_uri = os.environ.get("REDIS_URL") if use_redis else "memory://"
    if use_redis and not storage_uri:
        # Hard fail in stage/prod so we never silently run without RL storage
        raise RuntimeError("REDIS_URL is required in staging/production for rate limiting")
    app.config["RATELIMIT_STORAGE_URI"] = storage_uri
    app.config.setdefault("RATELIMIT_DEFAULTS", ["1000 per hour"])
    app.config.setdefault("RATELIMIT_HEADERS_ENABLED", True)

    # Config: clean, explicit, class-based
    app.config.from_object(get_config())
    if overrides:
        app.config.update(overrides)

    # --- Required env validation for prod-like envs (staging/production) ---
    def _require(name: str):
        val = os.getenv(name) or app.config.get(name)
        if not val:
            raise RuntimeError(f"Missing required environment variable: {name}")
        return val

    if app_env in ("staging", "production"):
        # Enforce hard requirements at startup (not at import time)
        _require("SECRET_KEY")
        _require("DATABASE_URL")
        _require("BROKER_URL")
        if app.config.get("SERVICE_ROLE") in ("all", "payments"):
            _require("PAYMENTS_DATABASE_URL")

    init_logging(app)
    init_sentry(app)

    # Init extensions
    db.init_app(app)
    limiter.init_app(app)

    # Blueprints (explicit, consistent prefixes)
    from .blueprints.subscriptions import bp as subscriptions_bp
    from .blueprints.plans import bp as plans_bp
    from .blueprints.webhooks import bp as webhooks_bp

    app.register_blueprint(subscriptions_bp, url_prefix="/subscriptions")
    app.register_blueprint(plans_bp, url_prefix="/plans")
    app.register_blueprint(webhooks_bp, url_prefix="/webhooks")

    @limiter.exempt
    @app.get("/healthz")
    def healthz():
        return {"status": "ok", "role": app.config.get("SERVICE_ROLE")}, 200

    # Domain errors carry their own status and code
    @app.errorhandler(SubflowError)
    def handle_subflow_error(e):
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(400)
    def bad_request(e):
        return {"error": "bad_request", "message": getattr(e, "description", ""), "code": 400}, 400

    @app.errorhandler(401)
    def unauthorized(e):
        return {"error": "unauthorized", "code": 401}, 401

    @app.errorhandler(404)
    def not_found(e):
        return {"error": "not_found", "code": 404}, 404

    @app.errorhandler(500)
    def server_error(e):
        return {"error": "internal_error", "code": 500}, 500

    # 429 Too Many Requests with Retry-After
    @app.errorhandler(429)
    def too_many_requests(e):
        retry_after = getattr(e, "retry_after", None)
        headers = {}
        payload = {"error": "rate_limited", "code": 429, "path": request.path}
        if retry_after is not None:
            headers["Retry-After"] = str(int(retry_after))
            payload["retry_after"] = int(retry_after)
        return (payload, 429, headers)

    # CLI commands (ops-grade utilities)
    from .cli import register_cli
    register_cli(app)

    # Broker gateway, routing table and saga services for this SERVICE_ROLE
    from .wiring import init_services
    init_services(app)

    return app
