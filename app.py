import logging
import os
from flask import Flask
from flask_cors import CORS
from werkzeug.exceptions import MethodNotAllowed, RequestEntityTooLarge
from routes.mining import mining_bp

SERVICE_NAME = "role-analysis"
SERVICE_VERSION = "0.1.0"
DEFAULT_MAX_BODY_BYTES = 52428800  # 50MB of inline records

def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "y", "on")

def _env_log_level() -> int:
    if _env_bool("FLASK_DEBUG", False):
        return logging.DEBUG
    return getattr(logging, os.getenv("LOG_LEVEL", "INFO").strip().upper(), logging.INFO)

def _allowed_origins() -> list:
    # CORS_ORIGINS=http://localhost:5173,https://ui.example.com
    configured = [o.strip() for o in os.getenv("CORS_ORIGINS", "").split(",") if o.strip()]
    return configured or ["http://localhost:3000", "http://localhost:5173"]

logging.basicConfig(
    level=_env_log_level(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

def create_app(test_config: dict = None):
    app = Flask(__name__)

    try:
        app.config["MAX_CONTENT_LENGTH"] = int(os.getenv("MAX_CONTENT_LENGTH_BYTES", DEFAULT_MAX_BODY_BYTES))
    except ValueError:
        logger.warning("MAX_CONTENT_LENGTH_BYTES is not an integer, using %d", DEFAULT_MAX_BODY_BYTES)
        app.config["MAX_CONTENT_LENGTH"] = DEFAULT_MAX_BODY_BYTES
    app.config.update(test_config or {})

    CORS(app, origins=_allowed_origins())
    app.register_blueprint(mining_bp)
    logger.debug("Registered routes: %s", sorted(rule.rule for rule in app.url_map.iter_rules()))

    @app.errorhandler(RequestEntityTooLarge)
    def handle_request_entity_too_large(e):
        return {
            "error": "Population payload too large",
            "max_bytes": app.config.get("MAX_CONTENT_LENGTH"),
        }, 413

    @app.errorhandler(MethodNotAllowed)
    def handle_method_not_allowed(e):
        return {"error": "Method not allowed", "allowed": sorted(e.valid_methods or [])}, 405

    @app.route("/api/health", methods=["GET"])
    def health():
        return {"status": "ok", "service": SERVICE_NAME, "version": SERVICE_VERSION}

    return app


if __name__ == "__main__":
    create_app().run(
        debug=_env_bool("FLASK_DEBUG", True),
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "5000")),
    )
