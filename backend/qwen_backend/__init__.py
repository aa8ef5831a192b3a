from __future__ import annotations

import logging

from flask import Flask
from flask_cors import CORS

from .chats.routes import chat_bp
from .config import AppConfig, load_config
from .errors import ConfigurationError
from .firebase import init_firebase

log = logging.getLogger(__name__)


def create_app(config: AppConfig | None = None) -> Flask:
    """Application factory for the Qwen chat backend."""
    if config is None:
        try:
            config = load_config()
        except ConfigurationError as exc:
            raise RuntimeError(f"Configuration error: {exc}") from exc

    app = Flask(__name__)

    app.config.update(
        CHAT_CONFIG=config,
        PORT=config.port,
        FIREBASE_CREDENTIALS_PATH=str(config.firebase_credentials_path) if config.firebase_credentials_path else None,
        FIRESTORE_DATABASE_ID=config.firestore_database_id,
        QWEN_API_URL=config.completion_api_url,
        QWEN_MODEL=config.completion_model,
    )

    CORS(app,
         resources={r"/api/*": {
             "origins": list(config.cors_origins),
             "methods": ["GET", "POST", "OPTIONS"],
             "allow_headers": ["Content-Type", "Authorization"],
             "expose_headers": ["Content-Type"],
             "supports_credentials": True,
             "max_age": 3600
         }})

    if config.require_auth or config.firebase_credentials_path is not None:
        init_firebase(config.firebase_credentials_path, database_id=config.firestore_database_id)
    else:
        log.info("Firebase not initialised; chat proxy runs without token checks")

    app.register_blueprint(chat_bp)

    @app.get("/health")
    def health_check() -> dict[str, str]:
        return {"status": "ok"}

    return app
