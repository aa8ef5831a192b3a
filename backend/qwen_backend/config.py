from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .errors import ConfigurationError

DEFAULT_MODEL = "qwen-coder-plus"
DEFAULT_CORS_ORIGINS = (
    r"^https?://localhost(:[0-9]+)?$",
    r"^https?://127\.0\.0\.1(:[0-9]+)?$",
)


@dataclass(slots=True)
class AppConfig:
    port: int
    completion_api_url: Optional[str]
    completion_api_key: Optional[str]
    completion_model: str = DEFAULT_MODEL
    max_tokens: int = 4000
    temperature: float = 0.7
    request_timeout: float = 60.0
    firebase_credentials_path: Optional[Path] = None
    firestore_database_id: Optional[str] = None
    require_auth: bool = False
    chat_proxy_url: Optional[str] = None
    cors_origins: tuple[str, ...] = DEFAULT_CORS_ORIGINS
    error_clear_seconds: float = 5.0
    send_error_clear_seconds: float = 8.0


@dataclass(slots=True)
class CompletionSettings:
    """Everything needed to call the upstream chat completion endpoint."""

    api_url: str
    api_key: str
    model: str = DEFAULT_MODEL
    max_tokens: int = 4000
    temperature: float = 0.7
    timeout: float = 60.0

    @property
    def endpoint(self) -> str:
        return f"{self.api_url.rstrip('/')}/chat/completions"


def completion_settings(config: AppConfig) -> CompletionSettings:
    """Return upstream settings, failing when the URL or credential is absent."""
    if not config.completion_api_url:
        raise ConfigurationError("QWEN_API_URL is not configured")
    if not config.completion_api_key:
        raise ConfigurationError("QWEN_API_KEY is not configured")
    return CompletionSettings(
        api_url=config.completion_api_url,
        api_key=config.completion_api_key,
        model=config.completion_model,
        max_tokens=config.max_tokens,
        temperature=config.temperature,
        timeout=config.request_timeout,
    )


def _resolve_path(path_str: str, base_dir: Path) -> Path:
    # Accept Windows-style separators in .env files.
    candidate = Path(path_str.strip().replace("\\", "/")).expanduser()
    if candidate.is_absolute():
        return candidate

    for root in (base_dir, base_dir.parent):
        resolved = (root / candidate).resolve()
        if resolved.exists():
            return resolved

    return (base_dir / candidate).resolve()


def _optional(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return None
    return value.strip() or None


def _int_env(name: str, default: int, *, minimum: int = 1) -> int:
    raw = os.getenv(name, str(default))
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got '{raw}'") from exc
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}")
    return value


def _float_env(name: str, default: float, *, minimum: float = 0.0) -> float:
    raw = os.getenv(name, str(default))
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got '{raw}'") from exc
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}")
    return value


def _bool_env(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    lowered = raw.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    raise ConfigurationError(f"{name} must be a boolean, got '{raw}'")


def load_config() -> AppConfig:
    """Load configuration from environment variables/.env file."""
    backend_dir = Path(__file__).resolve().parent.parent
    load_dotenv(backend_dir / ".env")

    port = _int_env("PORT", 5000)

    credentials_path: Optional[Path] = None
    credentials_raw = _optional("FIREBASE_CREDENTIALS_PATH")
    if credentials_raw:
        credentials_path = _resolve_path(credentials_raw, backend_dir)
        if not credentials_path.exists():
            raise ConfigurationError(
                f"Firebase credentials file not found at resolved path: {credentials_path}"
            )

    cors_raw = os.getenv("CORS_ORIGINS", "")
    cors_origins = tuple(token for token in re.split(r"[\s,]+", cors_raw) if token)

    temperature = _float_env("QWEN_TEMPERATURE", 0.7)
    if temperature > 2.0:
        raise ConfigurationError("QWEN_TEMPERATURE must be between 0 and 2")

    return AppConfig(
        port=port,
        completion_api_url=_optional("QWEN_API_URL"),
        completion_api_key=_optional("QWEN_API_KEY"),
        completion_model=_optional("QWEN_MODEL") or DEFAULT_MODEL,
        max_tokens=_int_env("QWEN_MAX_TOKENS", 4000),
        temperature=temperature,
        request_timeout=_float_env("QWEN_TIMEOUT", 60.0, minimum=1.0),
        firebase_credentials_path=credentials_path,
        firestore_database_id=_optional("FIRESTORE_DATABASE_ID"),
        require_auth=_bool_env("CHAT_REQUIRE_AUTH"),
        chat_proxy_url=_optional("CHAT_PROXY_URL"),
        cors_origins=cors_origins or DEFAULT_CORS_ORIGINS,
        error_clear_seconds=_float_env("ERROR_CLEAR_SECONDS", 5.0),
        send_error_clear_seconds=_float_env("SEND_ERROR_CLEAR_SECONDS", 8.0),
    )
