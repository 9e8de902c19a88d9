from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from sessiongate.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the gateway, read from the environment and `.env`."""

    database_url: str = env_field(
        "postgresql://localhost:5432/sessiongate", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    shared_fs_root: str = env_field("/srv/sessiongate", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Relaxes startup checks (memory store allowed, no redis required)",
    )

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("sessiongate", "JWT_ISSUER")
    jwt_expires_after_seconds: int = env_field(
        86400, "JWT_EXPIRES_AFTER", ge=60, description="Token lifetime"
    )
    jwt_refresh_interval_seconds: int = env_field(
        3600,
        "JWT_REFRESH_INTERVAL",
        ge=0,
        description="Advised refresh point relative to the token's notBefore",
    )
    clock_skew_seconds: int = env_field(0, "JWT_CLOCK_SKEW", ge=0)
    auth_path: str = env_field("/jwt_auth", "JWT_AUTH_PATH")

    root_tenant_id: str = env_field("root", "ROOT_TENANT_ID")
    clients_can_access_root_tenant: bool = env_field(
        False, "CLIENTS_CAN_ACCESS_ROOT_APP"
    )
    allow_auto_register_users: bool = env_field(False, "ALLOW_AUTO_REGISTER_USERS")
    allow_unverified_emails: bool = env_field(False, "ALLOW_UNVERIFIED_EMAILS")
    admin_identifier: str | None = env_field(None, "ADMIN_IDENTIFIER")
    session_page_size: int = env_field(
        10, "SESSION_PAGE_SIZE", ge=1, le=1000, description="Rows per ledger query"
    )

    verification_code_ttl_seconds: int = env_field(300, "VERIFICATION_CODE_TTL", ge=1)
    oauth_http_timeout_seconds: float = env_field(10.0, "OAUTH_HTTP_TIMEOUT", gt=0)
    oauth2_userinfo_url: str | None = env_field(None, "OAUTH2_USERINFO_URL")
    oauth2_id_field: str = env_field("sub", "OAUTH2_ID_FIELD")
    oauth2_email_field: str = env_field("email", "OAUTH2_EMAIL_FIELD")
    oauth2_name_field: str = env_field("name", "OAUTH2_NAME_FIELD")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("auth_path")
    @classmethod
    def _normalize_auth_path(cls, value: str) -> str:
        value = (value or "").strip()
        if not value.startswith("/"):
            value = "/" + value
        return value.rstrip("/") or "/"

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            return value
        fs_root = info.data.get("shared_fs_root") or os.getenv("SHARED_FS_ROOT", "/srv/sessiongate")
        return _load_or_create_secret(Path(fs_root))


_MIN_SECRET_LENGTH = 32


def _load_or_create_secret(fs_root: Path) -> str:
    """Return the signing secret stored under ``fs_root``, generating it once.

    Every gateway sharing ``fs_root`` must sign with the same key or their
    tokens would not validate on each other's nodes.
    """
    secret_path = fs_root / ".jwt_secret"
    fs_root.mkdir(parents=True, exist_ok=True)

    if secret_path.is_file() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
        except OSError as exc:
            logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))
        else:
            if len(persisted) >= _MIN_SECRET_LENGTH:
                return persisted
            logger.warning("jwt_secret_too_short", path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    fd, tmp_name = tempfile.mkstemp(dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as handle:
            os.fchmod(handle.fileno(), 0o600)
            handle.write(generated)
        os.replace(tmp_name, secret_path)
    except OSError as exc:
        Path(tmp_name).unlink(missing_ok=True)
        logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
        ) from exc
    logger.info("jwt_secret_generated", path=str(secret_path))
    return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
