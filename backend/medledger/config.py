"""Environment-driven settings for the MedLedger API."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

from .errors import ConfigurationError


DEFAULT_DATA_DIR = Path(__file__).resolve().parent / "data"
DEFAULT_TOKEN_SECRET = "medledger-dev-signing-secret"
DEFAULT_PORTAL_EMAIL = "admin@med.com"
DEFAULT_PORTAL_PASSWORD = "admin@123"
DEFAULT_CORS_ORIGINS = ("http://localhost:5173",)
DEFAULT_REQUEST_SIGNING_SECRET = "medledger-dev-request-secret"

ENVIRONMENTS = {"development", "test", "production"}
STORE_BACKENDS = {"memory", "file"}


def parse_admin_emails(raw: str) -> frozenset[str]:
    return frozenset(
        email.strip().lower() for email in raw.split(",") if email.strip()
    )


def parse_cors_origins(raw: str) -> tuple[str, ...]:
    return tuple(origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip())


def _parse_bool(raw: Optional[str]) -> bool:
    return (raw or "").strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    environment: str = "development"
    data_dir: Path = DEFAULT_DATA_DIR
    store_backend: str = "file"
    admin_emails: frozenset[str] = field(default_factory=frozenset)
    token_secret: str = DEFAULT_TOKEN_SECRET
    portal_email: str = DEFAULT_PORTAL_EMAIL
    portal_password: str = DEFAULT_PORTAL_PASSWORD
    log_level: str = "DEBUG"
    json_logs: bool = False
    cors_origins: tuple[str, ...] = DEFAULT_CORS_ORIGINS
    request_signing_secret: str = DEFAULT_REQUEST_SIGNING_SECRET

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def audit_log_path(self) -> Path:
        return self.data_dir / "audit.log"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from ``environ`` (defaults to ``os.environ``).

        Raises ``ConfigurationError`` when a value is outside its allowed set.
        """

        env = os.environ if environ is None else environ
        environment = env.get("MEDLEDGER_ENV", "development").strip().lower()
        if environment not in ENVIRONMENTS:
            raise ConfigurationError(f"Unsupported MEDLEDGER_ENV '{environment}'")
        store_backend = env.get("MEDLEDGER_STORE", "file").strip().lower()
        if store_backend not in STORE_BACKENDS:
            raise ConfigurationError(f"Unsupported MEDLEDGER_STORE '{store_backend}'")
        token_secret = env.get("MEDLEDGER_TOKEN_SECRET", DEFAULT_TOKEN_SECRET)
        if len(token_secret) < 12:
            raise ConfigurationError("MEDLEDGER_TOKEN_SECRET must be at least 12 characters")
        signing_secret = env.get(
            "MEDLEDGER_REQUEST_SIGNING_SECRET", DEFAULT_REQUEST_SIGNING_SECRET
        )
        if len(signing_secret) < 12:
            raise ConfigurationError(
                "MEDLEDGER_REQUEST_SIGNING_SECRET must be at least 12 characters"
            )
        cors_origins = parse_cors_origins(env.get("MEDLEDGER_CORS_ORIGINS", ""))
        default_level = "INFO" if environment == "production" else "DEBUG"
        data_dir = env.get("MEDLEDGER_DATA_DIR")
        return cls(
            environment=environment,
            data_dir=Path(data_dir) if data_dir else DEFAULT_DATA_DIR,
            store_backend=store_backend,
            admin_emails=parse_admin_emails(env.get("MEDLEDGER_ADMIN_EMAILS", "")),
            token_secret=token_secret,
            portal_email=env.get("MEDLEDGER_PORTAL_EMAIL", DEFAULT_PORTAL_EMAIL).strip().lower(),
            portal_password=env.get("MEDLEDGER_PORTAL_PASSWORD", DEFAULT_PORTAL_PASSWORD),
            log_level=env.get("MEDLEDGER_LOG_LEVEL", default_level).upper(),
            json_logs=_parse_bool(env.get("MEDLEDGER_JSON_LOGS")),
            cors_origins=cors_origins or DEFAULT_CORS_ORIGINS,
            request_signing_secret=signing_secret,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    load_dotenv()
    return Settings.from_env()
