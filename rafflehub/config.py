"""Process configuration read from the environment (and ``.env``)."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

from .db.utils import resolve_sqlite_url
from .errors import ConfigurationError

# Project root directory (repo root)
ROOT_DIR = Path(__file__).resolve().parents[1]

REQUIRED_VARIABLES = ("DB_URL", "JWT_SECRET", "PAYSTACK_SECRET", "FRONTEND_URL")


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"Environment variable '{name}' must be an integer") from e


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"Environment variable '{name}' must be a number") from e


@dataclass(frozen=True)
class Settings:
    """Immutable runtime settings injected into :class:`RaffleService`.

    Attributes
    ----------
    database_url : str
        SQLAlchemy URL of the raffle store.
    jwt_secret : str
        Key used to sign and verify admin session tokens.
    paystack_secret : str
        Paystack secret key; also the webhook HMAC key.
    frontend_url : str
        Public base URL used to build the QR verification link.
    """

    database_url: str
    jwt_secret: str
    paystack_secret: str
    frontend_url: str
    port: int = 5000
    paystack_base_url: str = "https://api.paystack.co"
    paystack_timeout: float = 10.0
    session_ttl_seconds: int = 3600
    currency: str = "GHS"
    log_level: str = "INFO"
    db_connect_retries: int = 5
    db_connect_delay: float = 5.0

    @classmethod
    def from_env(
        cls, environ: Optional[Mapping[str, str]] = None, *, dotenv: bool = True
    ) -> "Settings":
        """Build settings from ``environ`` (defaults to ``os.environ``).

        Raises
        ------
        ConfigurationError
            If any required variable is missing or a numeric value is invalid.
            The message lists every missing name.
        """
        if environ is None:
            if dotenv:
                load_dotenv()
            environ = os.environ

        missing = [name for name in REQUIRED_VARIABLES if not environ.get(name, "").strip()]
        if missing:
            raise ConfigurationError(
                "Missing required environment variables: " + ", ".join(missing)
            )

        return cls(
            database_url=resolve_sqlite_url(environ["DB_URL"].strip(), ROOT_DIR),
            jwt_secret=environ["JWT_SECRET"],
            paystack_secret=environ["PAYSTACK_SECRET"],
            frontend_url=environ["FRONTEND_URL"].strip().rstrip("/"),
            port=_int(environ, "PORT", 5000),
            paystack_base_url=environ.get("PAYSTACK_BASE_URL", "https://api.paystack.co").rstrip("/"),
            paystack_timeout=_float(environ, "PAYSTACK_TIMEOUT_SECONDS", 10.0),
            session_ttl_seconds=_int(environ, "SESSION_TTL_SECONDS", 3600),
            currency=environ.get("RAFFLE_CURRENCY", "GHS").strip().upper() or "GHS",
            log_level=environ.get("LOG_LEVEL", "INFO").strip().upper() or "INFO",
            db_connect_retries=_int(environ, "DB_CONNECT_RETRIES", 5),
            db_connect_delay=_float(environ, "DB_CONNECT_DELAY_SECONDS", 5.0),
        )

    def describe(self) -> dict[str, str]:
        """Return a loggable summary that never includes secret values."""
        return {
            "port": str(self.port),
            "database": self.database_url.split("@")[-1],
            "jwt_secret": "set" if self.jwt_secret else "missing",
            "paystack_secret": "set" if self.paystack_secret else "missing",
            "frontend_url": self.frontend_url,
        }
