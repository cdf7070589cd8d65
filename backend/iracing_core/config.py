from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from .session import Credential

load_dotenv()

DEFAULT_BASE_URL = "https://members-ng.iracing.com"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, ""))
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, ""))
    except ValueError:
        return default


def _supabase_key() -> str:
    return (
        os.getenv("SUPABASE_SERVICE_ROLE_KEY")
        or os.getenv("SUPABASE_SERVICE_KEY")
        or os.getenv("SUPABASE_ANON_KEY")
        or ""
    )


@dataclass
class Settings:
    """Runtime configuration, read from the environment at construction time."""

    # iRacing credentials
    iracing_email: str = field(default_factory=lambda: os.getenv("IRACING_EMAIL", ""))
    iracing_password: str = field(default_factory=lambda: os.getenv("IRACING_PASSWORD", ""), repr=False)

    # Upstream API
    upstream_base_url: str = field(default_factory=lambda: os.getenv("IRACING_BASE_URL", DEFAULT_BASE_URL))
    upstream_timeout: float = field(default_factory=lambda: _env_float("IRACING_TIMEOUT", 30.0))
    # members-ng has been served behind legacy chains; verification is opt-in.
    verify_tls: bool = field(default_factory=lambda: _env_bool("IRACING_VERIFY_TLS", False))

    # Backing store
    supabase_url: str = field(default_factory=lambda: os.getenv("SUPABASE_URL", ""))
    supabase_key: str = field(default_factory=_supabase_key, repr=False)
    supabase_schema: str = field(default_factory=lambda: os.getenv("SUPABASE_SCHEMA", "public"))
    races_table: str = field(default_factory=lambda: os.getenv("SUPABASE_RACES_TABLE", "official_races"))
    race_cars_table: str = field(
        default_factory=lambda: os.getenv("SUPABASE_RACE_CARS_TABLE", "official_race_cars")
    )
    data_dir: Path = field(
        default_factory=lambda: Path(os.getenv("DATA_DIR") or Path(__file__).parent.parent / "data")
    )

    # HTTP front door
    frontend_origin: str = field(default_factory=lambda: os.getenv("FRONTEND_ORIGIN", ""))
    port: int = field(default_factory=lambda: _env_int("PORT", 3001))

    # Session upkeep
    reauth_interval_minutes: float = field(default_factory=lambda: _env_float("REAUTH_INTERVAL_MINUTES", 15.0))
    login_max_attempts: int = field(default_factory=lambda: _env_int("LOGIN_MAX_ATTEMPTS", 5))
    login_retry_delay: float = field(default_factory=lambda: _env_float("LOGIN_RETRY_DELAY", 10.0))

    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))

    def credential(self) -> Credential:
        return Credential(email=self.iracing_email, secret=self.iracing_password)

    @property
    def has_credential(self) -> bool:
        return bool(self.iracing_email and self.iracing_password)

    @property
    def supabase_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)

    @property
    def allowed_origins(self) -> list[str]:
        origins = [origin.strip() for origin in self.frontend_origin.split(",") if origin.strip()]
        return origins or ["*"]
