# dupkite/config.py
# Environment-driven settings for the reporting API

import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import FrozenSet, Optional

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _env_optional(name: str) -> Optional[str]:
    value = os.getenv(name, "").strip()
    return value or None


def _env_set(name: str) -> FrozenSet[str]:
    raw = os.getenv(name, "")
    return frozenset(part.strip() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class Settings:
    """Runtime configuration, one instance per process"""

    # Backends
    postgres_url: Optional[str] = None
    supabase_url: Optional[str] = None
    supabase_service_key: Optional[str] = None
    storage_bucket: str = "pothole-photos"

    # Submission limits
    max_images: int = 5
    max_image_bytes: int = 4 * 1024 * 1024  # images are compressed client-side
    comment_max_length: int = 500
    default_settlement: str = "Lovech"
    default_municipality: str = "Lovech"

    # Rate gate
    rate_limit_window_seconds: int = 5 * 60
    rate_limit_exempt: FrozenSet[str] = field(default_factory=frozenset)
    app_env: str = "production"
    read_rate_limit: str = "100/minute"

    # Verification policy
    require_verification: bool = False
    verify_base_url: str = "http://localhost:3000/verify"

    # Operational endpoints
    cron_secret: Optional[str] = None
    admin_secret: Optional[str] = None
    cleanup_max_age_hours: int = 48
    reports_read_limit: int = 1000

    # Logging
    log_level: str = "INFO"
    enable_json_logs: bool = True
    enable_file_logs: bool = True
    log_dir: str = "logs"

    @property
    def is_development(self) -> bool:
        return self.app_env.lower() == "development"

    @property
    def database_configured(self) -> bool:
        return bool(self.postgres_url)

    @property
    def storage_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_key)

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            postgres_url=_env_optional("POSTGRES_URL"),
            supabase_url=_env_optional("SUPABASE_URL"),
            supabase_service_key=_env_optional("SUPABASE_SERVICE_ROLE_KEY"),
            storage_bucket=os.getenv("STORAGE_BUCKET", "pothole-photos"),
            max_images=_env_int("MAX_IMAGES", 5),
            max_image_bytes=_env_int("MAX_IMAGE_BYTES", 4 * 1024 * 1024),
            comment_max_length=_env_int("COMMENT_MAX_LENGTH", 500),
            default_settlement=os.getenv("DEFAULT_SETTLEMENT", "Lovech"),
            default_municipality=os.getenv("DEFAULT_MUNICIPALITY", "Lovech"),
            rate_limit_window_seconds=_env_int("RATE_LIMIT_WINDOW_SECONDS", 5 * 60),
            rate_limit_exempt=_env_set("RATE_LIMIT_EXEMPT"),
            app_env=os.getenv("APP_ENV", "production"),
            read_rate_limit=os.getenv("READ_RATE_LIMIT", "100/minute"),
            require_verification=_env_bool("REQUIRE_VERIFICATION"),
            verify_base_url=os.getenv("VERIFY_BASE_URL", "http://localhost:3000/verify"),
            cron_secret=_env_optional("CRON_SECRET"),
            admin_secret=_env_optional("ADMIN_SECRET"),
            cleanup_max_age_hours=_env_int("CLEANUP_MAX_AGE_HOURS", 48),
            reports_read_limit=_env_int("REPORTS_READ_LIMIT", 1000),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            enable_json_logs=_env_bool("ENABLE_JSON_LOGS", "true"),
            enable_file_logs=_env_bool("ENABLE_FILE_LOGS", "true"),
            log_dir=os.getenv("LOG_DIR", "logs"),
        )


@lru_cache()
def get_settings() -> Settings:
    return Settings.from_env()
