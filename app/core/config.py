import os
from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

load_dotenv()


class Settings(BaseModel):
    """Application settings loaded from environment: staging/status directories, pandoc binary, upload and conversion limits, cleanup schedule, rate limit, and logging.
    Why available: Single source of configuration so routes, the runner, and the sweeper agree on paths and limits."""
    upload_dir: str = os.getenv("UPLOAD_DIR", "uploads")
    status_dir: str = os.getenv("STATUS_DIR", os.path.join(os.getenv("UPLOAD_DIR", "uploads"), "status"))
    pandoc_path: str = os.getenv("PANDOC_PATH", "pandoc")

    max_file_size: int = int(os.getenv("MAX_FILE_SIZE", str(50 * 1024 * 1024)))  # 50 MB per file
    max_total_file_size: int = int(os.getenv("MAX_TOTAL_FILE_SIZE", str(100 * 1024 * 1024)))  # file + template

    conversion_timeout_seconds: float = float(os.getenv("CONVERSION_TIMEOUT_SECONDS", "120"))
    max_diagnostic_chars: int = int(os.getenv("MAX_DIAGNOSTIC_CHARS", "4000"))

    cleanup_max_age_seconds: float = float(os.getenv("CLEANUP_MAX_AGE_SECONDS", str(60 * 60)))
    cleanup_interval_seconds: float = float(os.getenv("CLEANUP_INTERVAL_SECONDS", str(15 * 60)))

    rate_limit_requests: int = int(os.getenv("RATE_LIMIT_REQUESTS", "30"))
    rate_limit_window_seconds: int = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))

    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    app_env: str = os.getenv("APP_ENV", "production")

    host: str = os.getenv("HOST", "0.0.0.0")
    port: int = int(os.getenv("PORT", "8000"))

    @field_validator(
        "max_file_size",
        "max_total_file_size",
        "conversion_timeout_seconds",
        "max_diagnostic_chars",
        "cleanup_max_age_seconds",
        "cleanup_interval_seconds",
        "rate_limit_requests",
        "rate_limit_window_seconds",
    )
    @classmethod
    def must_be_positive(cls, v):
        """Ensure sizes, timeouts, and limits are positive. Prevents invalid config from env."""
        if v <= 0:
            raise ValueError("must be > 0")
        return v

    @field_validator("log_level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return (v or "INFO").upper()

    @property
    def is_development(self) -> bool:
        return self.app_env.lower() == "development"


settings = Settings()
