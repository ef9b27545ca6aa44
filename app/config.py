# app/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: Literal["dev", "staging", "prod"] = "dev"
    log_level: str = "INFO"

    # Backend collaborator (job/driver CRUD, tracking, route optimization)
    # "http" - real JSON-over-HTTP backend at backend_base_url
    # "fake" - in-memory test double (dev / tests)
    backend_mode: Literal["http", "fake"] = "fake"
    backend_base_url: str | None = None  # e.g. "https://api.example.com/api"
    backend_api_token: str | None = None  # Sent as Bearer token on every backend call
    backend_timeout_seconds: float = 10.0
    route_optimization_timeout_seconds: float = 5.0

    # Retry policy for idempotent backend reads
    upstream_max_retries: int = 3
    upstream_retry_base_delay: float = 0.2  # seconds, doubles on each retry
    upstream_retry_max_delay: float = 5.0

    # Push delivery
    # "backend"  - POST to the backend notification endpoints
    # "log"      - log only (dev)
    # "disabled" - drop silently
    push_provider: Literal["backend", "log", "disabled"] = "log"
    push_timeout_seconds: float = 5.0
    notification_queue_max: int = 10000

    # Location tracking
    location_forward_enabled: bool = True
    location_stale_after_seconds: int = 600  # 10 minutes, same window the tracking views use
    average_speed_kmh: float = 50.0

    # Security
    gateway_token: str | None = None  # Shared secret of the auth gateway that sets X-Actor-* headers
    allowed_origins: list[str] = ["*"]

    # Monitoring
    enable_metrics: bool = True

    # Feature Flags
    enable_request_logging: bool = True

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def is_staging(self) -> bool:
        return self.app_env == "staging"

    @property
    def backend_enabled(self) -> bool:
        """Check if the real HTTP backend is configured"""
        return self.backend_mode == "http" and bool(self.backend_base_url)

    def validate_required_for_production(self) -> list[str]:
        """Validate that required settings exist for production"""
        if not self.is_production:
            return []

        missing = []

        required_fields = [
            ("gateway_token", self.gateway_token),
        ]

        if self.backend_mode == "http":
            required_fields.append(("backend_base_url", self.backend_base_url))

        for field_name, value in required_fields:
            if not value:
                missing.append(field_name)

        if self.backend_mode == "fake":
            missing.append("backend_mode=http")

        return missing


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    # --- Identity ---
    if not s.gateway_token:
        warnings.append(
            "gateway_token is not set: X-Actor-* headers are trusted without a gateway secret."
        )

    if s.is_production and s.allowed_origins == ["*"]:
        warnings.append("prod: allowed_origins=['*'] (CORS is wide open).")

    # --- Backend ---
    if s.backend_mode == "http" and not s.backend_base_url:
        warnings.append("backend_mode=http but backend_base_url is missing.")
    if s.backend_mode == "http" and not s.backend_api_token:
        warnings.append("backend_mode=http but backend_api_token is not set (unauthenticated backend calls).")
    if s.backend_mode == "fake" and not s.is_production:
        warnings.append("backend_mode=fake: jobs and drivers live in memory only.")

    # --- Push ---
    if s.push_provider == "backend" and s.backend_mode != "http":
        warnings.append("push_provider=backend requires backend_mode=http; notifications will only be stored.")

    if s.route_optimization_timeout_seconds > s.backend_timeout_seconds:
        warnings.append(
            "route_optimization_timeout_seconds exceeds backend_timeout_seconds; the session timeout wins."
        )

    return warnings


def validate_or_warn(s: "Settings") -> None:
    """
    In prod: enforce required settings (hard fail).
    In non-prod: warn only.
    """
    missing = s.validate_required_for_production()

    if missing:
        raise RuntimeError(f"Missing required settings for production: {', '.join(missing)}")

    for msg in warn_on_risky_config(s):
        print(f"[WARN][config] {msg}")

settings = Settings()
validate_or_warn(settings)
