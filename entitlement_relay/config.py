"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


def _split_csv(value: str) -> list[str]:
    """Split a comma-separated setting into trimmed, non-empty, de-duplicated items."""
    items: list[str] = []
    for raw in value.split(","):
        item = raw.strip()
        if item and item not in items:
            items.append(item)
    return items


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Storage - "postgres" for deployments, "memory" for local runs and tests
    storage_backend: str = "postgres"

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    run_migrations_on_startup: bool = True

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Entitlement Relay API"
    api_version: str = "0.1.0"
    api_description: str = "Purchase notification ingestion and entitlement fan-out"

    # Admin endpoints (CRM dead letters)
    admin_api_key: str = ""

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "entitlement-relay"
    deployment_environment: str = "production"
    trace_sample_rate: float = 1.0  # 1.0 = 100% sampling

    # Apple signed payload verification
    APPLE_ROOT_CERTIFICATES: str = ""  # Comma-separated paths to pinned root certs (DER or PEM)
    JWS_ALLOWED_ALGORITHMS: str = "ES256"
    SUPPORTED_PAYLOAD_VERSIONS: str = "2.0"
    verify_apple_certificate_oids: bool = True
    expected_bundle_id: str = ""  # Empty disables the bundle check

    # Idempotency
    idempotency_stale_after_seconds: int = 300  # In-flight claims older than this are reclaimable

    # Ledger
    ledger_max_retries: int = 5

    # Content catalog (JSON file: {"product_id": ["content_id", ...]})
    content_catalog_path: str = ""

    # Push gateway
    push_gateway_url: str = ""  # Empty disables the push channel
    push_gateway_api_key: str = ""
    push_timeout_seconds: float = 5.0

    # Live socket stream
    socket_send_timeout_seconds: float = 5.0
    heartbeat_interval_seconds: float = 30.0
    heartbeat_timeout_seconds: float = 90.0

    # CRM sync
    crm_base_url: str = ""  # Empty disables CRM sync
    crm_api_key: str = ""
    crm_timeout_seconds: float = 10.0
    crm_max_attempts: int = 8
    crm_backoff_base_seconds: float = 2.0
    crm_backoff_max_seconds: float = 3600.0
    crm_poll_interval_seconds: float = 5.0
    crm_batch_size: int = 50

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @property
    def apple_root_certificate_paths(self) -> list[str]:
        """Paths of the pinned Apple root certificates."""
        return _split_csv(self.APPLE_ROOT_CERTIFICATES)

    @property
    def jws_allowed_algorithms(self) -> frozenset[str]:
        """Signature algorithms accepted in a JWS header."""
        return frozenset(_split_csv(self.JWS_ALLOWED_ALGORITHMS))

    @property
    def supported_payload_versions(self) -> frozenset[str]:
        """Notification payload versions the parser understands."""
        return frozenset(_split_csv(self.SUPPORTED_PAYLOAD_VERSIONS))

    @property
    def uses_memory_storage(self) -> bool:
        """True when repositories are kept in process memory."""
        return self.storage_backend == "memory"

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing.
        This prevents silent failures that only manifest at runtime.
        """
        errors: list[str] = []

        if self.storage_backend not in ("postgres", "memory"):
            errors.append(
                f"STORAGE_BACKEND must be 'postgres' or 'memory', got: {self.storage_backend}"
            )
        elif self.storage_backend == "postgres":
            # DATABASE_URL is absolutely required for the durable backend
            if not self.database_url:
                errors.append("DATABASE_URL is required but empty or missing")
            elif not self.database_url.startswith(("postgresql", "postgres")):
                errors.append(
                    f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
                )

        if not self.jws_allowed_algorithms:
            errors.append("JWS_ALLOWED_ALGORITHMS must name at least one algorithm")

        if self.heartbeat_timeout_seconds <= self.heartbeat_interval_seconds:
            errors.append("HEARTBEAT_TIMEOUT_SECONDS must be greater than HEARTBEAT_INTERVAL_SECONDS")

        # If we have errors, fail immediately with clear messaging
        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
