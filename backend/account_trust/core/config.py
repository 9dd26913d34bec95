"""Application configuration loaded from environment variables.

Settings for the relational store, the key-value store, authentication,
single-use token lifetimes, the recovery code vault, the session revocation
ledger and the rate limiter. Uses pydantic-settings for validation and .env
file support.
"""

from pydantic import SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Known insecure default password that must not be used in production
# Security: Runtime check in check_production_security() prevents use in production
_INSECURE_DEFAULT_PASSWORD = "account_trust_dev_password"  # nosec B105

# Minimum length for AUTH_SECRET in production (256 bits = 32 bytes)
_MIN_AUTH_SECRET_LENGTH = 32

# bcrypt accepts cost factors 4..31; below 10 is test-only territory
_MIN_BCRYPT_ROUNDS = 4
_MAX_BCRYPT_ROUNDS = 16
_MIN_PRODUCTION_BCRYPT_ROUNDS = 10


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Database
    database_host: str = "localhost"
    database_port: int = 5432
    database_name: str = "account_trust"
    database_user: str = "account_trust_user"
    database_password: str = _INSECURE_DEFAULT_PASSWORD

    # Key-value store (Redis-compatible)
    redis_url: str = "redis://localhost:6379/0"
    redis_socket_timeout: float = 5.0

    # Application
    environment: str = "development"
    log_level: str = "INFO"
    allowed_origins: list[str] = ["http://localhost:3000"]

    # Authentication
    auth_secret: SecretStr = SecretStr("")
    auth_issuer: str = "account-trust"
    auth_audience: str = "account-trust"
    auth_cookie_name: str = "account-trust.session-token"

    # Single-use token lifetimes (minutes)
    verification_token_ttl_minutes: int = 60
    email_change_token_ttl_minutes: int = 60
    password_reset_token_ttl_minutes: int = 15
    account_deletion_token_ttl_minutes: int = 60

    # Recovery code vault
    # Cost 10 keeps a single verify around 100ms on commodity hardware
    recovery_code_bcrypt_rounds: int = 10
    password_bcrypt_rounds: int = 12

    # Session revocation ledger / activity throttle
    session_revocation_ttl_days: int = 30
    activity_throttle_seconds: int = 300

    # Rate limiting
    # Storage URI and rate strings use the limits library formats
    # (async+memory://, or async+redis://host:6379/1 via the async-redis extra)
    # (e.g., "10/10 seconds", "5/minute", "1/minute")
    rate_limit_storage_uri: str = "async+memory://"
    rate_limit_public: str = "10/10 seconds"
    rate_limit_private: str = "5/minute"
    rate_limit_notification: str = "1/minute"
    rate_limit_enabled: bool = True

    # Email
    email_from: str = "noreply@mortiscope.app"
    resend_api_key: SecretStr = SecretStr("")
    frontend_url: str = "http://localhost:3000"

    @property
    def database_url(self) -> str:
        """Async database URL for SQLAlchemy."""
        return (
            f"postgresql+asyncpg://{self.database_user}:{self.database_password}"
            f"@{self.database_host}:{self.database_port}/{self.database_name}"
        )

    @property
    def database_url_sync(self) -> str:
        """Sync database URL for Alembic."""
        return (
            f"postgresql://{self.database_user}:{self.database_password}"
            f"@{self.database_host}:{self.database_port}/{self.database_name}"
        )

    @model_validator(mode="after")
    def check_production_security(self) -> "Settings":
        """Validate security requirements.

        Checks:
        - bcrypt cost factors are inside the supported range (all environments)
        - Positive TTLs for ledger, throttle and tokens (all environments)
        - Database password must not be the default in production
        - AUTH_SECRET must be set and >= 32 chars in production
        - Recovery code cost factor must not be a test value in production
        """
        for name in ("recovery_code_bcrypt_rounds", "password_bcrypt_rounds"):
            rounds = getattr(self, name)
            if not _MIN_BCRYPT_ROUNDS <= rounds <= _MAX_BCRYPT_ROUNDS:
                msg = (
                    f"{name.upper()} must be between {_MIN_BCRYPT_ROUNDS} and "
                    f"{_MAX_BCRYPT_ROUNDS}. Got: {rounds}"
                )
                raise ValueError(msg)

        for name in (
            "session_revocation_ttl_days",
            "activity_throttle_seconds",
            "verification_token_ttl_minutes",
            "email_change_token_ttl_minutes",
            "password_reset_token_ttl_minutes",
            "account_deletion_token_ttl_minutes",
        ):
            if getattr(self, name) <= 0:
                msg = f"{name.upper()} must be positive. Got: {getattr(self, name)}"
                raise ValueError(msg)

        if "*" in self.allowed_origins:
            msg = (
                "ALLOWED_ORIGINS must not contain '*' (wildcard). "
                "Session cookies are incompatible with wildcard CORS origins."
            )
            raise ValueError(msg)

        if self.environment == "production":
            if self.database_password == _INSECURE_DEFAULT_PASSWORD:
                msg = (
                    "Cannot use default database password in production. "
                    "Set DATABASE_PASSWORD environment variable to a secure value."
                )
                raise ValueError(msg)

            secret_value = self.auth_secret.get_secret_value()
            if len(secret_value) < _MIN_AUTH_SECRET_LENGTH:
                msg = (
                    f"AUTH_SECRET must be at least {_MIN_AUTH_SECRET_LENGTH} "
                    'characters in production. Generate with: python -c "import '
                    'secrets; print(secrets.token_hex(32))"'
                )
                raise ValueError(msg)

            if self.recovery_code_bcrypt_rounds < _MIN_PRODUCTION_BCRYPT_ROUNDS:
                msg = (
                    "RECOVERY_CODE_BCRYPT_ROUNDS must be at least "
                    f"{_MIN_PRODUCTION_BCRYPT_ROUNDS} in production."
                )
                raise ValueError(msg)

        return self


settings = Settings()
