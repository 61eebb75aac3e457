"""Application configuration using Pydantic BaseSettings."""

import logging

import structlog
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Database Configuration
    database_url: str = Field(alias="DATABASE_URL")
    db_pool_size: int = Field(default=20, alias="DB_POOL_SIZE")

    # Application Environment
    app_env: str = Field(default="development", alias="APP_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # CORS Configuration
    cors_origins: str = Field(default="http://localhost:3000", alias="CORS_ORIGINS")

    # Server Configuration
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")

    # Replicate Training
    replicate_api_token: str = Field(default="", alias="REPLICATE_API_TOKEN")
    # Empty secret disables webhook signature verification (trusted deployments only)
    replicate_webhook_secret: str = Field(default="", alias="REPLICATE_WEBHOOK_SECRET")
    webhook_tolerance_seconds: int = Field(default=300, alias="WEBHOOK_TOLERANCE_SECONDS")

    # Story Protocol (Aeneid testnet defaults)
    story_rpc_url: str = Field(default="https://aeneid.storyrpc.io", alias="STORY_RPC_URL")
    story_chain_id: int = Field(default=1315, alias="STORY_CHAIN_ID")
    story_private_key: str = Field(default="", alias="STORY_PRIVATE_KEY")
    story_spg_nft_contract: str = Field(default="", alias="STORY_SPG_NFT_CONTRACT")
    story_license_terms_id: str = Field(default="1", alias="STORY_LICENSE_TERMS_ID")
    story_derivative_workflows_address: str = Field(
        default="0x9e2d496f72C547C2C535B167e06ED8729B374a4f",
        alias="STORY_DERIVATIVE_WORKFLOWS_ADDRESS",
    )
    story_registration_workflows_address: str = Field(
        default="0xbe39E1C756e921BD25DF86e7AAa31106d1eb0424",
        alias="STORY_REGISTRATION_WORKFLOWS_ADDRESS",
    )
    story_licensing_module_address: str = Field(
        default="0x04fbd8a2e56dd85CFD5500A4A4DfA955B9f1dE6f",
        alias="STORY_LICENSING_MODULE_ADDRESS",
    )
    story_license_template_address: str = Field(
        default="0x2E896b0b2Fdb7457499B56AAaA4AE55BCB4Cd316",
        alias="STORY_LICENSE_TEMPLATE_ADDRESS",
    )
    story_ip_asset_registry_address: str = Field(
        default="0x77319B4031e6eF1250907aa00018B8B1c67a244b",
        alias="STORY_IP_ASSET_REGISTRY_ADDRESS",
    )
    story_gas_buffer: float = Field(default=0.2, alias="STORY_GAS_BUFFER")
    transaction_timeout_seconds: int = Field(default=180, alias="TRANSACTION_TIMEOUT_SECONDS")

    # Registration pipeline
    registration_min_interval_seconds: float = Field(
        default=2.0, alias="REGISTRATION_MIN_INTERVAL_SECONDS"
    )
    registration_claim_ttl_seconds: int = Field(
        default=900, alias="REGISTRATION_CLAIM_TTL_SECONDS"
    )
    backfill_default_limit: int = Field(default=5, alias="BACKFILL_DEFAULT_LIMIT")
    backfill_max_age_days: int = Field(default=7, alias="BACKFILL_MAX_AGE_DAYS")

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def story_configured(self) -> bool:
        """True when the backend wallet and SPG collection are both configured."""
        return bool(self.story_private_key and self.story_spg_nft_contract)

    @model_validator(mode="after")
    def validate_required_config(self) -> "Settings":
        """Validate required configuration on startup.

        Fails fast with clear error messages if configuration is incomplete.
        Validation is skipped in test/development environments to avoid breaking tests.
        """
        if self.app_env in ("test", "testing", "development"):
            return self

        missing = []

        if not self.story_private_key:
            missing.append(
                "STORY_PRIVATE_KEY: Backend wallet key used to pay for IP registrations"
            )

        if not self.story_spg_nft_contract:
            missing.append("STORY_SPG_NFT_CONTRACT: SPG NFT collection used for model IP assets")

        if not self.replicate_api_token:
            missing.append(
                "REPLICATE_API_TOKEN: Get your API token from https://replicate.com/account/api-tokens"
            )

        if missing:
            error_msg = "CRITICAL: Missing required environment variables:\n\n" + "\n".join(
                f"  - {m}" for m in missing
            )
            error_msg += "\n\nThe application cannot start without these variables."
            error_msg += "\nPlease update your .env file and restart."
            raise ValueError(error_msg)

        return self


def configure_logging(settings: Settings) -> None:
    """Configure structlog based on application environment.

    - Production: JSON output for log aggregation
    - Development: Console output for human readability
    """
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    if settings.app_env == "production":
        renderer_processors = [
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        renderer_processors = [structlog.dev.ConsoleRenderer()]

    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            *renderer_processors,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
