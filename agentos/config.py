"""
AgentOS Configuration Management

Centralized configuration using Pydantic Settings for type-safe environment
variable loading with validation.

SECURITY NOTE: The JWT secret must come from the environment (or a .env file
that is never committed). It is validated for length and entropy at startup.
"""

import logging
import os
import warnings
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class SecurityWarning(UserWarning):
    """Warning for security-related issues (insecure configurations, etc.)."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ═══════════════════════════════════════════════════════════════
    # APPLICATION
    # ═══════════════════════════════════════════════════════════════
    app_name: str = Field(default="agentos", description="Application name")
    app_env: Literal["development", "staging", "production", "testing"] = Field(
        default="development", description="Environment"
    )
    debug: bool = Field(default=False, description="Debug mode")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )

    # API Server
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, ge=1, le=65535, description="API port")

    # CORS
    cors_origins: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        description="Comma-separated CORS origins",
    )

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins string into list."""
        origins = [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]
        if self.app_env == "production" and "*" in origins:
            raise ValueError("Wildcard CORS origin not allowed in production")
        return origins

    # ═══════════════════════════════════════════════════════════════
    # SECURITY
    # ═══════════════════════════════════════════════════════════════
    jwt_secret_key: str = Field(description="JWT secret key")
    jwt_algorithm: str = Field(default="HS256", description="JWT algorithm")
    jwt_access_token_expire_minutes: int = Field(
        default=30, ge=1, le=1440, description="Access token expiry"
    )

    @field_validator("jwt_secret_key")
    @classmethod
    def validate_jwt_secret(cls, v: str) -> str:
        if len(v) < 32:
            raise ValueError("JWT secret key must be at least 32 characters")
        if len(set(v)) < 10:
            raise ValueError("JWT secret key must have at least 10 unique characters for sufficient entropy")

        environment = os.environ.get("APP_ENV", "development")
        if environment == "production" and v.startswith("test-"):
            warnings.warn(
                "A test JWT secret is configured in production.",
                SecurityWarning,
                stacklevel=2,
            )
        return v

    # ═══════════════════════════════════════════════════════════════
    # LLM
    # ═══════════════════════════════════════════════════════════════
    llm_provider: Literal["anthropic", "openai", "ollama", "mock"] = Field(
        default="mock", description="LLM provider used by the agent runtime"
    )
    llm_api_key: str | None = Field(default=None, description="LLM API key")
    llm_api_base: str | None = Field(default=None, description="Override LLM API base URL")
    llm_model: str = Field(default="claude-sonnet-4-20250514", description="LLM model name")
    llm_max_tokens: int = Field(default=2000, ge=1, description="Max LLM output tokens")
    llm_temperature: float = Field(default=0.4, ge=0.0, le=2.0, description="LLM temperature")
    llm_timeout_seconds: float = Field(default=60.0, gt=0, description="LLM request timeout")
    llm_max_retries: int = Field(default=3, ge=1, le=10, description="LLM retry attempts")

    @field_validator("llm_api_key")
    @classmethod
    def validate_llm_api_key(cls, v: str | None, info) -> str | None:
        """Warn on obviously malformed provider keys."""
        if v is None:
            return v
        provider = info.data.get("llm_provider", "mock") if info.data else "mock"
        if provider == "anthropic" and not v.startswith("sk-ant-"):
            logger.warning(
                "llm_api_key_format_warning: Anthropic API keys typically start with 'sk-ant-'"
            )
        if provider == "openai" and not v.startswith(("sk-", "org-")):
            logger.warning(
                "llm_api_key_format_warning: OpenAI API keys typically start with 'sk-'"
            )
        return v

    # ═══════════════════════════════════════════════════════════════
    # IDENTITY (DSID)
    # ═══════════════════════════════════════════════════════════════
    dsid_network: str = Field(
        default="agentos", pattern=r"^[a-z0-9-]{1,32}$", description="Network segment of DSIDs"
    )
    identity_chain_backend: Literal["memory", "rpc"] = Field(
        default="memory", description="Where identity records are published"
    )
    identity_chain_rpc_url: str | None = Field(
        default=None, description="JSON-RPC endpoint of the identity chain"
    )
    identity_chain_timeout_seconds: float = Field(default=10.0, gt=0)
    challenge_ttl_seconds: int = Field(
        default=300, ge=10, le=3600, description="Lifetime of verification challenges"
    )

    # ═══════════════════════════════════════════════════════════════
    # LEDGER
    # ═══════════════════════════════════════════════════════════════
    ledger_block_size: int = Field(
        default=32, ge=1, le=10000, description="Entries per sealed block"
    )
    ledger_anchor_blocks: int = Field(
        default=10, ge=1, description="Anchor every N sealed blocks to the identity chain"
    )

    # ═══════════════════════════════════════════════════════════════
    # RUNTIME
    # ═══════════════════════════════════════════════════════════════
    runtime_tool_timeout_seconds: float = Field(default=10.0, gt=0)
    runtime_max_tool_calls: int = Field(default=25, ge=1)
    runtime_max_tool_output_chars: int = Field(default=4000, ge=100)
    runtime_pending_ttl_seconds: float = Field(
        default=60.0, gt=0, description="Cancel sessions created but not started within this window"
    )
    http_tool_max_bytes: int = Field(default=65536, ge=1024)

    # ═══════════════════════════════════════════════════════════════
    # TEAMS
    # ═══════════════════════════════════════════════════════════════
    team_max_parallel: int = Field(default=4, ge=1, le=64)
    team_max_rounds: int = Field(default=3, ge=1, le=20)

    # ═══════════════════════════════════════════════════════════════
    # MARKETPLACE
    # ═══════════════════════════════════════════════════════════════
    marketplace_refund_window_days: int = Field(default=7, ge=0, le=90)
    marketplace_currency: Literal["AOS", "USD", "USDC"] = Field(default="AOS")

    # ═══════════════════════════════════════════════════════════════
    # MONITORING
    # ═══════════════════════════════════════════════════════════════
    sentry_dsn: str | None = Field(default=None, description="Sentry DSN")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
