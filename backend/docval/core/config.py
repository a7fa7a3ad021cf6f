"""
Docs Validation Orchestrator - Configuration
============================================

All application settings loaded from environment variables.
Uses pydantic-settings for validation and type conversion.
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import AliasChoices, Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Application
    # ==========================================================================
    APP_NAME: str = "Docs Validation Orchestrator"
    APP_VERSION: str = "0.1.0"
    ENVIRONMENT: Literal["development", "staging", "production", "test"] = "development"
    LOG_LEVEL: str = "INFO"

    # ==========================================================================
    # API
    # ==========================================================================
    API_V1_PREFIX: str = "/api/v1"
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # ==========================================================================
    # Database (supports SQLite and PostgreSQL)
    # ==========================================================================
    DATABASE_URL: str = "sqlite+aiosqlite:///./docval.db"
    DATABASE_POOL_SIZE: int = 5
    DATABASE_MAX_OVERFLOW: int = 10
    DATABASE_ECHO: bool = False

    # ==========================================================================
    # Kubernetes sandbox
    # ==========================================================================
    K8S_NAMESPACE: str = "dot-ai-docs-validation"
    K8S_IN_CLUSTER: Optional[bool] = None  # None = try in-cluster, then kubeconfig
    SANDBOX_IMAGE: str = "ghcr.io/vfarcic/dot-ai-docs-validator:latest"
    SANDBOX_CONTAINER_NAME: str = "validator"
    SANDBOX_WORKDIR: str = "/workspace/repo"
    SANDBOX_CPU_REQUEST: str = "200m"
    SANDBOX_MEMORY_REQUEST: str = "256Mi"
    SANDBOX_CPU_LIMIT: str = "1"
    SANDBOX_MEMORY_LIMIT: str = "2Gi"
    POD_STARTUP_TIMEOUT_SECONDS: int = 120
    POD_READY_POLL_INTERVAL_SECONDS: float = 2.0
    EXEC_TIMEOUT_SECONDS: int = 120

    # vCluster (nested control plane for cluster-level instructions)
    VCLUSTER_ENABLED: bool = True
    VCLUSTER_STARTUP_TIMEOUT_SECONDS: int = 300

    # ==========================================================================
    # Session lifecycle
    # ==========================================================================
    TTL_HOURS: int = Field(
        default=24,
        validation_alias=AliasChoices("DOCVAL_TTL_HOURS", "TTL_HOURS"),
    )
    REAPER_INTERVAL_SECONDS: int = 1800
    REAPER_ENABLED: bool = True
    DEFAULT_WORK_BRANCH: str = "docs-validation"

    # Two active sessions on the same repo+branch:
    # "reject" refuses the second start until the first finishes.
    CONCURRENT_SESSION_POLICY: Literal["reject", "allow"] = "reject"

    # ==========================================================================
    # Credentials (mounted into sandboxes as scoped secrets)
    # ==========================================================================
    GIT_TOKEN: Optional[str] = None
    AI_API_KEY: Optional[str] = None

    # ==========================================================================
    # AI Service
    # ==========================================================================
    AI_API_URL: str = "https://api.anthropic.com"
    AI_MODEL: str = "claude-sonnet-4-5"
    AI_MAX_TOKENS: int = 4096
    AI_TIMEOUT_SECONDS: float = 60.0
    AI_MAX_RETRIES: int = 2
    AI_RETRY_BACKOFF_SECONDS: float = 2.0

    # ==========================================================================
    # Workspace executor
    # ==========================================================================
    VALIDATOR_COMMAND: str = "docs-validator"
    GIT_AUTHOR_NAME: str = "docs-validation-bot"
    GIT_AUTHOR_EMAIL: str = "docs-validation-bot@users.noreply.github.com"
    PR_TITLE: str = "docs: validation fixes"

    # ==========================================================================
    # Computed Properties
    # ==========================================================================
    @computed_field  # type: ignore[misc]
    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @computed_field  # type: ignore[misc]
    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @computed_field  # type: ignore[misc]
    @property
    def is_test(self) -> bool:
        return self.ENVIRONMENT == "test"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export
settings = get_settings()
