from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator

# Load environment variables from project root .env if present
# Calculate the path safely with depth validation
current_file_path = Path(__file__).resolve()
project_root_depth = 2  # Two levels up from app/core/settings.py to project root

# Validate directory depth to prevent IndexError
if len(current_file_path.parents) <= project_root_depth:
    # Fallback to current directory if path calculation fails
    project_root = Path.cwd()
else:
    project_root = current_file_path.parents[project_root_depth]

ENV_PATH = project_root / ".env"
load_dotenv(ENV_PATH)

logger = logging.getLogger(__name__)

_DEFAULT_DELEGATE_ROLES = (
    "CLIENT_APPROVER,CLIENT_ADMIN,SUPER_ADMIN,PURCHASE_APPROVER,PURCHASE_ADMIN"
)


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    # Pydantic v2 settings configuration
    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=ENV_PATH,
        extra="ignore",
    )

    environment: str = Field(default="development", alias="ENVIRONMENT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Database
    database_url: Optional[str] = Field(default=None, alias="DATABASE_URL")
    db_echo: bool = Field(default=False, alias="DB_ECHO")
    db_create_tables: bool = Field(default=True, alias="DB_CREATE_TABLES")

    # Notification dispatch
    approvals_notifications_enabled: bool = Field(default=True, alias="APPROVALS_NOTIFICATIONS_ENABLED")
    approvals_notifications_async: bool = Field(default=True, alias="APPROVALS_NOTIFICATIONS_ASYNC")
    approvals_notification_workers: int = Field(default=4, alias="APPROVALS_NOTIFICATION_WORKERS")

    # Decision semantics
    # ANY semantics apply to every level unless unanimity is switched on.
    approvals_enforce_all_mode: bool = Field(default=False, alias="APPROVALS_ENFORCE_ALL_MODE")
    approvals_honor_delegations: bool = Field(default=False, alias="APPROVALS_HONOR_DELEGATIONS")
    approvals_require_rejection_comment: bool = Field(
        default=False, alias="APPROVALS_REQUIRE_REJECTION_COMMENT"
    )
    approvals_vote_retries: int = Field(default=5, alias="APPROVALS_VOTE_RETRIES")

    # Delegation
    approvals_delegate_roles: str = Field(default=_DEFAULT_DELEGATE_ROLES, alias="APPROVALS_DELEGATE_ROLES")

    @field_validator("approvals_notification_workers", "approvals_vote_retries")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return (v or "INFO").upper()

    def is_production_mode(self) -> bool:
        """Return True when running with ENVIRONMENT=production."""
        return self.environment.strip().lower() == "production"

    def get_delegate_roles(self) -> List[str]:
        """Return the roles whose holders may receive a delegation."""
        return [role.strip() for role in self.approvals_delegate_roles.split(",") if role.strip()]


@lru_cache()
def get_settings() -> Settings:
    """
    Return a singleton instance of the application settings.

    Uses an internal cache to ensure the same Settings instance is returned on each call.
    """
    return Settings()

# Instantiate settings at import time for convenience
settings: Settings = get_settings()
