"""Application configuration and settings."""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field


DEFAULT_REGION = "us-east-1"
DEFAULT_LOCK_TABLE = "terraform-locks"
DEFAULT_PLANS_DIR = "plans/archive"
DEFAULT_HISTORY_DB = ".tfw/history.db"
REQUIRED_TERRAFORM_VERSION = "1.7.0"


def _env_region() -> str:
    return os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION") or DEFAULT_REGION


class Settings(BaseModel):
    """Runtime settings resolved from env vars and CLI flags."""

    # Terraform
    working_dir: str = "."
    terraform_bin: str = Field(
        default_factory=lambda: os.environ.get("TF_WORKFLOWS_TERRAFORM_BIN", "terraform"),
    )
    command_timeout: int = Field(
        default=600,
        description="Seconds before a terraform subprocess is killed.",
    )
    required_terraform_version: str = REQUIRED_TERRAFORM_VERSION

    # AWS
    aws_region: str = Field(default_factory=_env_region)
    aws_profile: str = Field(default_factory=lambda: os.environ.get("AWS_PROFILE", ""))
    lock_table: str = Field(
        default_factory=lambda: os.environ.get("TF_WORKFLOWS_LOCK_TABLE", DEFAULT_LOCK_TABLE),
    )

    # Output
    plans_dir: str = DEFAULT_PLANS_DIR
    history_db: str = Field(
        default_factory=lambda: os.environ.get("TF_WORKFLOWS_HISTORY_DB", DEFAULT_HISTORY_DB),
    )

    # Behaviour
    verbose: bool = False
    environments: list[str] = Field(default_factory=lambda: ["dev", "staging", "prod"])

    @property
    def resolved_working_dir(self) -> Path:
        return Path(self.working_dir).resolve()

    @property
    def resolved_plans_dir(self) -> Path:
        plans = Path(self.plans_dir)
        if plans.is_absolute():
            return plans
        return self.resolved_working_dir / plans

    @property
    def resolved_history_db(self) -> Path:
        db = Path(self.history_db)
        if db.is_absolute():
            return db
        return self.resolved_working_dir / db
