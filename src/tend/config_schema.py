"""Configuration schema for tend.

Defines Pydantic models for the YAML config file: engine tuning, logging,
and the list of workspaces with their repositories.

Usage:
    from tend.config_loader import load_hierarchical_config
    from tend.config_schema import build_config

    config = build_config(load_hierarchical_config())
    for ws in config.workspaces:
        print(ws.name, ws.base_path)
"""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class EngineConfig(BaseModel):
    """Reconcile engine tuning.

    ``None`` fields fall through to environment variables and built-in
    defaults (see ``tend.config.load_settings``).
    """

    concurrency: int | None = Field(
        default=None,
        ge=1,
        le=64,
        description="Repositories processed in parallel (1-64)",
    )
    max_retries: int = Field(
        default=3, ge=0, le=20, description="Retries for transient failures"
    )
    backoff_base: float = Field(default=1.0, ge=0)
    backoff_factor: float = Field(default=2.0, ge=1)
    backoff_max: float = Field(default=30.0, ge=0)
    command_timeout: float = Field(
        default=300.0, gt=0, description="Seconds allowed per git command"
    )
    archive_ledger: bool = Field(
        default=True,
        description="Keep the ledger of a successful run as an archive",
    )
    ledger_dir: str | None = Field(
        default=None, description="Ledger directory (default <root>/.tend)"
    )

    model_config = {"frozen": True}


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        file: Optional log file path.
    """

    level: str = Field(default="INFO", description="Log level")
    file: str | None = Field(default=None, description="Log file path")

    model_config = {"frozen": True}


class Provider(str, Enum):
    GITHUB = "github"


class CloneMethod(str, Enum):
    SSH = "ssh"
    HTTPS = "https"


class RepoConfig(BaseModel):
    """Explicit declaration of, or overrides for, one repository.

    Unset fields inherit from the workspace.
    """

    name: str
    url: str | None = None
    ref: str | None = None
    path: str | None = None
    shallow: bool | None = None
    submodules: bool | None = None

    model_config = {"frozen": True}


class WorkspaceConfig(BaseModel):
    """One workspace: a base directory holding a set of repositories."""

    name: str
    provider: Provider = Provider.GITHUB
    base_dir: str
    clone_method: CloneMethod = CloneMethod.SSH
    discover: bool = False
    org: str | None = None
    exclude: list[str] = Field(default_factory=list)
    extra_repos: list[str] = Field(default_factory=list)
    default_ref: str | None = None
    shallow: bool = False
    submodules: bool = False
    repos: list[RepoConfig] = Field(default_factory=list)
    flake_deps: dict[str, list[str]] = Field(default_factory=dict)

    model_config = {"frozen": True}

    @field_validator("name", "base_dir")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be empty")
        return value

    @property
    def base_path(self) -> Path:
        """``base_dir`` with ``~`` expanded."""
        return Path(self.base_dir).expanduser()

    @property
    def org_name(self) -> str:
        """GitHub organisation or user; defaults to the workspace name."""
        return self.org or self.name


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------


class TendConfig(BaseModel):
    """Top-level configuration.

    Every section has defaults, so ``TendConfig()`` is valid; it simply
    declares no workspaces.
    """

    engine: EngineConfig = Field(default_factory=EngineConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    workspaces: list[WorkspaceConfig] = Field(default_factory=list)

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _unique_workspace_names(self) -> "TendConfig":
        seen: set[str] = set()
        for ws in self.workspaces:
            if ws.name in seen:
                raise ValueError(f"duplicate workspace name '{ws.name}'")
            seen.add(ws.name)
        return self

    def workspace(self, name: str) -> WorkspaceConfig | None:
        """Look up a workspace by name."""
        for ws in self.workspaces:
            if ws.name == name:
                return ws
        return None


# ---------------------------------------------------------------------------
# Factory function
# ---------------------------------------------------------------------------


def build_config(raw_data: dict | None) -> TendConfig:
    """Construct a ``TendConfig`` from the raw dict returned by
    ``load_hierarchical_config()``.

    Missing sections get defaults.

    Raises:
        pydantic.ValidationError: The data does not match the schema.
    """
    if not raw_data:
        return TendConfig()

    return TendConfig(**raw_data)
