"""
Configuration Settings.

This module defines the mediator configuration using Pydantic's BaseSettings.
All values load from environment variables (prefix ``AGENT_MEDIATOR_``) and
an optional ``.env`` file. Nested sections use ``__`` as the delimiter, e.g.
``AGENT_MEDIATOR_SHELL__DEFAULT_TIMEOUT_SECONDS=60`` or
``AGENT_MEDIATOR_PERMISSIONS__PROJECT_ROOT=/work/repo``.
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..mcp.models import McpConfig
from ..permissions.models import PermissionPolicy
from ..shell.models import ShellConfig


class Settings(BaseSettings):
    """Top-level settings for every mediator subsystem."""

    log_level: str = Field(default="INFO", description="Console log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)")
    log_format: Literal["simple", "detailed", "json"] = Field(default="detailed", description="Log line format")
    log_file_dir: str = Field(default="logs", description="Directory for the log file when file logging is enabled")
    enable_file_logging: bool = Field(default=False, description="Also write DEBUG-level logs to a file")

    permissions: PermissionPolicy = Field(default_factory=PermissionPolicy, description="Permission policy")
    shell: ShellConfig = Field(default_factory=ShellConfig, description="Shell session defaults")
    mcp: McpConfig = Field(default_factory=McpConfig, description="MCP tool-server registry settings")

    model_config = SettingsConfigDict(
        env_prefix="AGENT_MEDIATOR_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )


def get_settings() -> Settings:
    """Load settings from the current environment."""
    return Settings()
