"""Configuration settings for appbuilder.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.

Build-specific values (app name, build id, webhook event, ...) are not
settings; they are read into a BuildContext, see builds/context.py.
"""

import tempfile
from pathlib import Path
from typing import Literal

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_MANIFEST_FILENAME = "apppack.toml"


def _default_cache_dir() -> Path:
    """Return the default build cache directory."""
    return Path(tempfile.gettempdir()) / "appbuilder-cache"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the APPBUILDER_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="APPBUILDER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    work_dir: Path = Field(
        default_factory=Path.cwd,
        description="Source checkout the pipeline operates on",
    )
    cache_dir: Path = Field(
        default_factory=_default_cache_dir,
        description="Local build cache directory (bind-mounted into builds)",
    )
    tmp_dir: Path | None = Field(
        default=None,
        description="Directory for the override env file (system default if not set)",
    )
    manifest_filename: str = Field(
        default=DEFAULT_MANIFEST_FILENAME,
        validation_alias=AliasChoices("APPBUILDER_MANIFEST_FILENAME", "APPPACK_TOML"),
        description="Build manifest filename, relative to the work directory",
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    debug: bool = Field(
        default=False,
        description="Log at DEBUG level regardless of log_level",
    )

    # Remote naming
    parameter_root: str = Field(
        default="",
        description="Prefix prepended to every parameter store path",
    )
    review_app_stack_prefix: str = Field(
        default="apppack-reviewapp-",
        description="Stack name prefix for review app stacks",
    )
    cache_prefix: str = Field(
        default="cache",
        description="Object store prefix holding the build cache",
    )
    docker_hub_mirror: str = Field(
        default="registry.apppackcdn.net",
        description="Pull-through mirror for Docker Hub images",
    )

    def resolved_tmp_dir(self) -> Path:
        """Return tmp_dir, or the system temp directory if not set."""
        return self.tmp_dir if self.tmp_dir is not None else Path(tempfile.gettempdir())

    def override_env_path(self) -> Path:
        """Return the path of the addon override env file."""
        return self.resolved_tmp_dir() / "env.json"

    def buildkitd_config_path(self) -> Path:
        """Return where the buildx builder config is written."""
        return self.resolved_tmp_dir() / "buildkitd.toml"


def get_settings() -> Settings:
    """Get the application settings.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = [
    "DEFAULT_MANIFEST_FILENAME",
    "Settings",
    "get_settings",
    "print_settings_json",
]
