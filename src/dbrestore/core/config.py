"""Configuration management using Pydantic.

Provides:
- Typed configuration models with validation
- Optional YAML file loading with defaults
- Environment variable (and .env) overrides
- Configuration initialization and display
"""

import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Any

import yaml
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from dbrestore.core.exceptions import ConfigurationError


# Default configuration paths
DEFAULT_CONFIG_DIR = Path.home() / ".db-restore"
DEFAULT_CONFIG_PATH = DEFAULT_CONFIG_DIR / "config.yaml"
DEFAULT_TEMP_DIR = Path(tempfile.gettempdir()) / "db-restore"

ENVIRONMENTS: tuple[str, ...] = ("dev", "stage", "prod")
DEFAULT_PROFILES: list[str] = ["dev", "stage", "prod", "default"]

RESTORE_POLICIES: tuple[str, ...] = (
    "create-new-dated",
    "create-new-named",
    "restore-existing",
    "replace-existing",
)


class PostgresConfig(BaseModel):
    """Target PostgreSQL server. The password only comes from the environment."""

    host: str = "localhost"
    port: int = 5432
    user: str = "postgres"

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        if not 1 <= v <= 65535:
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator("host", "user")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be empty")
        return v.strip()


class EnvironmentConfig(BaseModel):
    """Bucket and region of one backup environment."""

    bucket: Optional[str] = None
    region: str = "eu-south-1"


def _default_environments() -> dict[str, EnvironmentConfig]:
    return {
        "dev": EnvironmentConfig(region="ap-south-1"),
        "stage": EnvironmentConfig(region="eu-south-1"),
        "prod": EnvironmentConfig(region="eu-south-1"),
    }


class CloudConfig(BaseModel):
    """S3 backup locations per environment."""

    profiles: list[str] = Field(default_factory=lambda: list(DEFAULT_PROFILES))
    environments: dict[str, EnvironmentConfig] = Field(default_factory=_default_environments)

    @field_validator("environments")
    @classmethod
    def validate_environments(cls, v: dict[str, EnvironmentConfig]) -> dict[str, EnvironmentConfig]:
        unknown = set(v) - set(ENVIRONMENTS)
        if unknown:
            raise ValueError(
                f"Unknown environments {sorted(unknown)}; valid: {list(ENVIRONMENTS)}"
            )
        merged = _default_environments()
        merged.update(v)
        return merged

    @field_validator("profiles")
    @classmethod
    def validate_profiles(cls, v: list[str]) -> list[str]:
        profiles = [p.strip() for p in v if p.strip()]
        if not profiles:
            raise ValueError("At least one AWS profile is required")
        return profiles


class RestoreConfig(BaseModel):
    """Restore behaviour."""

    temp_dir: Path = DEFAULT_TEMP_DIR
    max_retries: int = 3
    default_policy: str = "create-new-dated"

    @field_validator("max_retries")
    @classmethod
    def validate_max_retries(cls, v: int) -> int:
        if not 1 <= v <= 10:
            raise ValueError("max_retries must be between 1 and 10")
        return v

    @field_validator("default_policy")
    @classmethod
    def validate_policy(cls, v: str) -> str:
        if v not in RESTORE_POLICIES:
            raise ValueError(f"default_policy must be one of: {list(RESTORE_POLICIES)}")
        return v


class DBeaverConfig(BaseModel):
    """DBeaver connection registration."""

    enabled: bool = True
    workspace: Optional[Path] = None
    folder_style: str = "default"

    @field_validator("folder_style")
    @classmethod
    def validate_folder_style(cls, v: str) -> str:
        if v not in ("default", "ubuntu"):
            raise ValueError("folder_style must be 'default' or 'ubuntu'")
        return v


class ToolConfig(BaseModel):
    """Root configuration model.

    Loaded from ~/.db-restore/config.yaml when present. Secrets are NOT
    stored in this file - they come from environment variables.
    """

    postgres: PostgresConfig = Field(default_factory=PostgresConfig)
    cloud: CloudConfig = Field(default_factory=CloudConfig)
    restore: RestoreConfig = Field(default_factory=RestoreConfig)
    dbeaver: DBeaverConfig = Field(default_factory=DBeaverConfig)

    @classmethod
    def load(cls, path: Path) -> "ToolConfig":
        """Load configuration from YAML file.

        Args:
            path: Path to configuration file

        Returns:
            Loaded configuration

        Raises:
            ConfigurationError: If file not found or invalid
        """
        if not path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {path}",
                hint="Create it with: db-restore config init",
            )

        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(
                f"Invalid YAML in configuration file: {path}",
                details=[str(e)],
            ) from e
        except PermissionError:
            raise ConfigurationError(
                f"Cannot read configuration file: {path}",
                hint="Check file permissions",
            )

        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Configuration file must contain a mapping: {path}",
            )

        try:
            return cls(**data)
        except PydanticValidationError as e:
            raise ConfigurationError(
                "Invalid configuration",
                details=[
                    f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                    for err in e.errors()
                ],
            ) from e

    @classmethod
    def load_or_default(cls, path: Optional[Path] = None) -> "ToolConfig":
        """Load configuration, falling back to defaults if file doesn't exist."""
        if path is None:
            path = DEFAULT_CONFIG_PATH

        if path.exists():
            return cls.load(path)
        return cls()

    def to_yaml(self) -> str:
        """Convert configuration to YAML string."""
        data = self.model_dump(mode="json", exclude_none=True)
        return yaml.dump(data, default_flow_style=False, sort_keys=False)


class EnvSettings(BaseSettings):
    """Overrides loaded from environment variables and a local .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # PostgreSQL connection
    pg_host: Optional[str] = Field(None, alias="PG_HOST")
    pg_port: Optional[int] = Field(None, alias="PG_PORT")
    pg_user: Optional[str] = Field(None, alias="PG_USER")
    pg_password: Optional[str] = Field(None, alias="PG_PASSWORD")

    # S3 buckets and regions per environment
    s3_bucket_dev: Optional[str] = Field(None, alias="S3_BUCKET_DEV")
    s3_bucket_stage: Optional[str] = Field(None, alias="S3_BUCKET_STAGE")
    s3_bucket_prod: Optional[str] = Field(None, alias="S3_BUCKET_PROD")
    aws_region_dev: Optional[str] = Field(None, alias="AWS_REGION_DEV")
    aws_region_stage: Optional[str] = Field(None, alias="AWS_REGION_STAGE")
    aws_region_prod: Optional[str] = Field(None, alias="AWS_REGION_PROD")
    aws_profiles: Optional[str] = Field(None, alias="AWS_PROFILES")

    # Restore behaviour
    local_temp_dir: Optional[Path] = Field(None, alias="LOCAL_TEMP_DIR")
    max_retries: Optional[int] = Field(None, alias="MAX_RETRIES")

    def overrides(self) -> dict[str, Any]:
        """Return the set values as a nested dict shaped like ToolConfig."""
        data: dict[str, Any] = {}

        postgres = {
            "host": self.pg_host,
            "port": self.pg_port,
            "user": self.pg_user,
        }
        postgres = {k: v for k, v in postgres.items() if v is not None}
        if postgres:
            data["postgres"] = postgres

        environments: dict[str, dict[str, str]] = {}
        for env in ENVIRONMENTS:
            bucket = getattr(self, f"s3_bucket_{env}")
            region = getattr(self, f"aws_region_{env}")
            if bucket:
                environments.setdefault(env, {})["bucket"] = bucket
            if region:
                environments.setdefault(env, {})["region"] = region
        if environments:
            data["cloud"] = {"environments": environments}
        if self.aws_profiles:
            data.setdefault("cloud", {})["profiles"] = self.aws_profiles.split(",")

        restore: dict[str, Any] = {}
        if self.local_temp_dir:
            restore["temp_dir"] = self.local_temp_dir
        if self.max_retries is not None:
            restore["max_retries"] = self.max_retries
        if restore:
            data["restore"] = restore

        return data


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


@dataclass(frozen=True)
class CloudSelection:
    """AWS profile and environment chosen for one run. Written once."""

    profile: str
    environment: str
    bucket: str
    region: str


class AppConfig:
    """Application configuration combining config file and environment.

    This is the main interface for accessing configuration throughout the app.
    """

    def __init__(
        self,
        config_path: Optional[Path] = None,
        config: Optional[ToolConfig] = None,
        env: Optional[EnvSettings] = None,
    ) -> None:
        """Initialize application configuration.

        Args:
            config_path: Path to config file (uses default if None)
            config: Pre-loaded config (skips file loading if provided)
            env: Pre-loaded environment settings
        """
        self.config_path = config_path or DEFAULT_CONFIG_PATH
        self._env = env if env is not None else _load_env()
        base = config or ToolConfig.load_or_default(self.config_path)
        self._config = self._apply_env(base)

    def _apply_env(self, base: ToolConfig) -> ToolConfig:
        overrides = self._env.overrides()
        if not overrides:
            return base
        merged = _deep_merge(base.model_dump(), overrides)
        try:
            return ToolConfig(**merged)
        except PydanticValidationError as e:
            raise ConfigurationError(
                "Invalid value in environment variables",
                hint="Check PG_*, S3_BUCKET_*, AWS_* and MAX_RETRIES in your environment or .env",
                details=[
                    f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                    for err in e.errors()
                ],
            ) from e

    @property
    def config(self) -> ToolConfig:
        """Get the merged configuration."""
        return self._config

    @property
    def env(self) -> EnvSettings:
        """Get the environment settings."""
        return self._env

    @property
    def postgres(self) -> PostgresConfig:
        """Shortcut to PostgreSQL config."""
        return self._config.postgres

    @property
    def cloud(self) -> CloudConfig:
        """Shortcut to cloud config."""
        return self._config.cloud

    @property
    def restore(self) -> RestoreConfig:
        """Shortcut to restore config."""
        return self._config.restore

    @property
    def dbeaver(self) -> DBeaverConfig:
        """Shortcut to DBeaver config."""
        return self._config.dbeaver

    @property
    def pg_password(self) -> Optional[str]:
        """PostgreSQL password from PG_PASSWORD (falls back to PGPASSWORD)."""
        return self._env.pg_password or os.environ.get("PGPASSWORD")

    def configured_environments(self) -> list[str]:
        """Environments that have a bucket configured, in fixed order."""
        return [
            env for env in ENVIRONMENTS
            if self._config.cloud.environments[env].bucket
        ]

    def select_cloud(self, profile: str, environment: str) -> CloudSelection:
        """Resolve the bucket and region for a profile/environment pair.

        Raises:
            ConfigurationError: If the environment is unknown or has no bucket
        """
        if environment not in ENVIRONMENTS:
            raise ConfigurationError(
                f"Unknown environment: {environment}",
                hint=f"Use one of: {', '.join(ENVIRONMENTS)}",
            )
        env_config = self._config.cloud.environments[environment]
        if not env_config.bucket:
            raise ConfigurationError(
                f"No S3 bucket configured for environment '{environment}'",
                hint=f"Set S3_BUCKET_{environment.upper()} in your environment or .env",
            )
        return CloudSelection(
            profile=profile,
            environment=environment,
            bucket=env_config.bucket,
            region=env_config.region,
        )


def _load_env() -> EnvSettings:
    try:
        return EnvSettings()
    except PydanticValidationError as e:
        raise ConfigurationError(
            "Invalid value in environment variables",
            hint="Check PG_PORT and MAX_RETRIES are integers",
            details=[
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                for err in e.errors()
            ],
        ) from e


def get_example_config() -> str:
    """Generate example configuration file content."""
    return """# DB Restore Configuration
# Secrets are loaded from environment variables, NOT stored here
# Every value can be overridden from the environment or a .env file

# Target PostgreSQL server (PG_HOST, PG_PORT, PG_USER; password: PG_PASSWORD)
postgres:
  host: localhost
  port: 5432
  user: postgres

# S3 backup locations (S3_BUCKET_DEV, AWS_REGION_DEV, ..., AWS_PROFILES)
cloud:
  profiles:
    - dev
    - stage
    - prod
    - default
  environments:
    dev:
      bucket: my-dev-backups
      region: ap-south-1
    stage:
      bucket: my-stage-backups
      region: eu-south-1
    prod:
      bucket: my-prod-backups
      region: eu-south-1

# Restore behaviour (LOCAL_TEMP_DIR, MAX_RETRIES)
restore:
  max_retries: 3
  default_policy: create-new-dated  # create-new-named, restore-existing, replace-existing

# DBeaver connection registration
dbeaver:
  enabled: true
  folder_style: default  # default, ubuntu
  # workspace: ~/.local/share/DBeaverData/workspace6
"""


def init_config(path: Path, force: bool = False) -> None:
    """Initialize a new configuration file.

    Args:
        path: Path to create config file
        force: Overwrite if exists

    Raises:
        ConfigurationError: If file exists and force is False
    """
    if path.exists() and not force:
        raise ConfigurationError(
            f"Configuration file already exists: {path}",
            hint="Use --force to overwrite",
        )

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(get_example_config())
    os.chmod(path, 0o600)
