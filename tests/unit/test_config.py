"""Unit tests for configuration loading and environment overrides."""

from pathlib import Path

import pytest
import yaml

from dbrestore.core.config import (
    AppConfig,
    EnvSettings,
    ToolConfig,
    get_example_config,
    init_config,
)
from dbrestore.core.exceptions import ConfigurationError


ENV_VARS = (
    "PG_HOST", "PG_PORT", "PG_USER", "PG_PASSWORD", "PGPASSWORD",
    "S3_BUCKET_DEV", "S3_BUCKET_STAGE", "S3_BUCKET_PROD",
    "AWS_REGION_DEV", "AWS_REGION_STAGE", "AWS_REGION_PROD",
    "AWS_PROFILES", "LOCAL_TEMP_DIR", "MAX_RETRIES",
)


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> pytest.MonkeyPatch:
    """Clear overrides and run where no .env file exists."""
    for var in ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)
    return monkeypatch


class TestToolConfig:
    """Tests for ToolConfig."""

    def test_defaults(self):
        """Should provide working defaults."""
        config = ToolConfig()
        assert config.postgres.host == "localhost"
        assert config.postgres.port == 5432
        assert config.restore.max_retries == 3
        assert config.restore.default_policy == "create-new-dated"
        assert set(config.cloud.environments) == {"dev", "stage", "prod"}
        assert config.cloud.environments["dev"].region == "ap-south-1"

    def test_load_yaml(self, tmp_path: Path):
        """Should load and merge a partial file."""
        path = tmp_path / "config.yaml"
        path.write_text(
            "postgres:\n  port: 6432\n"
            "cloud:\n  environments:\n    dev:\n      bucket: dev-bucket\n"
        )
        config = ToolConfig.load(path)
        assert config.postgres.port == 6432
        assert config.cloud.environments["dev"].bucket == "dev-bucket"
        assert config.cloud.environments["prod"].bucket is None

    def test_missing_file(self, tmp_path: Path):
        """Should raise with a hint when the file is missing."""
        with pytest.raises(ConfigurationError) as exc:
            ToolConfig.load(tmp_path / "missing.yaml")
        assert "config init" in exc.value.hint

    def test_invalid_yaml(self, tmp_path: Path):
        """Should report YAML syntax errors."""
        path = tmp_path / "config.yaml"
        path.write_text("postgres: [unclosed\n")
        with pytest.raises(ConfigurationError):
            ToolConfig.load(path)

    @pytest.mark.parametrize("content", [
        "postgres:\n  port: 70000\n",
        "restore:\n  max_retries: 0\n",
        "restore:\n  default_policy: overwrite\n",
        "cloud:\n  environments:\n    qa: {}\n",
        "dbeaver:\n  folder_style: fancy\n",
    ])
    def test_invalid_values(self, tmp_path: Path, content: str):
        """Should reject out-of-range values."""
        path = tmp_path / "config.yaml"
        path.write_text(content)
        with pytest.raises(ConfigurationError) as exc:
            ToolConfig.load(path)
        assert exc.value.details

    def test_example_is_valid(self, tmp_path: Path):
        """Should ship an example that loads cleanly."""
        data = yaml.safe_load(get_example_config())
        config = ToolConfig(**data)
        assert config.cloud.profiles == ["dev", "stage", "prod", "default"]
        assert config.cloud.environments["stage"].bucket == "my-stage-backups"


class TestAppConfig:
    """Tests for AppConfig with environment overrides."""

    def test_env_overrides(self, clean_env: pytest.MonkeyPatch, tmp_path: Path):
        """Should apply PG_*, S3_BUCKET_* and MAX_RETRIES over the file."""
        clean_env.setenv("PG_HOST", "db.internal")
        clean_env.setenv("PG_PORT", "6543")
        clean_env.setenv("S3_BUCKET_STAGE", "stage-backups")
        clean_env.setenv("AWS_REGION_STAGE", "us-east-1")
        clean_env.setenv("MAX_RETRIES", "5")
        clean_env.setenv("PG_PASSWORD", "secret")

        config = AppConfig(config_path=tmp_path / "missing.yaml")

        assert config.postgres.host == "db.internal"
        assert config.postgres.port == 6543
        assert config.restore.max_retries == 5
        assert config.pg_password == "secret"
        assert config.configured_environments() == ["stage"]
        selection = config.select_cloud("default", "stage")
        assert selection.bucket == "stage-backups"
        assert selection.region == "us-east-1"

    def test_profiles_from_env(self, clean_env: pytest.MonkeyPatch, tmp_path: Path):
        """Should split AWS_PROFILES on commas."""
        clean_env.setenv("AWS_PROFILES", "ops, backup")
        config = AppConfig(config_path=tmp_path / "missing.yaml")
        assert config.cloud.profiles == ["ops", "backup"]

    def test_invalid_env_value(self, clean_env: pytest.MonkeyPatch, tmp_path: Path):
        """Should turn bad environment values into ConfigurationError."""
        clean_env.setenv("MAX_RETRIES", "many")
        with pytest.raises(ConfigurationError):
            AppConfig(config_path=tmp_path / "missing.yaml")

    def test_pgpassword_fallback(self, clean_env: pytest.MonkeyPatch, tmp_path: Path):
        """Should fall back to libpq's PGPASSWORD."""
        clean_env.setenv("PGPASSWORD", "libpq-secret")
        config = AppConfig(config_path=tmp_path / "missing.yaml")
        assert config.pg_password == "libpq-secret"

    def test_select_unconfigured_environment(self):
        """Should refuse an environment without a bucket."""
        config = AppConfig(config=ToolConfig(), env=EnvSettings.model_construct())
        with pytest.raises(ConfigurationError) as exc:
            config.select_cloud("default", "prod")
        assert "S3_BUCKET_PROD" in exc.value.hint

    def test_select_unknown_environment(self):
        """Should refuse environments outside dev, stage and prod."""
        config = AppConfig(config=ToolConfig(), env=EnvSettings.model_construct())
        with pytest.raises(ConfigurationError):
            config.select_cloud("default", "qa")


class TestInitConfig:
    """Tests for init_config()."""

    def test_creates_file(self, tmp_path: Path):
        """Should write the example with private permissions."""
        path = tmp_path / "sub" / "config.yaml"
        init_config(path)
        assert path.read_text() == get_example_config()
        assert path.stat().st_mode & 0o777 == 0o600

    def test_refuses_overwrite(self, tmp_path: Path):
        """Should not overwrite without force."""
        path = tmp_path / "config.yaml"
        path.write_text("old")
        with pytest.raises(ConfigurationError):
            init_config(path)
        init_config(path, force=True)
        assert path.read_text() != "old"
