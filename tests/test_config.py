"""
Tests for deployment configuration loading.
"""

import pytest
from stratus.config import DeploymentConfig, config_from_dict, load_config
from stratus.config.deployment import ENVIRONMENT_VARIABLE
from stratus.core.errors import ConfigError

CONFIG_YAML = """
name: demo
environment: staging
account:
  account_id: "123456789012"
  region: ap-south-1
service_resources:
  ecr_repo_name: demo-service-ecr-repo
  image_count: 10
service:
  service_name: DemoService
  container_port: 3000
pipeline:
  owner: Demo
  repository: demo-service
  kms_key_id: 0ecdd329-key
"""


@pytest.fixture(autouse=True)
def _no_environment_override(monkeypatch):
    monkeypatch.delenv(ENVIRONMENT_VARIABLE, raising=False)


class TestLoadConfig:
    """Tests for load_config."""

    def test_load_yaml(self, tmp_path):
        """A YAML file is validated into a DeploymentConfig."""
        path = tmp_path / "deploy.yaml"
        path.write_text(CONFIG_YAML)

        config = load_config(path)

        assert isinstance(config, DeploymentConfig)
        assert config.environment == "staging"
        assert config.service.container_port == 3000
        assert config.service_resources.image_count == 10
        assert config.source_repository == "demo-service"
        # defaults
        assert config.network.vpc_cidr == "10.0.0.0/16"
        assert config.pipeline.branch == "main"
        assert config.pipeline.trigger_on_push is False

    def test_environment_override(self, tmp_path, monkeypatch):
        """STRATUS_ENVIRONMENT overrides the file's environment."""
        path = tmp_path / "deploy.yaml"
        path.write_text(CONFIG_YAML)
        monkeypatch.setenv(ENVIRONMENT_VARIABLE, "production")

        assert load_config(path).environment == "production"

    def test_missing_file(self, tmp_path):
        """Unreadable files raise ConfigError."""
        with pytest.raises(ConfigError, match="Cannot read"):
            load_config(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, tmp_path):
        """Malformed YAML raises ConfigError."""
        path = tmp_path / "deploy.yaml"
        path.write_text("name: [unclosed\n")

        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(path)

    def test_non_mapping(self, tmp_path):
        """The document must be a mapping."""
        path = tmp_path / "deploy.yaml"
        path.write_text("- a\n- b\n")

        with pytest.raises(ConfigError, match="mapping"):
            load_config(path)

    def test_missing_required_section(self, tmp_path):
        """The ECR repository is required."""
        path = tmp_path / "deploy.yaml"
        path.write_text("name: demo\n")

        with pytest.raises(ConfigError, match="service_resources"):
            load_config(path)


class TestValidation:
    """Tests for model validation rules."""

    def _config(self, **sections):
        data = {"service_resources": {"ecr_repo_name": "demo-service-ecr-repo"}}
        data.update(sections)
        return config_from_dict(data)

    def test_unknown_field_rejected(self):
        """Typos in section keys are errors, not silently ignored."""
        with pytest.raises(ConfigError):
            self._config(service={"servce_name": "Typo"})

    def test_subnets_must_match_zones(self):
        """Each zone needs one public and one private subnet."""
        with pytest.raises(ConfigError, match="subnet"):
            self._config(network={"availability_zones": ["ap-south-1a"]})

    def test_memory_soft_limit(self):
        """The soft memory limit cannot exceed the hard limit."""
        with pytest.raises(ConfigError):
            self._config(service={
                "container_memory_hard_limit_mib": 512,
                "container_memory_soft_limit_mib": 1024,
            })

    def test_autoscaling_bounds(self):
        """The group maximum cannot be below its minimum."""
        with pytest.raises(ConfigError):
            self._config(workload={"min_size": 3, "max_size": 1})

    def test_image_count_optional(self):
        """Lifecycle retention can be disabled."""
        config = self._config(service_resources={"ecr_repo_name": "repo", "image_count": None})

        assert config.service_resources.image_count is None

    def test_source_repository_defaults_to_ecr_repo(self):
        """Without a pipeline repository, the ECR repository name is used."""
        assert self._config().source_repository == "demo-service-ecr-repo"
