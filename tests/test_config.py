import os
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from shipline.config import (
    DEFAULT_INGRESS_INSTALL_SOURCE,
    LogLevel,
    PipelineConfig,
    Settings,
    get_settings,
)


class TestSettings:
    """Test Settings configuration loading and validation."""

    def test_default_settings(self):
        settings = Settings(_env_file=None)

        assert settings.api_title == "shipline API"
        assert settings.api_version == "0.3.0"
        assert settings.allow_origins == ["*"]
        assert settings.kubectl == "kubectl"
        assert settings.docker == "docker"
        assert settings.namespace == "default"
        assert settings.max_surge == 0
        assert settings.max_unavailable == 1
        assert settings.ingress_install_source == DEFAULT_INGRESS_INSTALL_SOURCE

    @patch.dict(
        os.environ,
        {
            "SHIPLINE_API_TITLE": "Custom API Title",
            "SHIPLINE_LOG_LEVEL": "debug",
            "SHIPLINE_SIMULATE": "true",
            "SHIPLINE_NAMESPACE": "staging",
            "SHIPLINE_ROLLOUT_TIMEOUT": "42",
            "SHIPLINE_CLUSTER_NAME": "multi-cluster",
        },
    )
    def test_environment_override(self):
        """Test that environment variables override defaults."""
        settings = Settings(_env_file=None)

        assert settings.api_title == "Custom API Title"
        assert settings.log_level == LogLevel.DEBUG
        assert settings.simulate is True
        assert settings.namespace == "staging"
        assert settings.rollout_timeout == 42.0
        assert settings.cluster_name == "multi-cluster"

    @patch.dict(os.environ, {"SHIPLINE_LOG_LEVEL": "LOUD"})
    def test_invalid_log_level(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None)

    def test_get_settings_is_cached(self):
        assert get_settings() is get_settings()


class TestPipelineConfig:
    """Test the frozen per-run configuration."""

    def test_pipeline_config_from_settings(self):
        settings = Settings(
            _env_file=None,
            project="acme-prod",
            location="europe-west4-a",
            cluster_name="multi-cluster",
            namespace="prod",
            gate_timeout=30,
            max_surge=1,
        )
        config = settings.pipeline_config()

        assert isinstance(config, PipelineConfig)
        assert config.namespace == "prod"
        assert config.gate_timeout == 30
        assert config.max_surge == 1
        assert config.cluster_label == "acme-prod/europe-west4-a/multi-cluster"

    def test_pipeline_config_is_immutable(self):
        config = PipelineConfig()
        with pytest.raises(ValidationError):
            config.namespace = "other"

    def test_cluster_label_defaults_to_current_context(self):
        assert PipelineConfig().cluster_label == "current-context"

    def test_intervals_must_be_positive(self):
        with pytest.raises(ValidationError):
            PipelineConfig(gate_interval=0)
        with pytest.raises(ValidationError):
            PipelineConfig(rollout_timeout=-1)
