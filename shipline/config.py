"""
shipline Configuration Module.

This module provides configuration management for shipline using Pydantic
Settings. Process-wide settings come from the environment (and an optional
``.env`` file); the subset a pipeline run needs is frozen into a
``PipelineConfig`` value that the controller threads explicitly through every
component, so no step reads ambient global state.

Environment Variables (all prefixed with SHIPLINE_):
    API_TITLE / API_VERSION: FastAPI metadata
    LOG_LEVEL: Logging level (default: INFO)
    ALLOW_ORIGINS: CORS allowed origins (default: ["*"])
    SIMULATE: Run against the in-memory cluster and registry (default: false)
    KUBECTL / DOCKER: Binaries used by the cluster and registry clients
    KUBE_CONTEXT: kubectl context to target (default: current context)
    CLUSTER_NAME / PROJECT / LOCATION: Cluster identifiers, reported in logs
    NAMESPACE: Namespace for application resources (default: default)
    REGISTRY: Registry prefix for artifacts without an explicit repository
    INGRESS_*: Ingress controller coordinates and install source
    GATE_* / ROLLOUT_* / ENDPOINT_*: Poll intervals and timeouts (seconds)
    MAX_SURGE / MAX_UNAVAILABLE: Rolling update parameters (default: 0 / 1)

Author: Nosa Omorodion
Version: 0.3.0
"""

import logging
from enum import Enum
from functools import lru_cache
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_INGRESS_INSTALL_SOURCE = (
    "https://raw.githubusercontent.com/kubernetes/ingress-nginx/"
    "controller-v1.8.2/deploy/static/provider/cloud/deploy.yaml"
)


class LogLevel(str, Enum):
    """Supported log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class PipelineConfig(BaseModel):
    """
    Immutable configuration for one pipeline run.

    Attributes:
        cluster_name / project / location: Identify the target cluster
        namespace: Namespace application resources and rollouts live in
        ingress_*: Where the ingress controller lives and how to install it
        gate_interval / gate_timeout: Ingress readiness gate polling
        rollout_interval / rollout_timeout: Per-target rollout wait
        endpoint_interval / endpoint_timeout: External address polling
        max_surge / max_unavailable: Rolling update parameters patched onto targets
    """

    model_config = ConfigDict(frozen=True)

    cluster_name: Optional[str] = None
    project: Optional[str] = None
    location: Optional[str] = None
    namespace: str = "default"

    ingress_class: str = "nginx"
    ingress_namespace: str = "ingress-nginx"
    ingress_controller_deployment: str = "ingress-nginx-controller"
    ingress_admission_service: str = "ingress-nginx-controller-admission"
    ingress_install_source: str = DEFAULT_INGRESS_INSTALL_SOURCE

    gate_interval: float = Field(5.0, gt=0)
    gate_timeout: float = Field(300.0, ge=0)
    rollout_interval: float = Field(5.0, gt=0)
    rollout_timeout: float = Field(300.0, ge=0)
    endpoint_interval: float = Field(10.0, gt=0)
    endpoint_timeout: float = Field(600.0, ge=0)

    max_surge: int = Field(0, ge=0)
    max_unavailable: int = Field(1, ge=0)

    @property
    def cluster_label(self) -> str:
        parts = [p for p in (self.project, self.location, self.cluster_name) if p]
        return "/".join(parts) or "current-context"


class Settings(BaseSettings):
    """
    Application configuration settings.

    Manages process-wide configuration for the trigger API, the operator CLI
    and the clients they construct.

    Configuration:
        - Environment variables are prefixed with "SHIPLINE_"
        - Configuration can be loaded from .env file
        - All fields have sensible defaults for development
    """

    # Basic API configuration
    api_title: str = Field(default="shipline API", description="Title for the FastAPI application")
    api_version: str = Field(default="0.3.0", description="Version string for the API")
    allow_origins: List[str] = Field(default=["*"], description="CORS allowed origins list")
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")

    # External tooling
    simulate: bool = Field(default=False, description="Use the in-memory cluster and registry")
    kubectl: str = Field(default="kubectl", description="kubectl binary")
    docker: str = Field(default="docker", description="docker binary")
    kube_context: Optional[str] = Field(default=None, description="kubectl context")
    command_timeout: float = Field(default=600.0, gt=0, description="Per-command timeout")

    # Cluster identity and placement
    cluster_name: Optional[str] = None
    project: Optional[str] = None
    location: Optional[str] = None
    namespace: str = "default"
    registry: Optional[str] = Field(default=None, description="Registry prefix, e.g. docker.io/acme")

    # Ingress controller
    ingress_class: str = "nginx"
    ingress_namespace: str = "ingress-nginx"
    ingress_controller_deployment: str = "ingress-nginx-controller"
    ingress_admission_service: str = "ingress-nginx-controller-admission"
    ingress_install_source: str = DEFAULT_INGRESS_INSTALL_SOURCE

    # Polling budgets
    gate_interval: float = 5.0
    gate_timeout: float = 300.0
    rollout_interval: float = 5.0
    rollout_timeout: float = 300.0
    endpoint_interval: float = 10.0
    endpoint_timeout: float = 600.0
    max_surge: int = 0
    max_unavailable: int = 1

    model_config = SettingsConfigDict(
        env_prefix="SHIPLINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def validate_log_level(cls, v) -> str:
        """Validate and normalize log level configuration."""
        if isinstance(v, str):
            return v.upper()
        return v

    def pipeline_config(self) -> PipelineConfig:
        """Freeze the run-relevant settings into a PipelineConfig."""
        return PipelineConfig(
            **self.model_dump(include=set(PipelineConfig.model_fields))
        )

    def log_configuration(self) -> None:
        """Log current configuration for debugging."""
        config_info = {
            "api_version": self.api_version,
            "log_level": self.log_level.value,
            "simulate": self.simulate,
            "kube_context": self.kube_context,
            "namespace": self.namespace,
            "registry": self.registry,
        }
        logging.getLogger("shipline").info(
            "Configuration loaded successfully", extra={"config": config_info}
        )


@lru_cache()
def get_settings() -> Settings:
    """Create cached settings instance to avoid repeated environment variable reads."""
    return Settings()


settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.value),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger("shipline")
settings.log_configuration()
