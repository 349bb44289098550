"""Configuration management for the runtime adapter.

This module centralizes environment-driven configuration for the adapter
sidecar. It builds on ``pydantic_settings.BaseSettings`` so configuration can
be provided via environment variables, ``.env`` files, or defaults.

Highlights
- Strongly-typed settings with sensible defaults
- One place to discover the environment variables the adapter reads
- A small service-specific subclass to keep concerns clear

Usage
- Inject the config in the service entrypoint:
  ``config = RuntimeAdapterConfig()``
- Or select dynamically: ``config = get_config("runtime-adapter")``
"""

from pathlib import Path
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

MANAGED_MODEL_SUBDIR = "_runtime_models"


class BaseConfig(BaseSettings):
    """Base configuration class for all services.

    Parameters are read from the process environment with the given names.
    Defaults keep local development convenient while still being explicit.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        protected_namespaces=(),
    )

    # Environment
    ml_env: str = Field(default="local", env="ML_ENV")

    # Logging
    ml_log_level: str = Field(default="INFO", env="ML_LOG_LEVEL")
    ml_log_format: str = Field(default="json", env="ML_LOG_FORMAT")


class RuntimeAdapterConfig(BaseConfig):
    """Configuration for the runtime adapter sidecar.

    Extends ``BaseConfig`` with the ports of the adapter and its backend,
    memory accounting knobs and the on-disk locations the adapter owns.
    """

    adapter_port: int = Field(default=8085, env="ADAPTER_PORT")
    runtime_port: int = Field(default=8888, env="RUNTIME_PORT")
    runtime_host: str = Field(default="localhost", env="RUNTIME_HOST")

    # Memory accounting
    container_mem_req_bytes: int = Field(default=0, env="CONTAINER_MEM_REQ_BYTES")
    mem_buffer_bytes: int = Field(default=256 * 1024 * 1024, env="MEM_BUFFER_BYTES")
    model_size_multiplier: float = Field(default=1.25, gt=1.0, env="MODEL_SIZE_MULTIPLIER")
    default_model_size_bytes: int = Field(default=1_000_000, env="DEFAULT_MODEL_SIZE_BYTES")

    # Filesystem
    model_config_file: str = Field(default="/models/model_config_list.json", env="MODEL_CONFIG_FILE")
    root_model_dir: str = Field(default="/models", env="ROOT_MODEL_DIR")
    link_artifacts: bool = Field(default=False, env="LINK_ARTIFACTS")
    cleanup_on_unload: bool = Field(default=True, env="CLEANUP_ON_UNLOAD")

    # Loading behaviour advertised to the mesh and applied to requests
    loadtime_timeout_ms: int = Field(default=90_000, env="LOADTIME_TIMEOUT_MS")
    max_loading_concurrency: int = Field(default=1, env="MAX_LOADING_CONCURRENCY")
    runtime_version: str = Field(default="", env="RUNTIME_VERSION")

    # Backend reload
    reload_timeout_seconds: float = Field(default=30.0, env="RELOAD_TIMEOUT_SECONDS")
    reload_verify_attempts: int = Field(default=1, ge=1, env="RELOAD_VERIFY_ATTEMPTS")
    reload_verify_delay_seconds: float = Field(default=1.0, env="RELOAD_VERIFY_DELAY_SECONDS")

    @property
    def runtime_base_url(self) -> str:
        return f"http://{self.runtime_host}:{self.runtime_port}"

    @property
    def managed_model_root(self) -> Path:
        """Directory under which the adapter places backend-ready model trees."""
        return Path(self.root_model_dir) / MANAGED_MODEL_SUBDIR

    @property
    def capacity_bytes(self) -> int:
        """Memory available to models once the backend's own overhead is reserved."""
        return self.container_mem_req_bytes - self.mem_buffer_bytes


def get_config(service_name: str) -> BaseConfig:
    """Get configuration for a specific service.

    Parameters
    - service_name: ``runtime-adapter``; anything else yields ``BaseConfig``.
    """
    config_map = {
        "runtime-adapter": RuntimeAdapterConfig,
    }

    # Default to ``BaseConfig`` to avoid surprising crashes for unknown names.
    config_class = config_map.get(service_name, BaseConfig)
    return config_class()

