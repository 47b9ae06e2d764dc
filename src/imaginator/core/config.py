"""Configuration management for the Imaginator service.

All configuration is loaded from environment variables with the
``IMAGINATOR_`` prefix using Pydantic Settings, so deployments can point the
service at a different generation backend without code changes.

Environment Variable Loading
-----------------------------
Configuration values are loaded in the following priority order:

1. Environment variables (``IMAGINATOR_*`` prefix)
2. ``.env`` file in the working directory
3. Default values defined in :class:`ImaginatorConfig`

Example ``.env`` file::

    IMAGINATOR_BACKEND_HOST=192.168.1.20
    IMAGINATOR_BACKEND_PORT=8188
    IMAGINATOR_IMAGES_DIR=output/images
    IMAGINATOR_SERVER_PORT=3001

Global Configuration Instance
------------------------------
A global ``config`` instance is created at import time and used by
:mod:`imaginator.api.main`.  Tests build their own instances with temporary
directories instead of touching the global one.

Directory Management
--------------------
``images_dir`` is created on initialisation; stored artifacts are written
there by :class:`~imaginator.core.artifact_store.ArtifactStore`.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ImaginatorConfig(BaseSettings):
    """Main configuration for the Imaginator service.

    Attributes
    ----------
    Backend Settings:
        backend_host : str
            Hostname of the ComfyUI-compatible generation backend
        backend_port : int
            Port of the generation backend
        backend_timeout : float
            Timeout in seconds for backend REST calls
        health_timeout : float
            Timeout in seconds for the liveness probe
        default_checkpoint : str
            Checkpoint loaded when a request does not name a model

    Artifact Settings:
        images_dir : Path
            Directory where fetched artifacts are stored
        images_url_prefix : str
            Public URL prefix under which stored artifacts are served

    Job Lifecycle:
        prune_interval : float
            Seconds between two prune sweeps
        completed_job_max_age : float
            Age in seconds after which completed jobs are pruned

    Server Settings:
        server_host : str
            Bind address for uvicorn
        server_port : int
            Port for uvicorn (1024-65535)
        log_level : str
            Root log level applied by ``main()``

    Examples
    --------
        >>> custom = ImaginatorConfig(backend_host="gpu-box", backend_port=8189)
        >>> custom.backend_base_url
        'http://gpu-box:8189'
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="IMAGINATOR_",
        case_sensitive=False,
    )

    # Backend settings
    backend_host: str = Field(
        default="127.0.0.1",
        description="Hostname of the generation backend",
    )
    backend_port: int = Field(
        default=8188,
        description="Port of the generation backend",
        ge=1,
        le=65535,
    )
    backend_timeout: float = Field(
        default=30.0,
        description="Timeout in seconds for backend REST calls",
        gt=0,
    )
    health_timeout: float = Field(
        default=5.0,
        description="Timeout in seconds for the backend liveness probe",
        gt=0,
    )
    default_checkpoint: str = Field(
        default="sd_xl_base_1.0.safetensors",
        description="Checkpoint used when a request does not name a model",
    )

    # Artifact storage
    images_dir: Path = Field(
        default=Path("output/images"),
        description="Directory where generated images are stored",
    )
    images_url_prefix: str = Field(
        default="/api/images",
        description="Public URL prefix for stored images",
    )

    # Job lifecycle
    prune_interval: float = Field(
        default=15 * 60,
        description="Seconds between prune sweeps of completed jobs",
        gt=0,
    )
    completed_job_max_age: float = Field(
        default=60 * 60,
        description="Age in seconds after which completed jobs are pruned",
        gt=0,
    )

    # Server settings
    server_host: str = Field(
        default="0.0.0.0",
        description="Server bind address",
    )
    server_port: int = Field(
        default=3001,
        description="Server port",
        ge=1024,
        le=65535,
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Root log level",
    )

    def __init__(self, **kwargs):
        """Initialise configuration and create the images directory.

        Args:
            **kwargs: Configuration overrides (typically from tests).
        """
        super().__init__(**kwargs)
        self.images_dir.mkdir(parents=True, exist_ok=True)

    @property
    def backend_base_url(self) -> str:
        """HTTP base URL of the generation backend."""
        return f"http://{self.backend_host}:{self.backend_port}"


# Global configuration instance, loaded from IMAGINATOR_* variables and .env.
config = ImaginatorConfig()
