"""Tests for imaginator.core.config — configuration management.

Tests cover:
- Default values for the configuration fields.
- Environment variable overrides via the IMAGINATOR_ prefix.
- Automatic creation of the images directory.
- Pydantic validation constraints (port ranges, log level literals).
"""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from imaginator.core.config import ImaginatorConfig


def _clean_env(monkeypatch) -> None:
    for name in (
        "IMAGINATOR_BACKEND_HOST",
        "IMAGINATOR_BACKEND_PORT",
        "IMAGINATOR_SERVER_PORT",
        "IMAGINATOR_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)


class TestConfigDefaults:
    """Verify that ImaginatorConfig provides sensible defaults."""

    def test_backend_defaults(self, monkeypatch, temp_dir: Path):
        """The backend is expected on the local ComfyUI port."""
        _clean_env(monkeypatch)
        cfg = ImaginatorConfig(images_dir=temp_dir / "images", _env_file=None)
        assert cfg.backend_host == "127.0.0.1"
        assert cfg.backend_port == 8188
        assert cfg.backend_base_url == "http://127.0.0.1:8188"

    def test_server_defaults(self, monkeypatch, temp_dir: Path):
        _clean_env(monkeypatch)
        cfg = ImaginatorConfig(images_dir=temp_dir / "images", _env_file=None)
        assert cfg.server_port == 3001
        assert cfg.log_level == "INFO"

    def test_lifecycle_defaults(self, test_config: ImaginatorConfig):
        """Completed jobs live an hour; sweeps run every fifteen minutes."""
        assert test_config.completed_job_max_age == 3600
        assert test_config.prune_interval == 900

    def test_default_checkpoint(self, test_config: ImaginatorConfig):
        assert test_config.default_checkpoint == "sd_xl_base_1.0.safetensors"
        assert test_config.images_url_prefix == "/api/images"


class TestConfigEnvironment:
    """Verify IMAGINATOR_* environment overrides."""

    def test_backend_override(self, monkeypatch, temp_dir: Path):
        monkeypatch.setenv("IMAGINATOR_BACKEND_HOST", "gpu-box")
        monkeypatch.setenv("IMAGINATOR_BACKEND_PORT", "8189")
        cfg = ImaginatorConfig(images_dir=temp_dir / "images", _env_file=None)
        assert cfg.backend_base_url == "http://gpu-box:8189"

    def test_case_insensitive(self, monkeypatch, temp_dir: Path):
        monkeypatch.setenv("imaginator_server_port", "8080")
        cfg = ImaginatorConfig(images_dir=temp_dir / "images", _env_file=None)
        assert cfg.server_port == 8080

    def test_kwargs_beat_environment(self, monkeypatch, temp_dir: Path):
        monkeypatch.setenv("IMAGINATOR_BACKEND_HOST", "gpu-box")
        cfg = ImaginatorConfig(
            images_dir=temp_dir / "images", backend_host="other", _env_file=None
        )
        assert cfg.backend_host == "other"


class TestConfigDirectoryCreation:
    def test_images_dir_created(self, temp_dir: Path):
        target = temp_dir / "deep" / "images"
        ImaginatorConfig(images_dir=target, _env_file=None)
        assert target.is_dir()


class TestConfigValidation:
    @pytest.mark.parametrize("port", [80, 70000])
    def test_server_port_range(self, temp_dir: Path, port: int):
        with pytest.raises(ValidationError):
            ImaginatorConfig(images_dir=temp_dir / "images", server_port=port, _env_file=None)

    def test_backend_port_range(self, temp_dir: Path):
        with pytest.raises(ValidationError):
            ImaginatorConfig(images_dir=temp_dir / "images", backend_port=0, _env_file=None)

    def test_log_level_literal(self, temp_dir: Path):
        with pytest.raises(ValidationError):
            ImaginatorConfig(images_dir=temp_dir / "images", log_level="LOUD", _env_file=None)

    def test_timeouts_positive(self, temp_dir: Path):
        with pytest.raises(ValidationError):
            ImaginatorConfig(images_dir=temp_dir / "images", backend_timeout=0, _env_file=None)
