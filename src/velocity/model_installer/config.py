"""
Configuration management for the model installer.

Handles the models root, staging and state paths, network settings and the
payload sanity threshold.
"""

import logging
import os
from pathlib import Path
from typing import Optional
import tomllib
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

LEGACY_MODEL_ID = "stable-diffusion-coreml"


@dataclass
class InstallerConfig:
    """Main configuration for the model installer."""

    models_root: Path = field(
        default_factory=lambda: Path("~/velocity/StableDiffusionModels").expanduser()
    )
    # Defaults to <models_root>/.velocity_state.json when unset
    state_path: Optional[Path] = None
    staging_dirname: str = ".staging"

    # Download settings
    min_payload_bytes: int = 100 * 1024
    chunk_size: int = 1024 * 1024
    request_timeout: int = 60
    user_agent: str = "Mozilla/5.0"
    hf_endpoint: str = "https://huggingface.co"

    legacy_model_id: str = LEGACY_MODEL_ID
    max_concurrent_installs: int = 2

    @property
    def resolved_state_path(self) -> Path:
        return self.state_path or self.models_root / ".velocity_state.json"

    @classmethod
    def from_pyproject(cls, pyproject_path: Optional[Path] = None) -> "InstallerConfig":
        """Load configuration from a pyproject.toml file."""
        if pyproject_path is None:
            pyproject_path = Path(__file__).parents[3] / "pyproject.toml"

        config = cls()

        try:
            with open(pyproject_path, "rb") as f:
                data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            logger.warning("Could not load config from %s: %s", pyproject_path, e)
            return config

        section = data.get("tool", {}).get("velocity", {}).get("model-installer", {})

        if "models_root" in section:
            config.models_root = Path(section["models_root"]).expanduser()
        if "state_path" in section:
            config.state_path = Path(section["state_path"]).expanduser()
        if "min_payload_bytes" in section:
            config.min_payload_bytes = int(section["min_payload_bytes"])
        if "chunk_size" in section:
            config.chunk_size = int(section["chunk_size"])
        if "request_timeout" in section:
            config.request_timeout = int(section["request_timeout"])
        if "hf_endpoint" in section:
            config.hf_endpoint = str(section["hf_endpoint"]).rstrip("/")
        if "max_concurrent_installs" in section:
            config.max_concurrent_installs = int(section["max_concurrent_installs"])

        return config

    @classmethod
    def from_env(cls, base: Optional["InstallerConfig"] = None) -> "InstallerConfig":
        """Apply environment overrides on top of ``base`` (or the defaults)."""
        config = base or cls()

        if "VELOCITY_MODELS_ROOT" in os.environ:
            config.models_root = Path(os.environ["VELOCITY_MODELS_ROOT"]).expanduser()

        if "VELOCITY_HF_ENDPOINT" in os.environ:
            config.hf_endpoint = os.environ["VELOCITY_HF_ENDPOINT"].rstrip("/")

        if "VELOCITY_MIN_PAYLOAD_BYTES" in os.environ:
            try:
                config.min_payload_bytes = int(os.environ["VELOCITY_MIN_PAYLOAD_BYTES"])
            except ValueError:
                logger.warning(
                    "Ignoring non-integer VELOCITY_MIN_PAYLOAD_BYTES=%r",
                    os.environ["VELOCITY_MIN_PAYLOAD_BYTES"],
                )

        return config

    @property
    def staging_root(self) -> Path:
        return self.models_root / self.staging_dirname

    def ensure_directories(self) -> None:
        """Create the models root and staging directories if missing."""
        for directory in (self.models_root, self.staging_root):
            directory.mkdir(parents=True, exist_ok=True)


# Global config instance (CLI convenience only)
_config_instance: Optional[InstallerConfig] = None


def get_config() -> InstallerConfig:
    """Get the global configuration instance."""
    global _config_instance
    if _config_instance is None:
        _config_instance = InstallerConfig.from_env(InstallerConfig.from_pyproject())
    return _config_instance


def set_config(config: Optional[InstallerConfig]) -> None:
    """Set (or reset with ``None``) the global configuration instance."""
    global _config_instance
    _config_instance = config
