"""
Model installer for Velocity

Turns a model locator (direct archive URL, single Core ML model file, Google
Drive share link or Hugging Face repository) into a verified model directory
that the on-device Stable Diffusion pipeline can load.

This package provides:
- Locator classification into fetch strategies
- Streaming downloads with progress and cancellation
- ZIP extraction and normalisation of arbitrary archive layouts
- Selection of a single compiled subtree from Hugging Face repositories
- A registry of installed models with an active-model pointer
- Import of local archives, model files, bundles and directories
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .installer import InstallManager, ModelInstaller  # pragma: no cover
    from .registry import InstalledModel, ModelRegistry  # pragma: no cover
    from .config import InstallerConfig  # pragma: no cover
    from .sources import resolve_source  # pragma: no cover

_LAZY = {
    "ModelInstaller": ".installer",
    "InstallManager": ".installer",
    "ModelRegistry": ".registry",
    "InstalledModel": ".registry",
    "InstallerConfig": ".config",
    "resolve_source": ".sources",
}


def __getattr__(name):
    module_name = _LAZY.get(name)
    if module_name is None:
        raise AttributeError(name)
    from importlib import import_module

    return getattr(import_module(module_name, __name__), name)


__version__ = "0.1.0"
__all__ = [
    "ModelInstaller",
    "InstallManager",
    "ModelRegistry",
    "InstalledModel",
    "InstallerConfig",
    "resolve_source",
]
