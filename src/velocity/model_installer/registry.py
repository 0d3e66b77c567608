"""On-disk catalog of installed models.

Layout::

    <root>/
        <model-id>/            one directory per installed model
        .staging/              private per-operation scratch space
        .velocity_state.json   {"active_model_id": "..."}

A directory is an installed model only while it passes
:func:`~velocity.model_installer.layout.is_valid_install`; hidden entries are
never listed. Each registry instance owns the root it was constructed with.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .config import LEGACY_MODEL_ID
from .fsutils import directory_size, is_metadata_name, remove_quietly, visible_children
from .layout import (
    contains_compiled_resources,
    find_resources_dir,
    has_vae_component,
)

logger = logging.getLogger(__name__)

_ACTIVE_KEY = "active_model_id"


def display_name_for(model_id: str) -> str:
    return model_id.replace("-", " ").title()


@dataclass
class InstalledModel:
    id: str
    root_path: Path
    has_compiled_resources: bool
    has_vae_component: bool

    @property
    def display_name(self) -> str:
        return display_name_for(self.id)

    @property
    def size_bytes(self) -> int:
        # Computed on every access; installs can be replaced underneath us
        return directory_size(self.root_path)

    @property
    def is_valid(self) -> bool:
        return self.has_compiled_resources and self.has_vae_component


class ModelRegistry:
    """Installed models under one root directory."""

    def __init__(
        self,
        root: Path,
        state_path: Optional[Path] = None,
        legacy_id: str = LEGACY_MODEL_ID,
        staging_dirname: str = ".staging",
    ) -> None:
        self.root = Path(root).expanduser()
        self.state_path = state_path or self.root / ".velocity_state.json"
        self.legacy_id = legacy_id
        self.staging_root = self.root / staging_dirname
        self.root.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_config(cls, config) -> "ModelRegistry":
        return cls(
            config.models_root,
            state_path=config.resolved_state_path,
            legacy_id=config.legacy_model_id,
            staging_dirname=config.staging_dirname,
        )

    # ---------------------------------------------------------------- paths
    def model_path(self, model_id: str) -> Path:
        validate_model_id(model_id)
        return self.root / model_id

    def inspect(self, model_id: str) -> InstalledModel:
        path = self.model_path(model_id)
        return InstalledModel(
            id=model_id,
            root_path=path,
            has_compiled_resources=contains_compiled_resources(path),
            has_vae_component=has_vae_component(path),
        )

    # ---------------------------------------------------------- enumeration
    def enumerate(self) -> List[InstalledModel]:
        models: List[InstalledModel] = []
        for child in visible_children(self.root):
            if not child.is_dir() or child.name == self.legacy_id:
                continue
            try:
                model = self.inspect(child.name)
            except ValueError:
                logger.debug("Skipping %s: not a usable model id", child.name)
                continue
            if model.is_valid:
                models.append(model)
        return sorted(models, key=lambda m: m.display_name)

    def is_installed(self, model_id: str) -> bool:
        return any(m.id == model_id for m in self.enumerate())

    def size_of(self, model_id: str) -> int:
        return directory_size(self.model_path(model_id))

    # -------------------------------------------------------- active pointer
    def _read_state(self) -> dict:
        try:
            data = json.loads(self.state_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable state file %s: %s", self.state_path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def _write_state(self, state: dict) -> None:
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.state_path.with_name(f"{self.state_path.name}.{uuid.uuid4().hex}.tmp")
        tmp.write_text(json.dumps(state, indent=2), encoding="utf-8")
        os.replace(tmp, self.state_path)

    def get_active(self) -> Optional[str]:
        value = self._read_state().get(_ACTIVE_KEY)
        return value or None

    def set_active(self, model_id: str) -> None:
        """Persist the pointer; existence is checked at resolution time."""
        state = self._read_state()
        state[_ACTIVE_KEY] = model_id
        self._write_state(state)

    def clear_active(self) -> None:
        state = self._read_state()
        if state.pop(_ACTIVE_KEY, None) is not None:
            self._write_state(state)

    def resolve_active_resources_path(self) -> Optional[Path]:
        """Directory for inference, or ``None`` when nothing usable exists."""
        active = self.get_active()
        if active:
            try:
                base = self.model_path(active)
            except ValueError:
                logger.warning("Ignoring malformed active model id %r", active)
            else:
                if base.is_dir():
                    return find_resources_dir(base)
                logger.info("Active model %s is missing; trying legacy fallback", active)

        legacy = self.root / self.legacy_id
        if legacy.is_dir():
            return find_resources_dir(legacy)
        return None

    # --------------------------------------------------------------- removal
    def delete(self, model_id: str) -> None:
        """Remove the whole model directory; filesystem errors propagate."""
        path = self.model_path(model_id)
        shutil.rmtree(path)
        logger.info("Deleted model %s", model_id)
        if self.get_active() == model_id:
            self.clear_active()

    # --------------------------------------------------------------- staging
    def new_staging_dir(self, prefix: str) -> Path:
        self.staging_root.mkdir(parents=True, exist_ok=True)
        path = self.staging_root / f"{prefix}-{uuid.uuid4().hex}"
        path.mkdir()
        return path

    def publish(self, staging: Path, model_id: str) -> Path:
        """Swap a fully written staging directory into place at ``model_id``.

        Old content is renamed aside first so the id path switches in one
        rename. If the rename route fails the staged tree is copied into a
        hidden sibling, which replaces the old directory only once complete.
        """
        target = self.model_path(model_id)
        retired: Optional[Path] = None
        try:
            if target.exists():
                retired = self.staging_root / f"retired-{model_id}-{uuid.uuid4().hex}"
                os.replace(target, retired)
            os.replace(staging, target)
        except OSError as exc:
            logger.warning("Atomic publish of %s failed (%s); copying", model_id, exc)
            if retired is not None and retired.exists() and not target.exists():
                os.replace(retired, target)
                retired = None
            self._publish_by_copy(staging, target)
        finally:
            remove_quietly(retired)
        logger.info("Published model %s", model_id)
        return target

    def _publish_by_copy(self, staging: Path, target: Path) -> None:
        incoming = self.root / f".incoming-{target.name}-{uuid.uuid4().hex}"
        try:
            shutil.copytree(staging, incoming, symlinks=True)
            remove_quietly(target)
            os.replace(incoming, target)
        finally:
            remove_quietly(incoming)
        remove_quietly(staging)

    def retain_failed(self, staging: Path, model_id: str) -> Path:
        """Keep a failed install's content for manual inspection."""
        self.staging_root.mkdir(parents=True, exist_ok=True)
        keep = self.staging_root / f"{model_id}.failed"
        remove_quietly(keep)
        os.replace(staging, keep)
        logger.warning("Kept incomplete install of %s at %s", model_id, keep)
        return keep


def validate_model_id(model_id: str) -> str:
    """Model ids are single path components that are not hidden."""
    if (
        not model_id
        or model_id in (".", "..")
        or "/" in model_id
        or "\\" in model_id
        or is_metadata_name(model_id)
    ):
        raise ValueError(f"Invalid model id: {model_id!r}")
    return model_id
