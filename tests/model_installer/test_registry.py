import json
import os
from pathlib import Path

import pytest

from fakes import MODEL_FILES, prefixed, write_tree

from velocity.model_installer import registry as registry_module
from velocity.model_installer.registry import ModelRegistry, validate_model_id


def _install(registry, model_id, files=MODEL_FILES):
    return write_tree(registry.root / model_id, files)


def test_enumerate_lists_only_valid_visible_models(registry):
    _install(registry, "zeta-model")
    _install(registry, "alpha-model", prefixed("compiled"))
    _install(registry, "half-done", {"Unet.mlmodelc/model.mil": b"x"})
    _install(registry, ".hidden", MODEL_FILES)
    _install(registry, "stable-diffusion-coreml")
    (registry.root / "stray.txt").write_text("x")

    models = registry.enumerate()

    assert [m.id for m in models] == ["alpha-model", "zeta-model"]
    assert models[0].display_name == "Alpha Model"
    assert all(m.has_compiled_resources and m.has_vae_component for m in models)


def test_enumerate_skips_directories_with_unusable_names(registry):
    _install(registry, "good")
    _install(registry, "odd\\name")

    assert [m.id for m in registry.enumerate()] == ["good"]
    with pytest.raises(ValueError):
        registry.delete("odd\\name")


def test_enumerate_empty_root(registry):
    assert registry.enumerate() == []


def test_size_is_sum_of_regular_files(registry):
    path = _install(registry, "sized", {"a.mlmodelc/x": b"12345", "VAE.mlmodelc/y": b"123"})

    assert registry.size_of("sized") == 8
    assert registry.inspect("sized").size_bytes == 8
    (path / "extra.bin").write_bytes(b"12")
    assert registry.inspect("sized").size_bytes == 10


def test_active_pointer_round_trip(registry):
    assert registry.get_active() is None

    registry.set_active("some-model")
    assert registry.get_active() == "some-model"
    assert json.loads(registry.state_path.read_text())["active_model_id"] == "some-model"

    registry.clear_active()
    assert registry.get_active() is None


def test_set_active_does_not_require_install(registry):
    registry.set_active("not-installed")
    assert registry.get_active() == "not-installed"
    assert registry.resolve_active_resources_path() is None


def test_corrupt_state_file_reads_as_unset(registry):
    registry.state_path.write_text("{not json")
    assert registry.get_active() is None


def test_resolve_active_prefers_compiled_subdir(registry):
    _install(registry, "active-one", prefixed("compiled"))
    registry.set_active("active-one")

    assert registry.resolve_active_resources_path() == registry.root / "active-one" / "compiled"


def test_resolve_falls_back_to_legacy_directory(registry):
    legacy = _install(registry, "stable-diffusion-coreml")

    assert registry.resolve_active_resources_path() == legacy

    registry.set_active("vanished")
    assert registry.resolve_active_resources_path() == legacy


def test_delete_removes_directory_and_clears_pointer(registry):
    _install(registry, "doomed")
    _install(registry, "keeper")
    registry.set_active("doomed")

    registry.delete("doomed")

    assert not (registry.root / "doomed").exists()
    assert registry.get_active() is None
    assert [m.id for m in registry.enumerate()] == ["keeper"]


def test_delete_keeps_pointer_for_other_models(registry):
    _install(registry, "doomed")
    registry.set_active("keeper")

    registry.delete("doomed")

    assert registry.get_active() == "keeper"


def test_delete_missing_model_raises(registry):
    with pytest.raises(FileNotFoundError):
        registry.delete("ghost")


def test_publish_replaces_previous_install(registry):
    _install(registry, "model", {"old.txt": b"old"})
    staging = registry.new_staging_dir("install")
    write_tree(staging)

    target = registry.publish(staging, "model")

    assert target == registry.root / "model"
    assert not (target / "old.txt").exists()
    assert (target / "merges.txt").exists()
    assert not staging.exists()
    assert not any(p.name.startswith("retired-") for p in registry.staging_root.iterdir())


def _refuse_staging_rename(monkeypatch, staging):
    real_replace = os.replace

    def fake_replace(src, dst):
        if Path(src) == staging:
            raise OSError("cross-device link")
        return real_replace(src, dst)

    monkeypatch.setattr(registry_module.os, "replace", fake_replace)


def test_publish_copies_when_rename_fails(registry, monkeypatch):
    _install(registry, "model", {"old.txt": b"old"})
    staging = registry.new_staging_dir("install")
    write_tree(staging)
    _refuse_staging_rename(monkeypatch, staging)

    target = registry.publish(staging, "model")

    assert (target / "merges.txt").exists()
    assert not (target / "old.txt").exists()
    assert not staging.exists()
    assert [p.name for p in registry.root.iterdir() if p.name.startswith(".incoming")] == []


def test_interrupted_copy_is_never_listed(registry, monkeypatch):
    _install(registry, "kept")
    staging = registry.new_staging_dir("install")
    write_tree(staging)
    _refuse_staging_rename(monkeypatch, staging)

    def partial_copytree(src, dst, **kwargs):
        write_tree(Path(dst))
        raise OSError("disk full")

    monkeypatch.setattr(registry_module.shutil, "copytree", partial_copytree)

    with pytest.raises(OSError):
        registry.publish(staging, "fresh")
    with pytest.raises(OSError):
        registry.publish(staging, "kept")

    assert not (registry.root / "fresh").exists()
    assert [m.id for m in registry.enumerate()] == ["kept"]
    assert [p.name for p in registry.root.iterdir() if p.name.startswith(".incoming")] == []


def test_retain_failed_moves_staging_aside(registry):
    staging = registry.new_staging_dir("install")
    write_tree(staging, {"partial.txt": b"x"})

    kept = registry.retain_failed(staging, "broken")

    assert kept == registry.staging_root / "broken.failed"
    assert (kept / "partial.txt").exists()
    assert not staging.exists()


@pytest.mark.parametrize("bad", ["", ".", "..", "a/b", "a\\b", ".staging", "__MACOSX"])
def test_invalid_model_ids(bad):
    with pytest.raises(ValueError):
        validate_model_id(bad)


def test_registry_creates_root(tmp_path):
    root = tmp_path / "fresh" / "models"
    ModelRegistry(root)
    assert root.is_dir()
