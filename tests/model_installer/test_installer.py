import threading

import pytest

from fakes import MODEL_FILES, FakeResponse, prefixed, write_tree, write_zip, zip_bytes

from velocity.model_installer.catalog import ModelDescriptor, custom_descriptor, get_descriptor
from velocity.model_installer.downloader import CancelToken
from velocity.model_installer.errors import (
    DownloadFailed,
    ExtractionFailed,
    InstallCancelled,
    InvalidPayload,
    NoInstallablePayloadFound,
    UnsupportedSource,
    VerificationFailed,
)
from velocity.model_installer.installer import (
    InstallManager,
    InstallOperation,
    InstallStage,
    ModelInstaller,
    classify_local,
    local_model_id,
)
from velocity.model_installer.layout import find_resources_dir, is_valid_install

ARCHIVE_URL = "https://example.com/files/dreamshaper.zip"
NO_VAE = {k: v for k, v in MODEL_FILES.items() if not k.startswith("VAEDecoder")}


def _descriptor(model_id="dreamshaper", locator=ARCHIVE_URL):
    return ModelDescriptor(model_id, model_id, "test model", "1 GB", locator)


def _stages(events):
    stages = []
    for event in events:
        if not stages or stages[-1] != event.stage:
            stages.append(event.stage)
    return stages


def _staging_contents(registry):
    if not registry.staging_root.exists():
        return []
    return sorted(p.name for p in registry.staging_root.iterdir())


def test_archive_install_lists_model_and_cleans_up(installer, registry, session):
    session.add(ARCHIVE_URL, FakeResponse(zip_bytes(prefixed("DreamShaper/split_einsum/compiled"))))
    events = []

    installed = installer.install(_descriptor(), listener=events.append)

    assert installed.id == "dreamshaper"
    assert installed.is_valid
    assert [m.id for m in registry.enumerate()] == ["dreamshaper"]
    assert find_resources_dir(installed.root_path) == installed.root_path / "compiled"
    assert _staging_contents(registry) == []
    assert _stages(events) == [
        InstallStage.RESOLVING,
        InstallStage.FETCHING,
        InstallStage.EXTRACTING,
        InstallStage.LOCATING,
        InstallStage.VERIFYING,
        InstallStage.INSTALLED,
    ]
    assert events[-1].fraction == 1.0


def _assert_overall_progress(events, succeeded=True):
    fractions = [event.fraction for event in events]
    assert fractions[0] >= 0.0
    assert fractions == sorted(fractions)
    if succeeded:
        assert fractions[-1] == 1.0
        assert fractions.count(1.0) == 1
        assert events[-1].stage == InstallStage.INSTALLED
    else:
        assert 1.0 not in fractions
        assert events[-1].stage == InstallStage.FAILED


def test_archive_install_reports_single_overall_progress(installer, session):
    session.add(ARCHIVE_URL, FakeResponse(zip_bytes(prefixed("Model")), chunk_size=32))
    events = []

    installer.install(_descriptor(), listener=events.append)

    _assert_overall_progress(events)
    assert any(e.stage == InstallStage.EXTRACTING and e.stage_fraction == 1.0 for e in events)


def test_import_reports_single_overall_progress(installer, tmp_path):
    source = write_tree(tmp_path / "Folder")
    events = []

    installer.import_path(source, listener=events.append)

    _assert_overall_progress(events)


def test_failed_install_never_reports_completion(installer, session):
    session.add(ARCHIVE_URL, FakeResponse(zip_bytes(NO_VAE)))
    events = []

    with pytest.raises(VerificationFailed):
        installer.install(_descriptor(), listener=events.append)

    _assert_overall_progress(events, succeeded=False)


def test_byte_counters_reach_listener_without_content_length(installer, session):
    body = zip_bytes(MODEL_FILES)
    session.add(ARCHIVE_URL, FakeResponse(body, headers={}, chunk_size=64))
    events = []

    installer.install(_descriptor(), listener=events.append)

    fetched = [e.bytes_written for e in events if e.stage == InstallStage.FETCHING]
    assert fetched[-1] == len(body)
    assert len(set(fetched)) > 2
    assert all(e.bytes_expected == 0 for e in events if e.stage == InstallStage.FETCHING)


def test_first_install_becomes_active(installer, registry, session):
    session.add(ARCHIVE_URL, FakeResponse(zip_bytes(MODEL_FILES)))

    installer.install(_descriptor())

    assert registry.get_active() == "dreamshaper"
    resolved = registry.resolve_active_resources_path()
    assert resolved == registry.root / "dreamshaper"
    assert is_valid_install(resolved)


def test_existing_active_model_is_kept(installer, registry, session):
    registry.set_active("other")
    session.add(ARCHIVE_URL, FakeResponse(zip_bytes(MODEL_FILES)))

    installer.install(_descriptor())

    assert registry.get_active() == "other"


def test_activation_can_be_disabled(registry, installer_config, downloader, hf_resolver, session):
    session.add(ARCHIVE_URL, FakeResponse(zip_bytes(MODEL_FILES)))
    quiet = ModelInstaller(
        registry,
        config=installer_config,
        downloader=downloader,
        hf_resolver=hf_resolver,
        activate_if_unset=False,
    )

    quiet.install(_descriptor())

    assert registry.get_active() is None


def test_reinstall_replaces_previous_content(installer, registry, session):
    session.add(ARCHIVE_URL, FakeResponse(zip_bytes({**MODEL_FILES, "old-notes.txt": b"v1"})))
    installer.install(_descriptor())
    session.add(ARCHIVE_URL, FakeResponse(zip_bytes(MODEL_FILES)))

    installed = installer.install(_descriptor())

    assert not (installed.root_path / "old-notes.txt").exists()
    assert [m.id for m in registry.enumerate()] == ["dreamshaper"]


def test_html_payload_fails_extraction_without_listing(installer, registry, session):
    session.add(ARCHIVE_URL, FakeResponse(b"<html>" + b"quota exceeded " * 10 + b"</html>"))
    events = []

    with pytest.raises(ExtractionFailed):
        installer.install(_descriptor(), listener=events.append)

    assert registry.enumerate() == []
    assert not (registry.root / "dreamshaper").exists()
    assert _staging_contents(registry) == []
    assert events[-1].stage == InstallStage.FAILED
    assert registry.get_active() is None


def test_tiny_payload_is_invalid(installer, installer_config, registry, session):
    installer_config.min_payload_bytes = 100 * 1024
    session.add(ARCHIVE_URL, FakeResponse(zip_bytes(MODEL_FILES)))

    with pytest.raises(InvalidPayload):
        installer.install(_descriptor())

    assert registry.enumerate() == []


def test_http_failure_is_reported(installer, registry, session):
    session.add(ARCHIVE_URL, FakeResponse(b"gone", status_code=404))

    with pytest.raises(DownloadFailed):
        installer.install(_descriptor())

    assert _staging_contents(registry) == []


def test_archive_without_vae_is_retained_for_inspection(installer, registry, session):
    session.add(ARCHIVE_URL, FakeResponse(zip_bytes(prefixed("Model", NO_VAE))))

    with pytest.raises(VerificationFailed) as excinfo:
        installer.install(_descriptor())

    assert excinfo.value.merged
    assert excinfo.value.path == registry.staging_root / "dreamshaper.failed"
    assert _staging_contents(registry) == ["dreamshaper.failed"]
    assert registry.enumerate() == []


def test_failed_reinstall_keeps_previous_install(installer, registry, session):
    session.add(ARCHIVE_URL, FakeResponse(zip_bytes(MODEL_FILES)))
    installer.install(_descriptor())
    session.add(ARCHIVE_URL, FakeResponse(zip_bytes(NO_VAE)))

    with pytest.raises(VerificationFailed):
        installer.install(_descriptor())

    assert [m.id for m in registry.enumerate()] == ["dreamshaper"]


def test_google_drive_locator(installer, registry, session):
    session.add(
        "https://drive.google.com/uc?export=download&id=FILE123&confirm=t",
        FakeResponse(zip_bytes(MODEL_FILES)),
    )

    installer.install(
        custom_descriptor(
            "https://drive.google.com/file/d/FILE123/view?usp=sharing", model_id="drive-model"
        )
    )

    assert registry.is_installed("drive-model")


def test_huggingface_repo_installs_single_subtree(installer, registry, session):
    descriptor = get_descriptor("coreml-stable-diffusion-2-1-base")
    repo = descriptor.locator
    tree = [{"type": "file", "path": f"original/compiled/{name}"} for name in MODEL_FILES]
    tree += [{"type": "file", "path": f"split_einsum/compiled/{name}"} for name in MODEL_FILES]
    session.add(f"https://hf.test/api/models/{repo}/tree/main?recursive=1", FakeResponse(tree))
    for name, data in MODEL_FILES.items():
        session.add(
            f"https://hf.test/{repo}/resolve/main/split_einsum/compiled/{name}",
            FakeResponse(data),
        )
    events = []

    installed = installer.install(descriptor, listener=events.append)

    assert (installed.root_path / "Unet.mlmodelc" / "model.mil").read_bytes() == b"unet"
    assert not any("original/" in url for url in session.calls)
    assert find_resources_dir(installed.root_path) == installed.root_path
    assert InstallStage.EXTRACTING not in _stages(events)


def test_huggingface_repo_archive_fallback(installer, registry, session):
    repo = "someone/sd-model"
    session.add(
        f"https://hf.test/api/models/{repo}/tree/main?recursive=1",
        FakeResponse([{"type": "file", "path": "split_einsum/model.zip"}]),
    )
    session.add(
        f"https://hf.test/{repo}/resolve/main/split_einsum/model.zip",
        FakeResponse(zip_bytes(prefixed("model/compiled"))),
    )

    installed = installer.install(custom_descriptor(repo))

    assert installed.id == "someone-sd-model"
    assert (installed.root_path / "compiled" / "merges.txt").exists()


def test_huggingface_repo_without_payload(installer, registry, session):
    repo = "someone/weights-only"
    session.add(
        f"https://hf.test/api/models/{repo}/tree/main?recursive=1",
        FakeResponse([{"type": "file", "path": "model.safetensors"}]),
    )

    with pytest.raises(NoInstallablePayloadFound) as excinfo:
        installer.install(custom_descriptor(repo))

    assert excinfo.value.reason == "no_installable_payload"
    assert registry.enumerate() == []


def test_single_model_file_is_compiled(installer, registry, session, compiler):
    url = "https://example.com/models/VAEDecoder.mlmodel"
    session.add(url, FakeResponse(b"mlmodel-spec" * 4))

    installed = installer.install(_descriptor("vae-only", url))

    assert len(compiler.calls) == 1
    assert (installed.root_path / "VAEDecoder.mlmodelc" / "model.mil").exists()
    assert _staging_contents(registry) == []


def test_unsupported_locator_fails_before_fetching(installer, session):
    events = []

    with pytest.raises(UnsupportedSource):
        installer.install(_descriptor(locator="https://example.com/index.html"), events.append)

    assert session.calls == []
    assert _stages(events) == [InstallStage.RESOLVING, InstallStage.FAILED]


def test_invalid_model_id_is_rejected(installer, session):
    with pytest.raises(UnsupportedSource):
        installer.install(_descriptor(model_id="../escape"))
    assert session.calls == []


def test_cancelled_before_start(installer, registry, session):
    token = CancelToken()
    token.cancel()
    session.add(ARCHIVE_URL, FakeResponse(zip_bytes(MODEL_FILES)))

    with pytest.raises(InstallCancelled):
        installer.install(_descriptor(), cancel=token)

    assert session.calls == []
    assert registry.enumerate() == []


# ---------------------------------------------------------------- local import


def test_import_local_archive(installer, registry, tmp_path):
    archive = write_zip(tmp_path / "downloads" / "Deliberate.zip", prefixed("Deliberate"))

    installed = installer.import_path(archive)

    assert installed.id == "Deliberate"
    assert archive.exists()
    assert registry.is_installed("Deliberate")


def test_import_directory_with_override_id(installer, registry, tmp_path):
    source = write_tree(tmp_path / "MyModel")

    installed = installer.import_path(source, model_id="renamed")

    assert installed.id == "renamed"
    assert (installed.root_path / "Unet.mlmodelc").is_dir()
    assert (source / "Unet.mlmodelc").is_dir()


def test_import_bundle(installer, registry, tmp_path):
    bundle = write_tree(tmp_path / "VAEDecoder.mlmodelc", {"model.mil": b"x"})

    installed = installer.import_path(bundle)

    assert installed.id == "VAEDecoder"
    assert (installed.root_path / "VAEDecoder.mlmodelc" / "model.mil").exists()


def test_import_model_file_compiles(installer, compiler, tmp_path):
    model = tmp_path / "AutoencoderKL.mlmodel"
    model.write_bytes(b"spec")

    installed = installer.import_path(model)

    assert compiler.calls == [model]
    assert installed.id == "AutoencoderKL"
    assert installed.is_valid


def test_import_bundle_without_vae_fails(installer, registry, tmp_path):
    bundle = write_tree(tmp_path / "Unet.mlmodelc", {"model.mil": b"x"})

    with pytest.raises(VerificationFailed):
        installer.import_path(bundle)

    assert registry.enumerate() == []
    assert _staging_contents(registry) == []


def test_import_rejects_unrecognised_paths(installer, tmp_path):
    empty = tmp_path / "EmptyDir"
    empty.mkdir()
    text = tmp_path / "notes.txt"
    text.write_text("x")

    with pytest.raises(UnsupportedSource):
        installer.import_path(empty)
    with pytest.raises(UnsupportedSource):
        installer.import_path(text)
    with pytest.raises(UnsupportedSource):
        installer.import_path(tmp_path / "missing.zip")


def test_local_helpers(tmp_path):
    assert local_model_id(tmp_path / "Model.zip") == "Model"
    assert local_model_id(tmp_path / "Unet.mlmodelc") == "Unet"
    assert local_model_id(tmp_path / "some.dir") == "some.dir"

    bundle = write_tree(tmp_path / "X.mlmodelc", {"model.mil": b"x"})
    assert classify_local(bundle) == "bundle"


# ------------------------------------------------------------------ operation


def test_operation_rejects_backward_transitions():
    op = InstallOperation("m")
    op.advance(InstallStage.FETCHING)
    with pytest.raises(RuntimeError):
        op.advance(InstallStage.RESOLVING)
    op.succeed()
    with pytest.raises(RuntimeError):
        op.advance(InstallStage.VERIFYING)


def test_operation_cleanup_removes_tracked_paths(tmp_path):
    op = InstallOperation("m")
    kept = op.track(tmp_path / "kept")
    gone = op.track(tmp_path / "gone")
    kept.mkdir()
    gone.mkdir()
    op.release(kept)

    op.cleanup()

    assert kept.exists()
    assert not gone.exists()


# -------------------------------------------------------------------- manager


def test_manager_runs_installs_in_background(installer, registry, session):
    session.add(ARCHIVE_URL, FakeResponse(zip_bytes(MODEL_FILES)))

    with InstallManager(installer, max_workers=2) as manager:
        future = manager.submit(_descriptor())
        installed = future.result(timeout=10)

    assert installed.id == "dreamshaper"
    assert manager.in_flight() == []


def test_manager_rejects_duplicates_and_cancels(installer, registry, session):
    session.add(ARCHIVE_URL, FakeResponse(zip_bytes(MODEL_FILES)))
    started = threading.Event()
    release = threading.Event()

    def listener(event):
        if event.stage == InstallStage.RESOLVING:
            started.set()
            release.wait(timeout=10)

    manager = InstallManager(installer, max_workers=2)
    try:
        future = manager.submit(_descriptor(), listener)
        assert started.wait(timeout=10)

        with pytest.raises(ValueError):
            manager.submit(_descriptor())
        assert manager.in_flight() == ["dreamshaper"]
        assert manager.cancel("dreamshaper") is True
        assert manager.cancel("unknown") is False

        release.set()
        with pytest.raises(InstallCancelled):
            future.result(timeout=10)
    finally:
        release.set()
        manager.shutdown(wait=True)

    assert manager.in_flight() == []
    assert registry.enumerate() == []
    assert _staging_contents(registry) == []
