import zipfile

import pytest

from fakes import MODEL_FILES, prefixed, write_zip

from velocity.model_installer.archive import ArchiveExtractor
from velocity.model_installer.errors import ExtractionFailed


def test_extract_writes_entries_and_reports_per_entry(tmp_path):
    archive = write_zip(tmp_path / "model.zip", prefixed("Model"), directories=["Model"])
    progress = []

    count = ArchiveExtractor().extract(archive, tmp_path / "out", on_progress=progress.append)

    assert count == len(MODEL_FILES) + 1
    assert (tmp_path / "out" / "Model" / "VAEDecoder.mlmodelc" / "model.mil").read_bytes() == (
        b"vae-decoder"
    )
    assert len(progress) == count
    assert progress[-1] == 1.0
    assert progress == sorted(progress)


def test_corrupt_archive_fails(tmp_path):
    archive = tmp_path / "broken.zip"
    archive.write_bytes(b"PK\x03\x04 definitely not a zip")

    with pytest.raises(ExtractionFailed):
        ArchiveExtractor().extract(archive, tmp_path / "out")


def test_html_error_page_is_not_an_archive(tmp_path):
    archive = tmp_path / "payload.zip"
    archive.write_text("<html>Google Drive - Virus scan warning</html>")

    with pytest.raises(ExtractionFailed, match="not a zip archive"):
        ArchiveExtractor().check(archive)


def test_empty_archive_fails(tmp_path):
    archive = write_zip(tmp_path / "empty.zip", {})

    with pytest.raises(ExtractionFailed, match="empty"):
        ArchiveExtractor().extract(archive, tmp_path / "out")


def test_missing_archive_fails(tmp_path):
    with pytest.raises(ExtractionFailed, match="does not exist"):
        ArchiveExtractor().check(tmp_path / "nope.zip")


@pytest.mark.parametrize("name", ["../escape.txt", "/etc/passwd", "a/../../b.txt", "C:/x.txt"])
def test_unsafe_member_paths_are_rejected(tmp_path, name):
    archive = tmp_path / "evil.zip"
    with zipfile.ZipFile(archive, "w") as zf:
        zf.writestr(name, b"payload")

    with pytest.raises(ExtractionFailed, match="unsafe"):
        ArchiveExtractor().extract(archive, tmp_path / "out")

    assert not (tmp_path / "escape.txt").exists()
