"""
Locator classification.

Maps a user supplied locator string onto a fetch strategy. Rules are applied
in the order of ``SOURCE_RULES``; the first rule that produces a locator wins.
"""

import re
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple, Union

from .errors import UnsupportedSource

ARCHIVE_EXTENSIONS = (".zip",)
MODEL_FILE_EXTENSIONS = (".mlmodel",)

GOOGLE_DRIVE_HOST = "drive.google.com"
HUGGINGFACE_HOST = "huggingface.co/"

_DRIVE_ID_PATTERN = re.compile(r"/d/([^/?#]+)")
_REPO_SHORTHAND_PATTERN = re.compile(r"^[\w.-]+/[\w.-]+$")


@dataclass(frozen=True)
class DirectArchive:
    url: str


@dataclass(frozen=True)
class DirectModelFile:
    url: str


@dataclass(frozen=True)
class GoogleDriveFile:
    file_id: str

    @property
    def download_url(self) -> str:
        return google_drive_download_url(self.file_id)


@dataclass(frozen=True)
class HuggingFaceRepo:
    repo_id: str

    @property
    def default_subdir(self) -> str:
        if self.repo_id.startswith("coreml-community/"):
            return "split_einsum/compiled"
        return "compiled"


Locator = Union[DirectArchive, DirectModelFile, GoogleDriveFile, HuggingFaceRepo]


def google_drive_download_url(file_id: str) -> str:
    """Direct-download endpoint; the viewer URL serves an HTML interstitial."""
    return f"https://drive.google.com/uc?export=download&id={file_id}&confirm=t"


def _is_url(value: str) -> bool:
    return value.startswith(("http://", "https://"))


def _path_part(value: str) -> str:
    """Strip query string and fragment for extension checks."""
    return value.split("#", 1)[0].split("?", 1)[0]


def extract_drive_file_id(locator: str) -> Optional[str]:
    match = _DRIVE_ID_PATTERN.search(locator)
    return match.group(1) if match else None


def extract_repo_id(locator: str) -> Optional[str]:
    """Return ``owner/repo`` from a Hugging Face URL or shorthand."""
    if HUGGINGFACE_HOST in locator:
        remainder = locator.split(HUGGINGFACE_HOST, 1)[1]
    elif not _is_url(locator):
        remainder = locator
    else:
        return None
    parts = [p for p in _path_part(remainder).split("/") if p]
    if len(parts) < 2:
        return None
    return f"{parts[0]}/{parts[1]}"


def _google_drive_rule(locator: str) -> Optional[Locator]:
    if GOOGLE_DRIVE_HOST not in locator:
        return None
    file_id = extract_drive_file_id(locator)
    if file_id:
        return GoogleDriveFile(file_id)
    if _is_url(locator):
        return DirectArchive(locator)
    raise UnsupportedSource(locator, "Google Drive link without a file id")


def _archive_rule(locator: str) -> Optional[Locator]:
    if _path_part(locator).lower().endswith(ARCHIVE_EXTENSIONS):
        return DirectArchive(locator)
    return None


def _model_file_rule(locator: str) -> Optional[Locator]:
    if _path_part(locator).lower().endswith(MODEL_FILE_EXTENSIONS):
        return DirectModelFile(locator)
    return None


def _huggingface_rule(locator: str) -> Optional[Locator]:
    if HUGGINGFACE_HOST in locator or (
        not _is_url(locator) and _REPO_SHORTHAND_PATTERN.match(locator)
    ):
        repo_id = extract_repo_id(locator)
        if repo_id:
            return HuggingFaceRepo(repo_id)
    return None


SOURCE_RULES: List[Tuple[str, Callable[[str], Optional[Locator]]]] = [
    ("google_drive", _google_drive_rule),
    ("archive", _archive_rule),
    ("model_file", _model_file_rule),
    ("huggingface", _huggingface_rule),
]


def resolve_source(locator: str) -> Locator:
    """Classify ``locator`` into a fetch strategy or raise ``UnsupportedSource``."""
    trimmed = (locator or "").strip()
    if not trimmed:
        raise UnsupportedSource(locator or "", "empty locator")
    for _name, rule in SOURCE_RULES:
        resolved = rule(trimmed)
        if resolved is not None:
            return resolved
    raise UnsupportedSource(trimmed)


def fetch_url(source: Locator) -> str:
    """URL to stream for single-payload sources."""
    if isinstance(source, GoogleDriveFile):
        return source.download_url
    if isinstance(source, (DirectArchive, DirectModelFile)):
        return source.url
    raise TypeError(f"{type(source).__name__} has no single fetch URL")
