"""
Hugging Face repository inspection and multi-file fetch.

Lists a repository's files, picks exactly one compiled subtree (variants of
the same model share component file names, so subtrees are never merged) and
downloads it file by file into the canonical layout.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests

from .config import InstallerConfig
from .downloader import (
    BytesCallback,
    CancelToken,
    Downloader,
    ProgressCallback,
    ProgressReporter,
)
from .errors import DownloadFailed, NoInstallablePayloadFound
from .fsutils import is_safe_relative_path, is_within, place_file, remove_quietly
from .sources import ARCHIVE_EXTENSIONS

logger = logging.getLogger(__name__)

SUBTREE_CANDIDATES = ("split_einsum/compiled/", "original/compiled/")
GENERIC_COMPILED_PREFIX = "compiled/"


@dataclass(frozen=True)
class RepoEntry:
    """A path in a repository listing."""

    path: str
    is_file: bool = True


@dataclass
class RepoSelection:
    """Either one compiled subtree or a single nested archive."""

    prefix: Optional[str] = None
    files: List[str] = field(default_factory=list)
    archive_path: Optional[str] = None

    @property
    def is_archive(self) -> bool:
        return self.archive_path is not None

    def relative_path(self, remote_path: str) -> str:
        """Destination-relative path: the remote path minus the chosen prefix."""
        if self.prefix and remote_path.startswith(self.prefix):
            return remote_path[len(self.prefix):]
        return remote_path.rsplit("/", 1)[-1]


def candidate_prefixes(default_subdir: str) -> List[str]:
    """Ordered, de-duplicated subtree prefixes to try."""
    default = default_subdir.strip("/") + "/" if default_subdir.strip("/") else ""
    ordered: List[str] = []
    for prefix in (*SUBTREE_CANDIDATES, default, GENERIC_COMPILED_PREFIX):
        if prefix and prefix not in ordered:
            ordered.append(prefix)
    return ordered


class HuggingFaceRepoResolver:
    """Resolves and fetches compiled resources from a Hugging Face repository."""

    def __init__(
        self,
        config: Optional[InstallerConfig] = None,
        downloader: Optional[Downloader] = None,
    ) -> None:
        self.config = config or InstallerConfig()
        self.downloader = downloader or Downloader(self.config)

    @property
    def session(self) -> requests.Session:
        return self.downloader.session

    @property
    def endpoint(self) -> str:
        return self.config.hf_endpoint.rstrip("/")

    def resolve_url(self, repo_id: str, path: str) -> str:
        return f"{self.endpoint}/{repo_id}/resolve/main/{path}"

    # ------------------------------------------------------------------ listing
    def list_entries(self, repo_id: str) -> List[RepoEntry]:
        """Recursive tree listing, falling back to the siblings listing."""
        entries = self._list_tree(repo_id)
        if not entries:
            logger.info("Tree listing for %s unavailable; using siblings", repo_id)
            entries = self._list_siblings(repo_id)

        seen: Dict[str, RepoEntry] = {}
        for entry in entries:
            seen.setdefault(entry.path, entry)
        return list(seen.values())

    def _get_json(self, url: str) -> Any:
        response = self.session.get(url, timeout=self.config.request_timeout)
        if not 200 <= response.status_code < 300:
            raise DownloadFailed(url, status_code=response.status_code)
        return response.json()

    def _list_tree(self, repo_id: str) -> List[RepoEntry]:
        url = f"{self.endpoint}/api/models/{repo_id}/tree/main?recursive=1"
        try:
            data = self._get_json(url)
        except (requests.RequestException, DownloadFailed, ValueError) as exc:
            logger.debug("Tree listing failed for %s: %s", repo_id, exc)
            return []
        if not isinstance(data, list):
            return []
        entries = []
        for item in data:
            if not isinstance(item, dict) or not item.get("path"):
                continue
            entries.append(
                RepoEntry(path=item["path"], is_file=item.get("type", "file") == "file")
            )
        return entries

    def _list_siblings(self, repo_id: str) -> List[RepoEntry]:
        url = f"{self.endpoint}/api/models/{repo_id}"
        try:
            data = self._get_json(url)
        except (requests.RequestException, ValueError) as exc:
            raise DownloadFailed(url, cause=exc) from exc
        siblings = data.get("siblings", []) if isinstance(data, dict) else []
        return [
            RepoEntry(path=s["rfilename"])
            for s in siblings
            if isinstance(s, dict) and s.get("rfilename")
        ]

    # ---------------------------------------------------------------- selection
    def select(
        self, repo_id: str, entries: List[RepoEntry], default_subdir: str = "compiled"
    ) -> RepoSelection:
        """Pick one compiled subtree, else one nested archive."""
        files = []
        for entry in entries:
            if not entry.is_file:
                continue
            if not is_safe_relative_path(entry.path):
                logger.warning("Ignoring unsafe path %r in %s", entry.path, repo_id)
                continue
            files.append(entry.path)
        for prefix in candidate_prefixes(default_subdir):
            matching = sorted({p for p in files if p.startswith(prefix)})
            if matching:
                logger.info(
                    "Selected subtree %s (%d files) from %s", prefix, len(matching), repo_id
                )
                return RepoSelection(prefix=prefix, files=matching)

        for path in files:
            if ("split_einsum/" in path or "compiled" in path) and path.lower().endswith(
                ARCHIVE_EXTENSIONS
            ):
                logger.info("No compiled subtree in %s; using archive %s", repo_id, path)
                return RepoSelection(archive_path=path)

        raise NoInstallablePayloadFound(repo_id)

    def resolve(self, repo_id: str, default_subdir: str = "compiled") -> RepoSelection:
        return self.select(repo_id, self.list_entries(repo_id), default_subdir)

    # -------------------------------------------------------------------- fetch
    def fetch(
        self,
        repo_id: str,
        selection: RepoSelection,
        destination: Path,
        on_progress: Optional[ProgressCallback] = None,
        on_bytes: Optional[BytesCallback] = None,
        cancel: Optional[CancelToken] = None,
    ) -> List[Path]:
        """Download every selected file below ``destination``.

        Each file weighs the same in the overall fraction. Files whose path
        would land outside ``destination`` are skipped. Returns the paths
        written (which may carry a ``.dup_`` suffix after a collision).
        """
        if selection.is_archive or not selection.files:
            raise NoInstallablePayloadFound(repo_id)

        reporter = ProgressReporter(on_progress)
        total = len(selection.files)
        destination.mkdir(parents=True, exist_ok=True)
        written: List[Path] = []
        reporter.emit(0.0)

        try:
            for index, remote_path in enumerate(selection.files):
                relative = selection.relative_path(remote_path)
                target = destination / relative
                if not is_safe_relative_path(relative) or not is_within(target, destination):
                    logger.warning("Skipping %s: resolves outside %s", remote_path, destination)
                    reporter.emit((index + 1) / total)
                    continue
                temp = destination / f".incoming-{index}"

                def _file_progress(fraction: float, _done: int = index) -> None:
                    reporter.emit((_done + fraction) / total)

                try:
                    self.downloader.fetch(
                        self.resolve_url(repo_id, remote_path),
                        temp,
                        on_progress=_file_progress,
                        on_bytes=on_bytes,
                        cancel=cancel,
                        min_bytes=0,
                    )
                    written.append(place_file(temp, target))
                finally:
                    remove_quietly(temp)
                reporter.emit((index + 1) / total)
        except BaseException:
            reporter.close()
            raise

        reporter.finish()
        return written
