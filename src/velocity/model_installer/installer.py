"""
Install orchestration.

An :class:`InstallOperation` walks ``IDLE → RESOLVING → FETCHING →
EXTRACTING → LOCATING → VERIFYING → INSTALLED`` (stages a source does not
need are skipped) or ends in ``FAILED``. Everything is written into private
staging directories under the registry root and swapped into place only
after verification, so a half-written model is never listed. Temporary
artifacts are removed on every exit path.
"""

from __future__ import annotations

import logging
import shutil
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Callable, Dict, List, Optional
from urllib.parse import unquote, urlsplit

from .archive import ArchiveExtractor
from .catalog import ModelDescriptor
from .compiler import CoreMLCompiler, ModelCompiler
from .config import InstallerConfig
from .downloader import CancelToken, Downloader
from .errors import (
    InstallCancelled,
    InstallError,
    UnsupportedSource,
    VerificationFailed,
)
from .fsutils import remove_quietly
from .hf_repo import HuggingFaceRepoResolver, RepoSelection
from .layout import (
    BUNDLE_EXTENSION,
    PayloadLocator,
    contains_compiled_resources,
    is_valid_install,
)
from .registry import InstalledModel, ModelRegistry
from .sources import (
    ARCHIVE_EXTENSIONS,
    MODEL_FILE_EXTENSIONS,
    DirectModelFile,
    HuggingFaceRepo,
    fetch_url,
    resolve_source,
)

logger = logging.getLogger(__name__)


class InstallStage(str, Enum):
    IDLE = "idle"
    RESOLVING = "resolving"
    FETCHING = "fetching"
    EXTRACTING = "extracting"
    LOCATING = "locating"
    VERIFYING = "verifying"
    INSTALLED = "installed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (InstallStage.INSTALLED, InstallStage.FAILED)


_STAGE_ORDER = list(InstallStage)

# Share of the overall fraction each working stage covers; INSTALLED alone reaches 1.0
_STAGE_SPANS = {
    InstallStage.RESOLVING: (0.0, 0.02),
    InstallStage.FETCHING: (0.02, 0.70),
    InstallStage.EXTRACTING: (0.70, 0.85),
    InstallStage.LOCATING: (0.85, 0.95),
    InstallStage.VERIFYING: (0.95, 0.99),
}


@dataclass
class ProgressEvent:
    """One listener notification.

    ``fraction`` is the overall progress of the operation: it starts at or
    above 0.0, never decreases, and is exactly 1.0 only on the single
    ``INSTALLED`` event. ``stage_fraction`` is the progress within ``stage``.
    """

    model_id: str
    stage: InstallStage
    fraction: float
    bytes_written: int = 0
    bytes_expected: int = 0
    stage_fraction: float = 0.0


InstallListener = Callable[[ProgressEvent], None]


@dataclass
class InstallOperation:
    """Transient state of one install; owns the temporary paths it creates."""

    model_id: str
    stage: InstallStage = InstallStage.IDLE
    progress: float = 0.0
    stage_progress: float = 0.0
    bytes_written: int = 0
    bytes_expected: int = 0
    artifacts: List[Path] = field(default_factory=list)
    error: Optional[BaseException] = None
    listener: Optional[InstallListener] = field(default=None, repr=False)
    cancel: Optional[CancelToken] = field(default=None, repr=False)

    def _notify(self) -> None:
        if self.listener is not None:
            self.listener(
                ProgressEvent(
                    self.model_id,
                    self.stage,
                    self.progress,
                    self.bytes_written,
                    self.bytes_expected,
                    self.stage_progress,
                )
            )

    def _update_overall(self) -> None:
        start, end = _STAGE_SPANS.get(self.stage, (self.progress, self.progress))
        self.progress = max(self.progress, start + (end - start) * self.stage_progress)

    def advance(self, stage: InstallStage) -> None:
        if self.stage.is_terminal:
            raise RuntimeError(f"{self.model_id}: operation already {self.stage.value}")
        if _STAGE_ORDER.index(stage) <= _STAGE_ORDER.index(self.stage):
            raise RuntimeError(
                f"{self.model_id}: cannot move from {self.stage.value} to {stage.value}"
            )
        if self.cancel is not None and self.cancel.cancelled:
            raise InstallCancelled(self.model_id)
        logger.info("%s: %s", self.model_id, stage.value)
        self.stage = stage
        self.stage_progress = 0.0
        self.bytes_written = 0
        self.bytes_expected = 0
        self._update_overall()
        self._notify()

    def report(self, fraction: float) -> None:
        """Progress within the current stage, clamped to ``[0, 1]``."""
        self.stage_progress = min(1.0, max(self.stage_progress, fraction))
        self._update_overall()
        self._notify()

    def report_bytes(self, written: int, expected: int) -> None:
        self.bytes_written = written
        self.bytes_expected = expected
        self._notify()

    def track(self, path: Path) -> Path:
        self.artifacts.append(path)
        return path

    def release(self, path: Path) -> None:
        """Stop owning ``path`` (it was published or retained)."""
        if path in self.artifacts:
            self.artifacts.remove(path)

    def cleanup(self) -> None:
        while self.artifacts:
            remove_quietly(self.artifacts.pop())

    def succeed(self) -> None:
        self.stage = InstallStage.INSTALLED
        self.stage_progress = 1.0
        self.progress = 1.0
        self._notify()

    def fail(self, error: BaseException) -> None:
        self.error = error
        self.stage = InstallStage.FAILED
        self._notify()


def _url_filename(url: str, fallback: str) -> str:
    name = PurePosixPath(unquote(urlsplit(url).path)).name
    return name or fallback


def local_model_id(path: Path) -> str:
    """Model id for an imported resource: its base name without extension."""
    if path.suffix.lower() in (*ARCHIVE_EXTENSIONS, *MODEL_FILE_EXTENSIONS, BUNDLE_EXTENSION):
        return path.stem
    return path.name


def classify_local(path: Path) -> str:
    """``archive``, ``model_file``, ``bundle`` or ``directory``."""
    suffix = path.suffix.lower()
    if path.is_file() and suffix in ARCHIVE_EXTENSIONS:
        return "archive"
    if path.is_file() and suffix in MODEL_FILE_EXTENSIONS:
        return "model_file"
    if path.is_dir() and path.suffix == BUNDLE_EXTENSION:
        return "bundle"
    if path.is_dir():
        if contains_compiled_resources(path):
            return "directory"
        raise UnsupportedSource(str(path), "directory has no compiled resources")
    raise UnsupportedSource(str(path))


class ModelInstaller:
    """Installs models from remote locators or local resources."""

    def __init__(
        self,
        registry: ModelRegistry,
        config: Optional[InstallerConfig] = None,
        downloader: Optional[Downloader] = None,
        hf_resolver: Optional[HuggingFaceRepoResolver] = None,
        extractor: Optional[ArchiveExtractor] = None,
        locator: Optional[PayloadLocator] = None,
        compiler: Optional[ModelCompiler] = None,
        activate_if_unset: bool = True,
    ) -> None:
        self.registry = registry
        self.config = config or InstallerConfig(models_root=registry.root)
        self.downloader = downloader or Downloader(self.config)
        self.hf_resolver = hf_resolver or HuggingFaceRepoResolver(
            self.config, self.downloader
        )
        self.extractor = extractor or ArchiveExtractor()
        self.locator = locator or PayloadLocator()
        self.compiler = compiler or CoreMLCompiler()
        self.activate_if_unset = activate_if_unset

    # ------------------------------------------------------------ entry points
    def install(
        self,
        descriptor: ModelDescriptor,
        listener: Optional[InstallListener] = None,
        cancel: Optional[CancelToken] = None,
    ) -> InstalledModel:
        """Fetch ``descriptor.locator`` and install it under ``descriptor.id``."""
        op = InstallOperation(descriptor.id, listener=listener, cancel=cancel)
        return self._run(op, lambda: self._install_remote(op, descriptor.locator))

    def import_path(
        self,
        path: Path,
        model_id: Optional[str] = None,
        listener: Optional[InstallListener] = None,
        cancel: Optional[CancelToken] = None,
    ) -> InstalledModel:
        """Install from a local archive, model file, bundle or directory."""
        source = Path(path).expanduser()
        op = InstallOperation(
            model_id or local_model_id(source), listener=listener, cancel=cancel
        )
        return self._run(op, lambda: self._import_local(op, source))

    # -------------------------------------------------------------- lifecycle
    def _run(self, op: InstallOperation, body: Callable[[], Path]) -> InstalledModel:
        try:
            try:
                self.registry.model_path(op.model_id)
            except ValueError as exc:
                raise UnsupportedSource(op.model_id, str(exc)) from exc

            staging = body()
            self.registry.publish(staging, op.model_id)
            op.release(staging)
            if self.activate_if_unset and self.registry.get_active() is None:
                self.registry.set_active(op.model_id)
            op.succeed()
            logger.info("%s: installed", op.model_id)
            return self.registry.inspect(op.model_id)
        except InstallError as exc:
            logger.error("%s: install failed: %s", op.model_id, exc)
            op.fail(exc)
            raise
        except OSError as exc:
            logger.error("%s: filesystem error: %s", op.model_id, exc)
            wrapped = InstallError(f"Filesystem error during install: {exc}")
            op.fail(wrapped)
            raise wrapped from exc
        except BaseException as exc:
            op.fail(exc)
            raise
        finally:
            op.cleanup()

    # ---------------------------------------------------------------- remote
    def _install_remote(self, op: InstallOperation, locator: str) -> Path:
        op.advance(InstallStage.RESOLVING)
        source = resolve_source(locator)
        logger.info("%s: source %r", op.model_id, source)

        if isinstance(source, HuggingFaceRepo):
            selection = self.hf_resolver.resolve(source.repo_id, source.default_subdir)
            if selection.is_archive:
                url = self.hf_resolver.resolve_url(source.repo_id, selection.archive_path)
                return self._install_archive_url(op, url)
            return self._install_repo_subtree(op, source.repo_id, selection)

        if isinstance(source, DirectModelFile):
            model_file = self._download(
                op, source.url, _url_filename(source.url, "model.mlmodel")
            )
            return self._compile(op, model_file)

        return self._install_archive_url(op, fetch_url(source))

    def _download(self, op: InstallOperation, url: str, filename: str) -> Path:
        op.advance(InstallStage.FETCHING)
        download_dir = op.track(self.registry.new_staging_dir("download"))
        return self.downloader.fetch(
            url,
            download_dir / filename,
            on_progress=op.report,
            on_bytes=op.report_bytes,
            cancel=op.cancel,
        )

    def _install_archive_url(self, op: InstallOperation, url: str) -> Path:
        archive = self._download(op, url, "payload.zip")
        return self._install_archive_file(op, archive)

    def _install_repo_subtree(
        self, op: InstallOperation, repo_id: str, selection: RepoSelection
    ) -> Path:
        op.advance(InstallStage.FETCHING)
        staging = op.track(self.registry.new_staging_dir("install"))
        self.hf_resolver.fetch(
            repo_id,
            selection,
            staging,
            on_progress=op.report,
            on_bytes=op.report_bytes,
            cancel=op.cancel,
        )
        return self._verify(op, staging)

    # ---------------------------------------------------------------- shared
    def _install_archive_file(self, op: InstallOperation, archive: Path) -> Path:
        op.advance(InstallStage.EXTRACTING)
        scratch = op.track(self.registry.new_staging_dir("extract"))
        self.extractor.extract(archive, scratch, on_progress=op.report)

        op.advance(InstallStage.LOCATING)
        staging = op.track(self.registry.new_staging_dir("install"))
        try:
            self.locator.locate(scratch, staging)
        except VerificationFailed as exc:
            if exc.merged:
                exc.path = self.registry.retain_failed(staging, op.model_id)
                op.release(staging)
            raise
        op.report(1.0)
        return self._verify(op, staging)

    def _compile(self, op: InstallOperation, model_file: Path) -> Path:
        op.advance(InstallStage.EXTRACTING)
        staging = op.track(self.registry.new_staging_dir("install"))
        self.compiler(model_file, staging)
        op.report(1.0)
        return self._verify(op, staging)

    def _verify(self, op: InstallOperation, staging: Path) -> Path:
        op.advance(InstallStage.VERIFYING)
        if not is_valid_install(staging):
            raise VerificationFailed(staging)
        op.report(1.0)
        return staging

    # ----------------------------------------------------------------- local
    def _import_local(self, op: InstallOperation, path: Path) -> Path:
        op.advance(InstallStage.RESOLVING)
        kind = classify_local(path)
        logger.info("%s: importing %s as %s", op.model_id, path, kind)

        if kind == "archive":
            return self._install_archive_file(op, path)
        if kind == "model_file":
            return self._compile(op, path)

        op.advance(InstallStage.LOCATING)
        staging = op.track(self.registry.new_staging_dir("install"))
        if kind == "bundle":
            target = staging / path.name
            try:
                shutil.copytree(path, target, symlinks=True)
            except OSError as exc:
                logger.warning("Copy of %s failed (%s); moving instead", path, exc)
                remove_quietly(target)
                shutil.move(str(path), str(target))
        else:
            shutil.copytree(path, staging, symlinks=True, dirs_exist_ok=True)
        op.report(1.0)
        return self._verify(op, staging)


class InstallManager:
    """Runs installs as independent background tasks.

    At most one operation per model id is accepted at a time; each returns a
    ``Future`` that resolves to the :class:`InstalledModel` or raises the
    operation's :class:`InstallError`.
    """

    def __init__(self, installer: ModelInstaller, max_workers: Optional[int] = None):
        self.installer = installer
        workers = max_workers or installer.config.max_concurrent_installs
        self._executor = ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="model-install"
        )
        self._tokens: Dict[str, CancelToken] = {}
        self._lock = threading.Lock()

    def _reserve(self, model_id: str) -> CancelToken:
        with self._lock:
            if model_id in self._tokens:
                raise ValueError(f"An install for {model_id!r} is already running")
            token = CancelToken()
            self._tokens[model_id] = token
            return token

    def _release(self, model_id: str) -> None:
        with self._lock:
            self._tokens.pop(model_id, None)

    def _track(self, model_id: str, future: Future) -> Future:
        future.add_done_callback(lambda _f: self._release(model_id))
        return future

    def submit(
        self, descriptor: ModelDescriptor, listener: Optional[InstallListener] = None
    ) -> Future:
        token = self._reserve(descriptor.id)
        future = self._executor.submit(self.installer.install, descriptor, listener, token)
        return self._track(descriptor.id, future)

    def submit_import(
        self,
        path: Path,
        model_id: Optional[str] = None,
        listener: Optional[InstallListener] = None,
    ) -> Future:
        ident = model_id or local_model_id(Path(path))
        token = self._reserve(ident)
        future = self._executor.submit(
            self.installer.import_path, path, ident, listener, token
        )
        return self._track(ident, future)

    def cancel(self, model_id: str) -> bool:
        with self._lock:
            token = self._tokens.get(model_id)
        if token is None:
            return False
        token.cancel()
        return True

    def in_flight(self) -> List[str]:
        with self._lock:
            return sorted(self._tokens)

    def shutdown(self, wait: bool = True) -> None:
        if not wait:
            for model_id in self.in_flight():
                self.cancel(model_id)
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> "InstallManager":
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown(wait=True)
