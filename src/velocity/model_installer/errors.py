"""Error taxonomy for model installation.

Every stage raises one of these; the installer never retries, it marks the
operation failed and re-raises to the caller.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional


class InstallError(Exception):
    """Base class for all installation failures."""

    reason = "install_failed"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class UnsupportedSource(InstallError):
    reason = "unsupported_source"

    def __init__(self, source: str, detail: str | None = None):
        message = f"Unsupported model source: {source!r}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.source = source


class DownloadFailed(InstallError):
    reason = "download_failed"

    def __init__(
        self,
        url: str,
        *,
        status_code: Optional[int] = None,
        cause: Optional[BaseException] = None,
    ):
        if status_code is not None:
            message = f"Download of {url} failed with HTTP {status_code}"
        else:
            message = f"Download of {url} failed: {cause}"
        super().__init__(message)
        self.url = url
        self.status_code = status_code
        self.cause = cause


class InvalidPayload(InstallError):
    reason = "invalid_payload"

    def __init__(self, url: str, size: int, minimum: int):
        super().__init__(
            f"Payload from {url} is only {size} bytes (minimum {minimum}); "
            "likely an error page or quota notice"
        )
        self.url = url
        self.size = size
        self.minimum = minimum


class ExtractionFailed(InstallError):
    reason = "extraction_failed"

    def __init__(self, archive: Path, detail: str):
        super().__init__(f"Could not extract {archive.name}: {detail}")
        self.archive = archive


class NoInstallablePayloadFound(InstallError):
    reason = "no_installable_payload"

    def __init__(self, repo_id: str):
        super().__init__(f"No compiled resources or archive found in {repo_id}")
        self.repo_id = repo_id


class VerificationFailed(InstallError):
    reason = "verification_failed"

    def __init__(self, path: Path, *, merged: bool = False):
        message = f"{path} does not contain compiled resources with a VAE component"
        if merged:
            message += " (after last-resort merge)"
        super().__init__(message)
        self.path = path
        self.merged = merged


class CompilationFailed(InstallError):
    reason = "compilation_failed"

    def __init__(self, model_path: Path, detail: str):
        super().__init__(f"Could not compile {model_path.name}: {detail}")
        self.model_path = model_path


class InstallCancelled(InstallError):
    reason = "cancelled"

    def __init__(self, what: str):
        super().__init__(f"Cancelled: {what}")
