"""
Streaming single-file downloader.

Writes the response body into a private ``.part`` file, then claims it into
the caller's destination. Progress is reported as a fraction in ``[0, 1]``
and, separately, as raw byte counters for throughput display.
"""

import logging
import threading
import uuid
from pathlib import Path
from typing import Callable, Optional

import requests

from .config import InstallerConfig
from .errors import DownloadFailed, InstallCancelled, InvalidPayload
from .fsutils import claim_file, remove_quietly

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]
BytesCallback = Callable[[int, int], None]  # (written, expected)


class CancelToken:
    """Cooperative cancellation flag checked between chunks."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class ProgressReporter:
    """Wraps a fraction callback so it stays monotonic and stops after 1.0."""

    def __init__(self, callback: Optional[ProgressCallback]):
        self._callback = callback
        self._last = 0.0
        self._closed = False

    def emit(self, fraction: float) -> None:
        if self._callback is None or self._closed:
            return
        value = max(self._last, fraction, 0.0)
        if value >= 1.0:
            # the terminal 1.0 belongs to finish()
            return
        self._last = value
        self._callback(value)

    def finish(self) -> None:
        if self._callback is None or self._closed:
            return
        self._closed = True
        self._last = 1.0
        self._callback(1.0)

    def close(self) -> None:
        """Silence further calls (error or cancellation)."""
        self._closed = True


def make_session(user_agent: str) -> requests.Session:
    """Plain session without a retry adapter; failures surface immediately."""
    session = requests.Session()
    session.headers.update({"User-Agent": user_agent})
    return session


class Downloader:
    """Streams remote files to local storage."""

    def __init__(
        self,
        config: Optional[InstallerConfig] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.config = config or InstallerConfig()
        self.session = session or make_session(self.config.user_agent)

    def fetch(
        self,
        url: str,
        destination: Path,
        on_progress: Optional[ProgressCallback] = None,
        on_bytes: Optional[BytesCallback] = None,
        cancel: Optional[CancelToken] = None,
        min_bytes: Optional[int] = None,
    ) -> Path:
        """Download ``url`` into ``destination`` and return it.

        The returned path stays valid until the caller removes it. Raises
        ``DownloadFailed``, ``InvalidPayload`` or ``InstallCancelled``; in
        every error case no file is left at ``destination`` or the ``.part``
        location.
        """
        minimum = self.config.min_payload_bytes if min_bytes is None else min_bytes
        reporter = ProgressReporter(on_progress)
        part = destination.with_name(f".{destination.name}.{uuid.uuid4().hex}.part")
        part.parent.mkdir(parents=True, exist_ok=True)

        logger.info("Downloading %s", url)
        reporter.emit(0.0)
        try:
            written = self._stream(url, part, reporter, on_bytes, cancel)
            if written < minimum:
                raise InvalidPayload(url, written, minimum)
            claim_file(part, destination)
        except requests.RequestException as exc:
            reporter.close()
            remove_quietly(part)
            raise DownloadFailed(url, cause=exc) from exc
        except OSError as exc:
            reporter.close()
            remove_quietly(part)
            remove_quietly(destination)
            raise DownloadFailed(url, cause=exc) from exc
        except BaseException:
            reporter.close()
            remove_quietly(part)
            raise

        reporter.finish()
        logger.info("Downloaded %s (%d bytes)", destination.name, written)
        return destination

    def _stream(
        self,
        url: str,
        part: Path,
        reporter: ProgressReporter,
        on_bytes: Optional[BytesCallback],
        cancel: Optional[CancelToken],
    ) -> int:
        if cancel is not None and cancel.cancelled:
            raise InstallCancelled(url)

        with self.session.get(
            url,
            stream=True,
            timeout=self.config.request_timeout,
            allow_redirects=True,
        ) as response:
            if not 200 <= response.status_code < 300:
                raise DownloadFailed(url, status_code=response.status_code)

            expected = int(response.headers.get("Content-Length") or 0)
            written = 0
            with open(part, "wb") as fh:
                for chunk in response.iter_content(chunk_size=self.config.chunk_size):
                    if cancel is not None and cancel.cancelled:
                        raise InstallCancelled(url)
                    if not chunk:
                        continue
                    fh.write(chunk)
                    written += len(chunk)
                    if on_bytes is not None:
                        on_bytes(written, expected)
                    if expected > 0:
                        reporter.emit(written / expected)
            if cancel is not None and cancel.cancelled:
                raise InstallCancelled(url)
        return written
