"""ZIP extraction with per-entry progress."""

import logging
import shutil
import zipfile
import zlib
from pathlib import Path, PurePosixPath
from typing import Callable, List, Optional

from .errors import ExtractionFailed
from .fsutils import is_safe_relative_path

logger = logging.getLogger(__name__)

_COPY_BUFFER = 1024 * 1024


class ArchiveExtractor:
    """Expands archives into a working directory."""

    def check(self, archive_path: Path) -> List[zipfile.ZipInfo]:
        """Minimal structural check; returns the entries to extract."""
        if not archive_path.is_file():
            raise ExtractionFailed(archive_path, "archive does not exist")
        if not zipfile.is_zipfile(archive_path):
            raise ExtractionFailed(archive_path, "not a zip archive")
        try:
            with zipfile.ZipFile(archive_path, "r") as zf:
                entries = zf.infolist()
        except (zipfile.BadZipFile, OSError) as exc:
            raise ExtractionFailed(archive_path, str(exc)) from exc
        if not entries:
            raise ExtractionFailed(archive_path, "archive is empty")
        unsafe = [e.filename for e in entries if not is_safe_relative_path(e.filename)]
        if unsafe:
            raise ExtractionFailed(archive_path, f"unsafe member path {unsafe[0]!r}")
        return entries

    def extract(
        self,
        archive_path: Path,
        destination: Path,
        on_progress: Optional[Callable[[float], None]] = None,
    ) -> int:
        """Extract every entry of ``archive_path`` below ``destination``.

        ``on_progress(completed / total)`` fires after each entry. Returns the
        number of entries written.
        """
        entries = self.check(archive_path)
        total = len(entries)
        destination.mkdir(parents=True, exist_ok=True)
        logger.info("Extracting %d entries from %s", total, archive_path.name)

        try:
            with zipfile.ZipFile(archive_path, "r") as zf:
                for index, info in enumerate(entries, start=1):
                    target = destination.joinpath(*PurePosixPath(
                        info.filename.replace("\\", "/")
                    ).parts)
                    if info.is_dir():
                        target.mkdir(parents=True, exist_ok=True)
                    else:
                        target.parent.mkdir(parents=True, exist_ok=True)
                        with zf.open(info, "r") as src, open(target, "wb") as dst:
                            shutil.copyfileobj(src, dst, _COPY_BUFFER)
                    if on_progress is not None:
                        on_progress(min(1.0, index / total))
        except (
            zipfile.BadZipFile,
            zlib.error,
            EOFError,
            OSError,
            NotImplementedError,  # unsupported compression method
            RuntimeError,  # encrypted entry
        ) as exc:
            raise ExtractionFailed(archive_path, str(exc)) from exc

        return total
