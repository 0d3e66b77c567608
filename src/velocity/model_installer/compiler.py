"""Local compilation of single ``.mlmodel`` files into ``.mlmodelc`` bundles."""

import logging
import subprocess
from pathlib import Path
from typing import Callable, Sequence

from .errors import CompilationFailed
from .layout import BUNDLE_EXTENSION

logger = logging.getLogger(__name__)

ModelCompiler = Callable[[Path, Path], Path]


class CoreMLCompiler:
    """Runs Apple's ``coremlcompiler`` through ``xcrun``.

    ``compile(model, output_dir)`` returns ``output_dir/<stem>.mlmodelc``.
    """

    def __init__(self, command: Sequence[str] = ("xcrun", "coremlcompiler")):
        self.command = list(command)

    def __call__(self, model_path: Path, output_dir: Path) -> Path:
        return self.compile(model_path, output_dir)

    def compile(self, model_path: Path, output_dir: Path) -> Path:
        output_dir.mkdir(parents=True, exist_ok=True)
        cmd = [*self.command, "compile", str(model_path), str(output_dir)]
        logger.info("Compiling %s", model_path.name)
        try:
            subprocess.run(
                cmd,
                check=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise CompilationFailed(
                model_path, f"{self.command[0]} not found; Xcode tools are required"
            ) from exc
        except subprocess.CalledProcessError as exc:
            stderr = (exc.stderr or b"").decode("utf-8", "ignore").strip()
            raise CompilationFailed(model_path, stderr or f"exit code {exc.returncode}") from exc

        compiled = output_dir / f"{model_path.stem}{BUNDLE_EXTENSION}"
        if not compiled.is_dir():
            raise CompilationFailed(model_path, f"{compiled.name} was not produced")
        return compiled
