import sys
from pathlib import Path

import pytest

from velocity.model_installer import config as config_module

ROOT = Path(__file__).resolve().parent.parent
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path, monkeypatch):
    """Keep logs and the global installer config away from real locations.

    Points log output at the test's tmp dir and resets the cached config so
    each test resolves it from its own environment.
    """

    monkeypatch.setenv("VELOCITY_LOG_DIR", str(tmp_path / "logs"))
    for name in ("VELOCITY_MODELS_ROOT", "VELOCITY_HF_ENDPOINT", "VELOCITY_MIN_PAYLOAD_BYTES"):
        monkeypatch.delenv(name, raising=False)
    config_module.set_config(None)
    yield
    config_module.set_config(None)
