"""
Test configuration for model installer tests.
"""

import pytest

from fakes import FakeCompiler, FakeSession

from velocity.model_installer.config import InstallerConfig
from velocity.model_installer.downloader import Downloader
from velocity.model_installer.hf_repo import HuggingFaceRepoResolver
from velocity.model_installer.installer import ModelInstaller
from velocity.model_installer.registry import ModelRegistry


@pytest.fixture
def models_root(tmp_path):
    return tmp_path / "models"


@pytest.fixture
def installer_config(models_root):
    """Config with a tiny payload threshold so fixture archives pass."""
    return InstallerConfig(
        models_root=models_root,
        min_payload_bytes=16,
        chunk_size=64,
        hf_endpoint="https://hf.test",
    )


@pytest.fixture
def registry(installer_config):
    return ModelRegistry.from_config(installer_config)


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def downloader(installer_config, session):
    return Downloader(installer_config, session=session)


@pytest.fixture
def hf_resolver(installer_config, downloader):
    return HuggingFaceRepoResolver(installer_config, downloader)


@pytest.fixture
def compiler():
    return FakeCompiler()


@pytest.fixture
def installer(registry, installer_config, downloader, hf_resolver, compiler):
    return ModelInstaller(
        registry,
        config=installer_config,
        downloader=downloader,
        hf_resolver=hf_resolver,
        compiler=compiler,
    )
