"""
Pytest configuration and fixtures for Hamorah tests.

This conftest.py handles:
- Pointing the application support directory at a temp dir before hamorah is imported
- In-memory preference store and a scriptable inference backend
- Small on-disk artifacts for download and load tests
"""

import asyncio
import os
import sys
import tempfile
from pathlib import Path

# Must run before any hamorah import: config creates its directories on import
os.environ.setdefault('HAMORAH_HOME', tempfile.mkdtemp(prefix='hamorah-tests-'))

# Add project root to path for imports
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

import pytest

from hamorah.ai.artifacts import ModelArtifact
from hamorah.ai.backends.base import BackendHandle, BackendKind, InferenceBackend
from hamorah.ai.errors import LoadError
from hamorah.ai.model_store import ModelStore
from hamorah.ai.persona import PersonaLoader
from hamorah.preferences import PreferenceStore, PreferenceStoreError


class MemoryPreferenceStore(PreferenceStore):
    """Dict-backed preference store that can simulate storage failures."""

    def __init__(self, values=None, fail_reads=False, fail_writes=False):
        self.values = dict(values or {})
        self.fail_reads = fail_reads
        self.fail_writes = fail_writes

    def read(self, key):
        if self.fail_reads:
            raise PreferenceStoreError("keychain locked")
        return self.values.get(key)

    def write(self, key, value):
        if self.fail_writes:
            raise PreferenceStoreError("keychain locked")
        self.values[key] = value

    def delete(self, key):
        if self.fail_writes:
            raise PreferenceStoreError("keychain locked")
        self.values.pop(key, None)


class FakeBackend(InferenceBackend):
    """Backend that yields scripted tokens and counts loads."""

    kind = BackendKind.NATIVE_LIBRARY

    def __init__(self, model_store, artifact, tokens=("Read ", "John 3:16", " for comfort."),
                 fail_load=False, load_delay=0.0, fail_generate=None):
        super().__init__(model_store)
        self._artifact = artifact
        self.tokens = list(tokens)
        self.fail_load = fail_load
        self.load_delay = load_delay
        self.fail_generate = fail_generate
        self.load_calls = 0
        self.prompts = []
        self.installed = []

    @property
    def model_artifact(self):
        return self._artifact

    def on_artifact_downloaded(self, artifact):
        self.installed.append(artifact.id)

    async def _load(self):
        self.load_calls += 1
        if self.load_delay:
            await asyncio.sleep(self.load_delay)
        if self.fail_load:
            raise LoadError("Failed to load AI model.", detail="native symbol not found")
        return BackendHandle(kind=self.kind, model_path=self._artifact.destination_path, ref=object())

    async def _generate(self, prompt, max_tokens):
        self.prompts.append(prompt)
        if self.fail_generate is not None:
            raise self.fail_generate
        for token in self.tokens:
            yield token


def make_artifact(directory: Path, name: str = "model.gguf", size: int = 4096, min_size: int = 100,
                  family: str = "tinyllama", create: bool = False) -> ModelArtifact:
    """Artifact in directory; optionally create the final file with `size` bytes."""
    artifact = ModelArtifact(
        id=name.replace('.', '-'),
        display_name=f"Test {name}",
        source_url=f"https://downloads.example.com/{name}",
        destination_path=Path(directory) / name,
        expected_size_bytes=size,
        min_size_bytes=min_size,
        model_family=family,
    )
    if create:
        artifact.destination_path.write_bytes(b"\0" * size)
    return artifact


class FakeResponse:
    """Minimal stand-in for a streaming requests.Response."""

    def __init__(self, status_code=200, chunks=(), headers=None):
        self.status_code = status_code
        self.headers = headers or {}
        self._chunks = chunks
        self.closed = False

    def iter_content(self, chunk_size=None):
        if callable(self._chunks):
            return self._chunks()
        return iter(self._chunks)

    def close(self):
        self.closed = True


async def collect(stream):
    """Drain an async iterator into a list."""
    return [item async for item in stream]


@pytest.fixture
def preference_store():
    return MemoryPreferenceStore()


@pytest.fixture
def persona_loader(tmp_path):
    """Loader pointed at an empty directory: uses the inline personas."""
    return PersonaLoader(tmp_path / "prompts", None)


@pytest.fixture
def model_store():
    return ModelStore(chunk_size=1024)


@pytest.fixture
def downloaded_artifact(tmp_path):
    return make_artifact(tmp_path, create=True)


@pytest.fixture
def fake_backend(model_store, downloaded_artifact):
    return FakeBackend(model_store, downloaded_artifact)
