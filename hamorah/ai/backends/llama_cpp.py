"""
Llama.cpp Backend for Hamorah
Runs TinyLlama GGUF models on desktop through llama-cpp-python, bound to a
llama.cpp shared library downloaded next to the model.

Two artifacts are required: the runtime archive (extracted into the library
directory after download) and the GGUF weights.
"""

import asyncio
import os
import sys
from collections.abc import AsyncIterator
from pathlib import Path

import psutil

from ...config import DEFAULT_TEMPERATURE, DEFAULT_TOP_P, LIBRARY_DIR, LOCAL_CONTEXT_TOKENS, MODELS_DIR
from ...logging_config import debug_log
from .. import native_loader
from ..artifacts import ModelArtifact, artifact_from_catalog
from ..errors import LoadError
from ..model_store import ModelStore
from ..prompt_formatter import BuiltPrompt
from .base import BackendHandle, BackendKind, InferenceBackend, iterate_in_thread

MODEL_ARTIFACT_ID = 'tinyllama-gguf'
LIBRARY_ARTIFACT_ID = 'llama-cpp-runtime'


def _get_llama_class():
    """Lazy import of llama-cpp-python; must run after native_loader.bind_runtime()."""
    try:
        from llama_cpp import Llama
        return Llama
    except ImportError as e:
        raise LoadError(
            "Local AI support is not installed on this computer.",
            detail="llama-cpp-python not installed. Install with: pip install hamorah[llama]",
        ) from e


class LlamaCppBackend(InferenceBackend):
    """
    Native-library backend.

    Loading binds llama-cpp-python to the downloaded library (extending the
    native search path first) and constructs a Llama model sized for CPU
    inference.
    """

    kind = BackendKind.NATIVE_LIBRARY

    def __init__(
        self,
        model_store: ModelStore = None,
        models_dir: Path = MODELS_DIR,
        library_dir: Path = LIBRARY_DIR,
        platform_id: str = None,
        model_artifact: ModelArtifact = None,
        library_artifact: ModelArtifact = None,
    ):
        super().__init__(model_store)
        self.platform_id = platform_id or sys.platform
        self.library_dir = Path(library_dir)
        self._model_artifact = model_artifact or artifact_from_catalog(MODEL_ARTIFACT_ID, models_dir, self.platform_id)
        self._library_artifact = library_artifact or artifact_from_catalog(
            LIBRARY_ARTIFACT_ID, self.library_dir, self.platform_id
        )

    @property
    def model_artifact(self) -> ModelArtifact:
        return self._model_artifact

    @property
    def library_artifact(self) -> ModelArtifact:
        """The runtime archive; installed once extracted to library_path."""
        return self._library_artifact

    @property
    def library_path(self) -> Path:
        return native_loader.library_path(self.library_dir, self.platform_id)

    def required_artifacts(self) -> list[ModelArtifact]:
        # Runtime first: it is small and fails fast on a bad network
        return [self._library_artifact, self._model_artifact]

    def is_artifact_installed(self, artifact: ModelArtifact) -> bool:
        if artifact.id == self._library_artifact.id:
            return self.library_path.exists()
        return super().is_artifact_installed(artifact)

    def on_artifact_downloaded(self, artifact: ModelArtifact) -> None:
        if artifact.id == self._library_artifact.id:
            native_loader.extract_library_archive(artifact.destination_path, self.library_dir, self.platform_id)

    async def _load(self) -> BackendHandle:
        return await asyncio.to_thread(self._load_sync)

    def _load_sync(self) -> BackendHandle:
        native_loader.bind_runtime(self.library_path, self.platform_id)
        Llama = _get_llama_class()

        # n_threads = physical cores for prompt processing, n_threads_batch = all cores for generation
        logical_cores = psutil.cpu_count(logical=True) or os.cpu_count() or 4
        physical_cores = psutil.cpu_count(logical=False) or max(1, logical_cores // 2)
        debug_log(f"[LLAMA CPP] Thread config: {physical_cores} threads (prompt), {logical_cores} threads (batch)")

        model_path = self._model_artifact.destination_path
        try:
            model = Llama(
                model_path=str(model_path),
                n_ctx=LOCAL_CONTEXT_TOKENS,
                n_threads=physical_cores,
                n_threads_batch=logical_cores,
                n_batch=512,
                verbose=False,
            )
        except (ValueError, RuntimeError, OSError) as e:
            raise LoadError("Failed to load AI model.", detail=f"llama.cpp could not load {model_path}: {e}") from e

        return BackendHandle(
            kind=self.kind,
            model_path=model_path,
            ref=model,
            native_library_path=self.library_path,
        )

    async def _generate(self, prompt: BuiltPrompt, max_tokens: int) -> AsyncIterator[str]:
        model = self._handle.ref
        debug_log(f"[LLAMA CPP] Prompt length: {len(prompt.text)} chars, max_tokens={max_tokens}")

        # Returns a lazy iterator; each step runs one decode in a worker thread
        response = model(
            prompt.text,
            max_tokens=max_tokens,
            temperature=DEFAULT_TEMPERATURE,
            top_p=DEFAULT_TOP_P,
            stream=True,
            stop=list(prompt.stop_sequences),
        )

        token_num = 0
        async for output in iterate_in_thread(iter(response)):
            token = output['choices'][0]['text']
            token_num += 1
            if token_num <= 5 or token_num % 20 == 0:
                debug_log(f"[LLAMA CPP] Token #{token_num}: {token!r}")
            if token:
                yield token

    async def _unload(self, handle: BackendHandle) -> None:
        close = getattr(handle.ref, 'close', None)
        if close is not None:
            await asyncio.to_thread(close)
        handle.ref = None

    def get_model_info(self) -> dict:
        info = super().get_model_info()
        info['library_path'] = str(self.library_path)
        info['is_library_downloaded'] = self.library_path.exists()
        return info
