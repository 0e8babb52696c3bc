"""
Inference Backend contract for Hamorah

Every backend variant shares one lifecycle:

    UNLOADED -> LOADING -> LOADED -> UNLOADED
                LOADING -> UNLOADED   (load failure)

load() is idempotent and serialised: a second caller during an in-flight load
awaits it instead of starting another, so at most one BackendHandle exists per
backend instance. generate() loads implicitly when needed and yields tokens as
an async stream, capped by a hard token budget and ceding control to the event
loop every few tokens.

Subclasses implement _load(), _generate() and _unload(); those may raise
anything. The public methods translate failures into the AiError taxonomy.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Iterator
from contextlib import aclosing
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from ...config import LOCAL_MAX_TOKENS, LOCAL_YIELD_EVERY_TOKENS
from ...logging_config import Timer, debug_log, error
from ..artifacts import ModelArtifact
from ..errors import AiError, GenerationError, LoadError
from ..model_store import ModelStore, format_size
from ..prompt_formatter import BuiltPrompt, PromptStyle, style_for_model


class BackendKind(str, Enum):
    """Closed set of local inference strategies."""
    MANAGED_RUNTIME = "onnx"        # Platform-provided runtime (onnxruntime-genai)
    NATIVE_LIBRARY = "llama_cpp"    # Dynamically loaded llama.cpp library
    LOCAL_SERVER = "llamafile"      # Detached llamafile HTTP server


class BackendState(str, Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    LOADED = "loaded"


@dataclass
class BackendHandle:
    """Runtime object owning a loaded model. Exclusively owned by its backend."""
    kind: BackendKind
    model_path: Path
    ref: Any                                # Model, session, or server process
    native_library_path: Path | None = None

    @property
    def is_loaded(self) -> bool:
        return self.ref is not None


async def iterate_in_thread(iterator: Iterator) -> AsyncIterator:
    """Step a blocking iterator off the event loop, one item per worker-thread call."""
    sentinel = object()
    while True:
        item = await asyncio.to_thread(next, iterator, sentinel)
        if item is sentinel:
            return
        yield item


class InferenceBackend(ABC):
    """
    Base class for local inference backends.

    Attributes:
        kind: BackendKind of the concrete variant
        model_store: Store used for artifact presence checks
        last_error: The AiError behind the most recent failed load, if any
    """

    kind: BackendKind

    def __init__(self, model_store: ModelStore = None):
        self.model_store = model_store or ModelStore()
        self.last_error: AiError | None = None
        self._handle: BackendHandle | None = None
        self._state = BackendState.UNLOADED
        self._load_lock = asyncio.Lock()

    # -------------------------------------------------------------------------
    # Artifacts
    # -------------------------------------------------------------------------

    @property
    @abstractmethod
    def model_artifact(self) -> ModelArtifact:
        """The artifact holding the model weights."""

    def required_artifacts(self) -> list[ModelArtifact]:
        """Everything that must be downloaded before load(), in download order."""
        return [self.model_artifact]

    def is_artifact_installed(self, artifact: ModelArtifact) -> bool:
        return self.model_store.is_present(artifact)

    def missing_artifacts(self) -> list[ModelArtifact]:
        return [a for a in self.required_artifacts() if not self.is_artifact_installed(a)]

    def is_downloaded(self) -> bool:
        """True when every required artifact is installed. Does not load anything."""
        return not self.missing_artifacts()

    def on_artifact_downloaded(self, artifact: ModelArtifact) -> None:
        """Post-download installation step (extraction, permissions). Default: nothing."""

    def delete_installed_files(self) -> None:
        """Remove files produced by on_artifact_downloaded() for the model. Default: nothing."""

    @property
    def prompt_style(self) -> PromptStyle:
        return style_for_model(self.model_artifact.model_family)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def state(self) -> BackendState:
        return self._state

    @property
    def is_loaded(self) -> bool:
        return self._state == BackendState.LOADED

    @property
    def handle(self) -> BackendHandle | None:
        return self._handle

    async def load(self) -> bool:
        """
        Load the model if it is not loaded yet.

        Returns:
            bool: True if loaded (now or already), False on failure. The cause
                  of a failure is kept in last_error.
        """
        if self._handle is not None:
            return True

        async with self._load_lock:
            if self._handle is not None:
                # Another caller finished the load while we waited
                return True

            missing = self.missing_artifacts()
            if missing:
                names = ", ".join(a.display_name for a in missing)
                self.last_error = LoadError(
                    "Please download the AI model first in Settings.",
                    detail=f"missing artifacts: {names}",
                )
                debug_log(f"[BACKEND {self.kind.value}] Not loading, missing artifacts: {names}")
                return False

            self._state = BackendState.LOADING
            try:
                with Timer(f"Load {self.kind.value} backend"):
                    handle = await self._load()
            except Exception as e:
                self._state = BackendState.UNLOADED
                self.last_error = e if isinstance(e, AiError) else LoadError(
                    "Failed to load AI model.", detail=f"{type(e).__name__}: {e}"
                )
                error(f"[BACKEND {self.kind.value}] Load failed: {e}")
                return False

            self._handle = handle
            self._state = BackendState.LOADED
            self.last_error = None
            debug_log(f"[BACKEND {self.kind.value}] Loaded {handle.model_path.name}")
            return True

    async def generate(self, prompt: BuiltPrompt, max_tokens: int = LOCAL_MAX_TOKENS) -> AsyncIterator[str]:
        """
        Stream generated tokens.

        Loads the model first if needed. Stops after max_tokens tokens even if
        the model has not signalled end of turn.

        Raises:
            LoadError: If the implicit load fails
            GenerationError: If the runtime fails mid-generation
            NetworkError: If the local server cannot be reached
        """
        if not self.is_loaded and not await self.load():
            raise self.last_error or LoadError("Failed to load AI model.")

        token_count = 0
        try:
            async with aclosing(self._generate(prompt, max_tokens)) as tokens:
                async for token in tokens:
                    token_count += 1
                    yield token
                    if token_count >= max_tokens:
                        debug_log(f"[BACKEND {self.kind.value}] Token budget reached ({max_tokens})")
                        break
                    if token_count % LOCAL_YIELD_EVERY_TOKENS == 0:
                        await asyncio.sleep(0)
        except AiError:
            raise
        except Exception as e:
            raise GenerationError("AI error while generating a response.", detail=f"{type(e).__name__}: {e}") from e

        debug_log(f"[BACKEND {self.kind.value}] Generated {token_count} tokens")

    async def unload(self) -> None:
        """Release the model and any process or port it holds. Safe to call when unloaded."""
        async with self._load_lock:
            handle = self._handle
            if handle is None:
                return
            try:
                await self._unload(handle)
            finally:
                self._handle = None
                self._state = BackendState.UNLOADED
                debug_log(f"[BACKEND {self.kind.value}] Unloaded")

    # -------------------------------------------------------------------------
    # Variant hooks
    # -------------------------------------------------------------------------

    @abstractmethod
    async def _load(self) -> BackendHandle:
        """Build the handle. Raise on failure without leaving resources behind."""

    @abstractmethod
    def _generate(self, prompt: BuiltPrompt, max_tokens: int) -> AsyncIterator[str]:
        """Async generator of raw tokens for a loaded handle."""

    async def _unload(self, handle: BackendHandle) -> None:
        """Release the handle's resources. Default: drop the reference."""
        handle.ref = None

    # -------------------------------------------------------------------------
    # Info
    # -------------------------------------------------------------------------

    def get_model_info(self) -> dict:
        """
        Describe the model for settings and status screens.

        Returns:
            dict with name, size, is_downloaded, is_loaded, backend, path
        """
        artifact = self.model_artifact
        size = self.model_store.get_size(artifact) or artifact.expected_size_bytes
        return {
            'name': artifact.display_name,
            'size': f"~{format_size(size)}",
            'is_downloaded': self.is_downloaded(),
            'is_loaded': self.is_loaded,
            'backend': self.kind.value,
            'path': str(artifact.destination_path),
        }
