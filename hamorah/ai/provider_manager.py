"""
AI Provider Manager for Hamorah

Single entry point between the host application and inference:
- Holds the user's provider choice (cloud or local) and persists it
- Resolves the platform's local backend and keeps one instance per kind
- Routes chat() to the cloud client or to prompt -> generate -> post-process
- Answers availability/status queries and drives local model download,
  unload, and deletion

chat() never raises; every failure becomes an AiResult with error_kind set.
"""

import asyncio
import sys
import time
from collections.abc import AsyncIterator, Callable
from contextlib import aclosing
from enum import Enum

from ..config import DESKTOP_LOCAL_BACKEND, LOCAL_HISTORY_TURNS, LOCAL_MAX_TOKENS
from ..conversation import ConversationStore, ConversationTurn, MessageRole
from ..logging_config import debug_log, error, info, warning
from ..preferences import PreferenceStore, PreferenceStoreError, get_preference_store
from . import response_post_processor
from .artifacts import DownloadProgress, ProgressStatus
from .backends.base import BackendKind, InferenceBackend
from .cloud_client import CloudClient
from .errors import AiError, ConfigurationError, ErrorKind
from .model_store import ModelStore, format_size
from .persona import PersonaLoader, get_persona_loader
from .platform import resolve_local_backend
from .prompt_formatter import build_prompt
from .results import AiDiagnostics, AiResult

PROVIDER_PREFERENCE = 'ai_provider'


class Provider(str, Enum):
    CLOUD = "cloud"
    LOCAL = "local"


# Values written by earlier releases
LEGACY_PROVIDER_VALUES = {
    'grok': Provider.CLOUD,
    'gemma': Provider.LOCAL,
}

NOT_AVAILABLE_MESSAGE = "Offline AI is not available on this device."
NEEDS_DOWNLOAD_MESSAGE = "Please download the AI model first in Settings."


def create_backend(kind: BackendKind, model_store: ModelStore, platform_id: str = None) -> InferenceBackend:
    """Construct the backend variant for a kind, resolving artifacts for platform_id."""
    if kind == BackendKind.NATIVE_LIBRARY:
        from .backends.llama_cpp import LlamaCppBackend
        return LlamaCppBackend(model_store, platform_id=platform_id)
    if kind == BackendKind.LOCAL_SERVER:
        from .backends.llamafile_server import LlamafileBackend
        return LlamafileBackend(model_store, platform_id=platform_id)
    if kind == BackendKind.MANAGED_RUNTIME:
        from .backends.onnx_runtime import OnnxRuntimeBackend
        return OnnxRuntimeBackend(model_store)
    raise ValueError(f"Unknown backend kind: {kind}")


class ProviderManager:
    """
    Orchestrates cloud and local inference.

    Construct once at startup and pass to consumers. Collaborators are
    injectable for tests and alternative hosts.

    Example:
        manager = ProviderManager()
        manager.initialize()
        result = await manager.chat("I feel alone", history)
    """

    def __init__(
        self,
        preference_store: PreferenceStore = None,
        cloud_client: CloudClient = None,
        model_store: ModelStore = None,
        persona_loader: PersonaLoader = None,
        platform_id: str = None,
        desktop_backend: str = DESKTOP_LOCAL_BACKEND,
        backend_factory: Callable[[BackendKind, ModelStore, str], InferenceBackend] = create_backend,
    ):
        self.preference_store = preference_store or get_preference_store()
        self.persona_loader = persona_loader or get_persona_loader()
        self.cloud_client = cloud_client or CloudClient(self.preference_store, self.persona_loader)
        self.model_store = model_store or ModelStore()
        self.platform_id = platform_id or sys.platform
        self.local_backend_kind = resolve_local_backend(self.platform_id, desktop_backend)
        self.current_provider = Provider.CLOUD

        self._backend_factory = backend_factory
        self._backends: dict[BackendKind, InferenceBackend] = {}
        self._download_cancelled = False
        self._downloading = []

        debug_log(f"[PROVIDER] Local backend for this platform: "
                  f"{self.local_backend_kind.value if self.local_backend_kind else 'unavailable'}")

    # -------------------------------------------------------------------------
    # Provider selection
    # -------------------------------------------------------------------------

    @staticmethod
    def _parse_provider(value: str | None) -> Provider:
        if value in LEGACY_PROVIDER_VALUES:
            return LEGACY_PROVIDER_VALUES[value]
        try:
            return Provider(value)
        except ValueError:
            return Provider.CLOUD

    def initialize(self) -> Provider:
        """
        Load the persisted provider choice. Falls back to cloud on any storage error.

        Returns:
            The current provider
        """
        try:
            saved = self.preference_store.read(PROVIDER_PREFERENCE)
        except Exception as e:
            # Any collaborator failure falls back to the default
            warning(f"[PROVIDER] Could not read provider preference: {e}")
            saved = None

        self.current_provider = self._parse_provider(saved)
        info(f"[PROVIDER] AI provider initialized: {self.current_provider.value}")
        return self.current_provider

    def set_provider(self, provider: Provider | str) -> None:
        """
        Select and persist a provider.

        Raises:
            ValueError: Unknown provider value
            PreferenceStoreError: The choice could not be saved; the current
                                  provider is left unchanged
        """
        provider = Provider(provider)
        self.preference_store.write(PROVIDER_PREFERENCE, provider.value)
        self.current_provider = provider
        info(f"[PROVIDER] AI provider set to: {provider.value}")

    @property
    def is_offline_mode(self) -> bool:
        return self.current_provider == Provider.LOCAL

    # -------------------------------------------------------------------------
    # Backends
    # -------------------------------------------------------------------------

    def get_backend(self, kind: BackendKind = None) -> InferenceBackend | None:
        """
        The single backend instance for a kind, created on first use.

        Args:
            kind: Backend kind (defaults to the platform's local backend)

        Returns:
            InferenceBackend, or None if local inference is unavailable
        """
        kind = kind or self.local_backend_kind
        if kind is None:
            return None
        if kind not in self._backends:
            try:
                self._backends[kind] = self._backend_factory(kind, self.model_store, self.platform_id)
            except KeyError as e:
                # No catalog entry (or URL) for this platform's artifacts
                error(f"[PROVIDER] Cannot create {kind.value} backend: {e}")
                return None
        return self._backends[kind]

    @property
    def local_backend(self) -> InferenceBackend | None:
        return self.get_backend()

    # -------------------------------------------------------------------------
    # Availability
    # -------------------------------------------------------------------------

    def is_cloud_configured(self) -> bool:
        try:
            return self.cloud_client.has_api_key()
        except Exception as e:
            warning(f"[PROVIDER] Could not read API key: {e}")
            return False

    def is_local_downloaded(self) -> bool:
        backend = self.local_backend
        return backend is not None and backend.is_downloaded()

    def is_current_provider_available(self) -> bool:
        """Cloud: an API key is stored. Local: the artifacts are downloaded (not necessarily loaded)."""
        if self.current_provider == Provider.CLOUD:
            return self.is_cloud_configured()
        return self.is_local_downloaded()

    # -------------------------------------------------------------------------
    # Chat
    # -------------------------------------------------------------------------

    async def chat(self, message: str, history: list[ConversationTurn] | None = None) -> AiResult:
        """
        Send a message using the current provider.

        Args:
            message: The new user message
            history: Prior turns, oldest first

        Returns:
            AiResult; never raises
        """
        try:
            if self.current_provider == Provider.CLOUD:
                return await self.cloud_client.chat(message, history)
            return await self._chat_local(message, history)
        except AiError as e:
            error(f"[PROVIDER] Chat failed ({e.kind.value}): {e}")
            return AiResult.failure(e.user_message, e.kind)
        except Exception as e:
            error(f"[PROVIDER] Unexpected chat error: {e}", exc_info=True)
            return AiResult.failure(f"AI error: {e}", ErrorKind.UNKNOWN)

    async def _chat_local(self, message: str, history: list[ConversationTurn] | None) -> AiResult:
        backend = self.local_backend
        if backend is None:
            raise ConfigurationError(NOT_AVAILABLE_MESSAGE)
        if not backend.is_downloaded():
            raise ConfigurationError(NEEDS_DOWNLOAD_MESSAGE)

        prompt = build_prompt(
            self.persona_loader.condensed(),
            history,
            message,
            backend.prompt_style,
            LOCAL_HISTORY_TURNS,
        )

        start = time.perf_counter()
        tokens = []
        async for token in backend.generate(prompt, LOCAL_MAX_TOKENS):
            tokens.append(token)
        latency_ms = (time.perf_counter() - start) * 1000

        processed = response_post_processor.extract("".join(tokens), prompt.stop_sequences)

        usage = getattr(backend, 'last_usage', None) or {}
        diagnostics = AiDiagnostics(
            provider=backend.kind.value,
            model=backend.model_artifact.display_name,
            raw_prompt=prompt.debug_text,
            prompt_tokens=usage.get('prompt_tokens'),
            response_tokens=usage.get('completion_tokens', len(tokens)),
            latency_ms=latency_ms,
        )
        debug_log(f"[PROVIDER] Local response: {len(processed.text)} chars in {latency_ms:.0f} ms")
        return AiResult.ok(processed.text, processed.related_references, diagnostics)

    async def respond(
        self,
        store: ConversationStore,
        conversation_id: str,
        message: str,
    ) -> tuple[AiResult, list[ConversationTurn]]:
        """
        Answer a message in a stored conversation.

        Reads the history through the store but does not write to it.

        Returns:
            (result, new_turns): the user turn, plus the assistant turn on success.
            The caller appends new_turns to the store.
        """
        try:
            history = store.get_messages(conversation_id)
        except Exception as e:
            warning(f"[PROVIDER] Could not read conversation {conversation_id}: {e}")
            history = []

        result = await self.chat(message, history)

        new_turns = [ConversationTurn(role=MessageRole.USER, content=message)]
        if result.success:
            new_turns.append(ConversationTurn(
                role=MessageRole.ASSISTANT,
                content=result.content,
                related_references=result.related_references,
                diagnostics_json=result.diagnostics.to_json() if result.diagnostics else None,
            ))
        return result, new_turns

    # -------------------------------------------------------------------------
    # Local model lifecycle
    # -------------------------------------------------------------------------

    async def download_local_model(self) -> AsyncIterator[DownloadProgress]:
        """
        Download every missing artifact of the local backend.

        Progress is weighted by expected size across artifacts. Each finished
        artifact gets its installation step (extraction, permissions) before
        the next one starts.

        Yields:
            DownloadProgress events; the last one is terminal.
        """
        backend = self.local_backend
        if backend is None:
            yield DownloadProgress(ProgressStatus.FAILED, reason=NOT_AVAILABLE_MESSAGE)
            return

        missing = backend.missing_artifacts()
        if not missing:
            yield DownloadProgress(ProgressStatus.COMPLETE, fraction=1.0)
            return

        total_bytes = sum(max(a.expected_size_bytes, 1) for a in missing)
        done_bytes = 0
        self._download_cancelled = False
        self._downloading = missing
        info(f"[PROVIDER] Downloading {len(missing)} artifact(s), ~{format_size(total_bytes)}")

        try:
            for artifact in missing:
                if self._download_cancelled:
                    yield DownloadProgress(ProgressStatus.CANCELLED, done_bytes, total_bytes,
                                           done_bytes / total_bytes, artifact_id=artifact.id)
                    return

                weight = max(artifact.expected_size_bytes, 1)
                async with aclosing(self.model_store.download(artifact)) as events:
                    async for event in events:
                        if event.status == ProgressStatus.RUNNING:
                            overall = min((done_bytes + event.fraction * weight) / total_bytes, 0.99)
                            yield DownloadProgress(ProgressStatus.RUNNING, done_bytes + event.received, total_bytes,
                                                   overall, artifact_id=artifact.id)
                        elif event.status != ProgressStatus.COMPLETE:
                            yield event
                            return

                try:
                    await asyncio.to_thread(backend.on_artifact_downloaded, artifact)
                except (AiError, OSError) as e:
                    message = e.user_message if isinstance(e, AiError) else f"Could not install {artifact.display_name}: {e}"
                    error(f"[PROVIDER] Installing {artifact.id} failed: {e}")
                    yield DownloadProgress(ProgressStatus.FAILED, done_bytes, total_bytes,
                                           reason=message, artifact_id=artifact.id)
                    return
                done_bytes += weight

            info("[PROVIDER] Local model download complete")
            yield DownloadProgress(ProgressStatus.COMPLETE, total_bytes, total_bytes, 1.0)
        finally:
            self._downloading = []

    def cancel_download(self) -> None:
        """Cancel a running download_local_model(). Partial files are kept for resume."""
        self._download_cancelled = True
        for artifact in self._downloading:
            self.model_store.cancel(artifact)

    async def unload_local_model(self) -> None:
        """Release every loaded backend (and the local server's port)."""
        for backend in self._backends.values():
            try:
                await backend.unload()
            except Exception as e:
                error(f"[PROVIDER] Unloading {backend.kind.value} failed: {e}")

    async def shutdown(self) -> None:
        """Stop every download in flight and release loaded backends. Call once at exit."""
        self._download_cancelled = True
        self.model_store.cancel_all()
        await self.unload_local_model()
        info("[PROVIDER] Shut down")

    async def delete_local_model(self) -> bool:
        """
        Unload and delete the local model. Switches back to cloud if local was selected.

        Returns:
            bool: True if the files were removed
        """
        backend = self.local_backend
        if backend is None:
            return False

        self.cancel_download()
        try:
            await backend.unload()
            for artifact in backend.required_artifacts():
                self.model_store.delete(artifact)
            backend.delete_installed_files()
        except (AiError, OSError) as e:
            error(f"[PROVIDER] Error deleting model: {e}")
            return False

        info("[PROVIDER] Local model deleted")
        if self.current_provider == Provider.LOCAL:
            try:
                self.set_provider(Provider.CLOUD)
            except PreferenceStoreError as e:
                warning(f"[PROVIDER] Could not switch back to cloud: {e}")
        return True

    # -------------------------------------------------------------------------
    # Display and status
    # -------------------------------------------------------------------------

    def _local_model_size(self) -> str:
        backend = self.local_backend
        return backend.get_model_info()['size'] if backend else "n/a"

    def get_provider_name(self, provider: Provider | str) -> str:
        if Provider(provider) == Provider.CLOUD:
            return "Grok (Cloud)"
        backend = self.local_backend
        return f"{backend.model_artifact.display_name} (Offline)" if backend else "On-device (Offline)"

    def get_provider_description(self, provider: Provider | str) -> str:
        if Provider(provider) == Provider.CLOUD:
            return "Uses xAI Grok API - requires internet and API key"
        if self.local_backend is None:
            return NOT_AVAILABLE_MESSAGE
        return f"On-device AI - works offline, {self._local_model_size()} download"

    def get_providers_status(self) -> dict[Provider, dict]:
        """Status info for each provider, for the settings screen."""
        backend = self.local_backend
        return {
            Provider.CLOUD: {
                'name': self.get_provider_name(Provider.CLOUD),
                'description': "xAI Grok API - powerful cloud AI",
                'is_configured': self.is_cloud_configured(),
                'is_loaded': True,
                'requires_internet': True,
                'model_size': None,
            },
            Provider.LOCAL: {
                'name': self.get_provider_name(Provider.LOCAL),
                'description': self.get_provider_description(Provider.LOCAL),
                'is_configured': self.is_local_downloaded(),
                'is_loaded': backend.is_loaded if backend else False,
                'requires_internet': False,
                'model_size': self._local_model_size(),
                'backend': self.local_backend_kind.value if self.local_backend_kind else None,
            },
        }
