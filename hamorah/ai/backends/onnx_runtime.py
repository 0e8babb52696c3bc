"""
ONNX Runtime GenAI Backend for Hamorah
Managed on-device runtime used on mobile platforms.

The downloaded artifact is a zipped model bundle. load() installs it from the
local file into the runtime's model directory (the folder holding
genai_config.json), then builds the model and tokenizer. generate() pushes the
prompt into a Generator and drains tokens until the runtime reports done.
"""

import asyncio
import shutil
import zipfile
from collections.abc import AsyncIterator, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ...config import DEFAULT_TEMPERATURE, DEFAULT_TOP_P, MODELS_DIR
from ...logging_config import debug, debug_log
from ..artifacts import ModelArtifact, artifact_from_catalog
from ..errors import GenerationError, LoadError
from ..model_store import ModelStore
from ..prompt_formatter import BuiltPrompt
from .base import BackendHandle, BackendKind, InferenceBackend, iterate_in_thread

MODEL_ARTIFACT_ID = 'phi3-mini-onnx'
GENAI_CONFIG_FILENAME = 'genai_config.json'

# Phi-3 Mini 4k: max_length counts prompt + output, so it cannot exceed this
MODEL_CONTEXT_LENGTH = 4096


@dataclass
class OnnxSession:
    """Conversational session: the loaded model and its tokenizer."""
    model: Any
    tokenizer: Any
    model_dir: Path


class OnnxRuntimeBackend(InferenceBackend):
    """Managed-runtime backend built on onnxruntime-genai."""

    kind = BackendKind.MANAGED_RUNTIME

    def __init__(self, model_store: ModelStore = None, models_dir: Path = MODELS_DIR, model_artifact: ModelArtifact = None):
        super().__init__(model_store)
        self._model_artifact = model_artifact or artifact_from_catalog(MODEL_ARTIFACT_ID, models_dir)
        bundle = self._model_artifact.destination_path
        self.install_dir = bundle.parent / bundle.stem

        # Lazy import to avoid startup overhead
        self._onnxruntime_genai = None

    @property
    def model_artifact(self) -> ModelArtifact:
        return self._model_artifact

    def _get_onnxruntime(self):
        """Lazy import of onnxruntime_genai."""
        if self._onnxruntime_genai is None:
            try:
                import onnxruntime_genai as og
                self._onnxruntime_genai = og
                debug("ONNX Runtime GenAI imported successfully")
            except (ImportError, OSError) as e:
                # OSError: DLL initialization failure on Windows
                debug(f"Failed to import onnxruntime_genai: {e}")
                raise LoadError(
                    "The on-device AI runtime is not available.",
                    detail=f"onnxruntime-genai unavailable ({e}). Install with: pip install hamorah[onnx]",
                ) from e
        return self._onnxruntime_genai

    def _installed_model_dir(self) -> Path | None:
        """Directory holding genai_config.json, if the bundle has been installed."""
        if (self.install_dir / GENAI_CONFIG_FILENAME).exists():
            return self.install_dir
        if self.install_dir.is_dir():
            for config_file in self.install_dir.rglob(GENAI_CONFIG_FILENAME):
                return config_file.parent
        return None

    def is_artifact_installed(self, artifact: ModelArtifact) -> bool:
        return self._installed_model_dir() is not None or super().is_artifact_installed(artifact)

    def delete_installed_files(self) -> None:
        if self.install_dir.exists():
            shutil.rmtree(self.install_dir)
            debug_log(f"[ONNX MODEL] Removed {self.install_dir}")

    def _install_bundle(self) -> Path:
        """Unpack the downloaded bundle into the runtime's model directory."""
        bundle = self._model_artifact.destination_path
        debug_log(f"[ONNX MODEL] Installing {bundle.name} into {self.install_dir}")
        try:
            with zipfile.ZipFile(bundle) as zf:
                zf.extractall(self.install_dir)
        except (zipfile.BadZipFile, OSError) as e:
            raise LoadError("The downloaded AI model is damaged. Please download it again.",
                            detail=f"failed to extract {bundle}: {e}") from e

        model_dir = self._installed_model_dir()
        if model_dir is None:
            raise LoadError("The downloaded AI model is incomplete.",
                            detail=f"{GENAI_CONFIG_FILENAME} not found in {bundle.name}")
        return model_dir

    async def _load(self) -> BackendHandle:
        return await asyncio.to_thread(self._load_sync)

    def _load_sync(self) -> BackendHandle:
        og = self._get_onnxruntime()
        model_dir = self._installed_model_dir() or self._install_bundle()

        debug_log(f"[ONNX MODEL] Loading model from {model_dir}")
        try:
            config = og.Config(str(model_dir))
            model = og.Model(config)
            tokenizer = og.Tokenizer(model)
        except Exception as e:
            # onnxruntime-genai raises plain RuntimeError/OSError subclasses from native code
            raise LoadError("Failed to load AI model.", detail=f"onnxruntime-genai: {e}") from e

        return BackendHandle(kind=self.kind, model_path=model_dir, ref=OnnxSession(model, tokenizer, model_dir))

    def _start_generation(self, session: OnnxSession, text: str, max_tokens: int):
        og = self._get_onnxruntime()
        input_tokens = session.tokenizer.encode(text)
        debug_log(f"[ONNX MODEL] Prompt tokenized: {len(input_tokens)} tokens")

        if len(input_tokens) >= MODEL_CONTEXT_LENGTH:
            raise GenerationError("The conversation is too long for the on-device model.",
                                  detail=f"{len(input_tokens)} prompt tokens >= {MODEL_CONTEXT_LENGTH}")

        params = og.GeneratorParams(session.model)
        params.set_search_options(
            max_length=min(len(input_tokens) + max_tokens, MODEL_CONTEXT_LENGTH),
            temperature=DEFAULT_TEMPERATURE,
            top_p=DEFAULT_TOP_P,
            do_sample=True,  # Required for temperature/top_p to apply
        )
        generator = og.Generator(session.model, params)
        generator.append_tokens(input_tokens)
        return generator, session.tokenizer.create_stream()

    @staticmethod
    def _drain(generator, token_stream) -> Iterator[str]:
        """Blocking token loop; ends on the runtime's end-of-turn signal or max_length."""
        while not generator.is_done():
            generator.generate_next_token()
            yield token_stream.decode(generator.get_next_tokens()[0])

    async def _generate(self, prompt: BuiltPrompt, max_tokens: int) -> AsyncIterator[str]:
        session: OnnxSession = self._handle.ref
        generator, token_stream = await asyncio.to_thread(self._start_generation, session, prompt.text, max_tokens)

        async for token in iterate_in_thread(self._drain(generator, token_stream)):
            if token:
                yield token

    def get_model_info(self) -> dict:
        info = super().get_model_info()
        model_dir = self._installed_model_dir()
        info['install_dir'] = str(model_dir) if model_dir else None
        return info
