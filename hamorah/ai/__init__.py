"""
Hamorah AI Module
Chat inference through a cloud provider or an on-device model.

Architecture:
=============
ProviderManager is the single entry point. It routes each chat() to either:

1. **Cloud** (CloudClient): xAI Grok chat completions over HTTPS, API key kept
   in the secure preference store.

2. **Local** (one InferenceBackend per platform):
   - OnnxRuntimeBackend: managed on-device runtime (mobile)
   - LlamaCppBackend: llama.cpp shared library via llama-cpp-python (desktop)
   - LlamafileBackend: detached llamafile server on a local port (desktop)

Local artifacts are downloaded, resumed, and deleted through ModelStore.
"""

from .artifacts import DownloadProgress, ModelArtifact, ProgressStatus
from .backends.base import BackendKind, BackendState, InferenceBackend
from .cloud_client import CloudClient
from .errors import AiError, ConfigurationError, DownloadError, ErrorKind, GenerationError, LoadError, NetworkError
from .model_store import ModelStore
from .provider_manager import Provider, ProviderManager
from .results import AiDiagnostics, AiResult

__all__ = [
    'AiDiagnostics',
    'AiError',
    'AiResult',
    'BackendKind',
    'BackendState',
    'CloudClient',
    'ConfigurationError',
    'DownloadError',
    'DownloadProgress',
    'ErrorKind',
    'GenerationError',
    'InferenceBackend',
    'LoadError',
    'ModelArtifact',
    'ModelStore',
    'NetworkError',
    'ProgressStatus',
    'Provider',
    'ProviderManager',
]
