"""
Local inference backends.

Variants are imported by ProviderManager on first use; their native runtimes
(llama-cpp-python, onnxruntime-genai) are imported only when a model loads.
"""

from .base import BackendHandle, BackendKind, BackendState, InferenceBackend

__all__ = ['BackendHandle', 'BackendKind', 'BackendState', 'InferenceBackend']
