"""
Platform to local-backend resolution.

Resolved once per ProviderManager from the platform identity. Mobile
platforms use the managed runtime; desktop platforms use the native library
or the llamafile server (DESKTOP_LOCAL_BACKEND); anything else has no local
inference.
"""

import sys

from ..config import DESKTOP_LOCAL_BACKEND
from .backends.base import BackendKind

MOBILE_PLATFORMS = ('android', 'ios')
DESKTOP_PLATFORMS = ('win32', 'darwin', 'linux')


def resolve_local_backend(platform_id: str = None, desktop_backend: str = DESKTOP_LOCAL_BACKEND) -> BackendKind | None:
    """
    Pick the local backend kind for a platform.

    Args:
        platform_id: sys.platform value (defaults to the running platform)
        desktop_backend: 'llama_cpp' or 'llamafile'

    Returns:
        BackendKind, or None if local inference is unavailable
    """
    platform_id = platform_id or sys.platform

    if platform_id in MOBILE_PLATFORMS:
        return BackendKind.MANAGED_RUNTIME

    if platform_id in DESKTOP_PLATFORMS:
        if desktop_backend == BackendKind.LOCAL_SERVER.value:
            return BackendKind.LOCAL_SERVER
        return BackendKind.NATIVE_LIBRARY

    return None
