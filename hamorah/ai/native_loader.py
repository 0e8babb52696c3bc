"""
Native Library Loader for Hamorah

The only module that touches ctypes. Everything else in the engine sees three
operations: load_library(path) -> handle, call(handle, symbol, ...), and
bind_runtime(path), which prepares llama-cpp-python to use the downloaded
llama.cpp build.

The llama.cpp release archives ship llama alongside its ggml dependencies.
Windows does not search the directory of a DLL for its dependencies, so the
library directory is added to the DLL search path before anything is loaded.
On Linux and macOS the dependencies are preloaded with RTLD_GLOBAL so the
main library's symbols resolve against them.
"""

import ctypes
import os
import shutil
import sys
import zipfile
from pathlib import Path

from ..logging_config import debug_log
from .errors import LoadError

SHARED_LIBRARY_SUFFIXES = ('.dll', '.so', '.dylib')

# Handles returned by os.add_dll_directory must stay alive for the directory to remain searchable
_dll_directories = {}
_preloaded = set()


def library_filename(platform_id: str = None) -> str:
    """Filename of the main llama.cpp shared library on a platform."""
    platform_id = platform_id or sys.platform
    if platform_id == 'win32':
        return 'llama.dll'
    if platform_id == 'darwin':
        return 'libllama.dylib'
    return 'libllama.so'


def library_path(lib_dir: Path, platform_id: str = None) -> Path:
    return Path(lib_dir) / library_filename(platform_id)


def _is_shared_library(name: str) -> bool:
    name = name.lower()
    return name.endswith(SHARED_LIBRARY_SUFFIXES) or '.so.' in name


def extend_search_path(lib_dir: Path, platform_id: str = None) -> None:
    """
    Make the dependencies in lib_dir resolvable for the main library.

    Args:
        lib_dir: Directory holding the llama.cpp shared libraries
        platform_id: sys.platform value (defaults to the running platform)
    """
    platform_id = platform_id or sys.platform
    lib_dir = Path(lib_dir)

    if platform_id == 'win32':
        key = str(lib_dir)
        if key not in _dll_directories:
            _dll_directories[key] = os.add_dll_directory(key)
            os.environ['PATH'] = key + os.pathsep + os.environ.get('PATH', '')
            debug_log(f"[NATIVE] Added DLL directory: {key}")
        return

    main_name = library_filename(platform_id)
    # Alphabetical order loads ggml-base before ggml-cpu before ggml
    for dependency in sorted(lib_dir.iterdir()):
        if dependency.name == main_name or not _is_shared_library(dependency.name):
            continue
        if str(dependency) in _preloaded:
            continue
        try:
            ctypes.CDLL(str(dependency), mode=ctypes.RTLD_GLOBAL)
            _preloaded.add(str(dependency))
        except OSError as e:
            # The main library load reports the definitive failure
            debug_log(f"[NATIVE] Could not preload {dependency.name}: {e}")


def load_library(path: Path, platform_id: str = None):
    """
    Load a shared library after extending the search path to its directory.

    Args:
        path: Path to the shared library

    Returns:
        ctypes.CDLL handle

    Raises:
        LoadError: If the file is missing or the loader cannot resolve it
    """
    path = Path(path)
    if not path.exists():
        raise LoadError("The AI runtime library is not installed. Please download it first.",
                        detail=f"missing native library: {path}")

    extend_search_path(path.parent, platform_id)
    try:
        handle = ctypes.CDLL(str(path), mode=ctypes.RTLD_GLOBAL)
    except OSError as e:
        raise LoadError("The AI runtime library could not be loaded on this computer.",
                        detail=f"failed to load {path}: {e}") from e

    debug_log(f"[NATIVE] Loaded library: {path}")
    return handle


def call(handle, symbol: str, *args, restype=None, argtypes=None):
    """
    Call an exported function on a loaded library.

    Raises:
        LoadError: If the symbol does not resolve
    """
    try:
        function = getattr(handle, symbol)
    except AttributeError as e:
        raise LoadError("The AI runtime library is incompatible with this version of Hamorah.",
                        detail=f"unresolved symbol: {symbol}") from e
    function.restype = restype
    if argtypes is not None:
        function.argtypes = argtypes
    return function(*args)


def system_info(handle) -> str:
    """Backend capability string reported by llama.cpp (also proves symbols resolve)."""
    raw = call(handle, 'llama_print_system_info', restype=ctypes.c_char_p, argtypes=[])
    return raw.decode('utf-8', errors='replace') if raw else ''


def bind_runtime(lib_path: Path, platform_id: str = None) -> str:
    """
    Load and validate the llama.cpp library, then point llama-cpp-python at it.

    Must run before llama_cpp is first imported; the binding reads
    LLAMA_CPP_LIB_PATH at import time.

    Returns:
        The library's system info string
    """
    handle = load_library(lib_path, platform_id)
    info = system_info(handle)
    os.environ['LLAMA_CPP_LIB_PATH'] = str(Path(lib_path).parent)
    debug_log(f"[NATIVE] System info: {info.strip()}")
    return info


def extract_library_archive(archive: Path, lib_dir: Path, platform_id: str = None) -> Path:
    """
    Install a llama.cpp release archive into lib_dir.

    Every shared library in the archive is copied flat into lib_dir so the
    main library's dependencies sit beside it. The archive is removed.

    Returns:
        Path to the main library

    Raises:
        LoadError: If the archive is unreadable or holds no llama library
    """
    archive = Path(archive)
    lib_dir = Path(lib_dir)
    target = library_path(lib_dir, platform_id)

    try:
        with zipfile.ZipFile(archive) as zf:
            zf.extractall(lib_dir)
    except (zipfile.BadZipFile, OSError) as e:
        raise LoadError("The downloaded AI runtime archive is damaged. Please download it again.",
                        detail=f"failed to extract {archive}: {e}") from e

    for entry in list(lib_dir.rglob('*')):
        if not entry.is_file() or not _is_shared_library(entry.name):
            continue
        if entry.parent != lib_dir:
            shutil.copy2(entry, lib_dir / entry.name)
        # Some Windows builds name the main library libllama.dll
        if entry.name.lower() == 'libllama.dll' and not target.exists():
            shutil.copy2(entry, target)

    archive.unlink(missing_ok=True)

    if not target.exists():
        raise LoadError("The downloaded AI runtime does not contain the llama library.",
                        detail=f"{target.name} not found in {archive.name}")

    debug_log(f"[NATIVE] Extracted runtime library to {lib_dir}")
    return target
