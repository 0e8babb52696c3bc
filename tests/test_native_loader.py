"""
Tests for the native library loader.

These tests verify:
1. Runtime archives are installed flat with the main library at its expected name
2. The search path is extended before the main library loads
3. Missing files and symbols surface as LoadError
"""

import os
import zipfile
from types import SimpleNamespace
from unittest.mock import MagicMock, call, patch

import pytest

from hamorah.ai import native_loader
from hamorah.ai.errors import LoadError


class TestLibraryNames:
    """Test per-platform library names."""

    def test_library_filename(self):
        assert native_loader.library_filename('win32') == 'llama.dll'
        assert native_loader.library_filename('darwin') == 'libllama.dylib'
        assert native_loader.library_filename('linux') == 'libllama.so'

    def test_shared_library_detection(self):
        assert native_loader._is_shared_library('ggml-cpu.DLL')
        assert native_loader._is_shared_library('libggml.so.1')
        assert not native_loader._is_shared_library('llama-cli.exe')
        assert not native_loader._is_shared_library('LICENSE')


class TestExtractLibraryArchive:
    """Test installing a downloaded runtime archive."""

    def test_flattens_nested_libraries(self, tmp_path):
        archive = tmp_path / "llama.zip"
        with zipfile.ZipFile(archive, 'w') as zf:
            zf.writestr("llama-b7626/lib/libllama.dylib", b"main")
            zf.writestr("llama-b7626/lib/libggml-metal.dylib", b"metal")
            zf.writestr("llama-b7626/README.md", "docs")

        target = native_loader.extract_library_archive(archive, tmp_path, 'darwin')

        assert target == tmp_path / "libllama.dylib"
        assert target.read_bytes() == b"main"
        assert (tmp_path / "libggml-metal.dylib").exists()
        assert not (tmp_path / "README.md").exists()
        assert not archive.exists()

    def test_windows_libllama_renamed(self, tmp_path):
        """Some Windows builds ship libllama.dll instead of llama.dll."""
        archive = tmp_path / "llama.zip"
        with zipfile.ZipFile(archive, 'w') as zf:
            zf.writestr("bin/libllama.dll", b"main")
            zf.writestr("bin/ggml.dll", b"dep")

        target = native_loader.extract_library_archive(archive, tmp_path, 'win32')

        assert target.name == "llama.dll"
        assert target.read_bytes() == b"main"

    def test_archive_without_library(self, tmp_path):
        archive = tmp_path / "llama.zip"
        with zipfile.ZipFile(archive, 'w') as zf:
            zf.writestr("bin/llama-cli", b"tool")

        with pytest.raises(LoadError) as exc_info:
            native_loader.extract_library_archive(archive, tmp_path, 'linux')

        assert "does not contain" in exc_info.value.user_message

    def test_damaged_archive(self, tmp_path):
        archive = tmp_path / "llama.zip"
        archive.write_bytes(b"<html>404</html>")

        with pytest.raises(LoadError) as exc_info:
            native_loader.extract_library_archive(archive, tmp_path, 'linux')

        assert "damaged" in exc_info.value.user_message


class TestSearchPath:
    """Test dependency resolution setup."""

    def test_windows_adds_dll_directory_once(self, tmp_path, monkeypatch):
        add_dll_directory = MagicMock()
        monkeypatch.setattr(native_loader.os, 'add_dll_directory', add_dll_directory, raising=False)
        monkeypatch.setattr(native_loader, '_dll_directories', {})
        monkeypatch.setenv('PATH', '/usr/bin')

        native_loader.extend_search_path(tmp_path, 'win32')
        native_loader.extend_search_path(tmp_path, 'win32')

        add_dll_directory.assert_called_once_with(str(tmp_path))
        assert os.environ['PATH'] == str(tmp_path) + os.pathsep + '/usr/bin'

    def test_unix_preloads_dependencies_in_order(self, tmp_path, monkeypatch):
        for name in ("libllama.so", "libggml.so", "libggml-base.so", "notes.txt"):
            (tmp_path / name).write_bytes(b"x")
        monkeypatch.setattr(native_loader, '_preloaded', set())

        with patch('hamorah.ai.native_loader.ctypes.CDLL') as mock_cdll:
            native_loader.extend_search_path(tmp_path, 'linux')

        loaded = [c.args[0] for c in mock_cdll.call_args_list]
        assert loaded == [str(tmp_path / "libggml-base.so"), str(tmp_path / "libggml.so")]

    def test_preload_failure_is_not_fatal(self, tmp_path, monkeypatch):
        (tmp_path / "libggml.so").write_bytes(b"x")
        monkeypatch.setattr(native_loader, '_preloaded', set())

        with patch('hamorah.ai.native_loader.ctypes.CDLL', side_effect=OSError("wrong ELF class")):
            native_loader.extend_search_path(tmp_path, 'linux')


class TestLoadAndCall:
    """Test loading and symbol calls."""

    def test_missing_library(self, tmp_path):
        with pytest.raises(LoadError) as exc_info:
            native_loader.load_library(tmp_path / "libllama.so", 'linux')
        assert "not installed" in exc_info.value.user_message

    def test_unloadable_library(self, tmp_path, monkeypatch):
        library = tmp_path / "libllama.so"
        library.write_bytes(b"not an ELF")
        monkeypatch.setattr(native_loader, '_preloaded', set())

        with patch('hamorah.ai.native_loader.ctypes.CDLL', side_effect=OSError("invalid ELF header")):
            with pytest.raises(LoadError) as exc_info:
                native_loader.load_library(library, 'linux')

        assert "invalid ELF header" in str(exc_info.value)

    def test_call_resolves_symbol(self):
        function = MagicMock(return_value=b"AVX = 1 | NEON = 0")
        handle = SimpleNamespace(llama_print_system_info=function)

        assert native_loader.system_info(handle) == "AVX = 1 | NEON = 0"
        function.assert_called_once_with()

    def test_unresolved_symbol(self):
        with pytest.raises(LoadError) as exc_info:
            native_loader.call(SimpleNamespace(), 'llama_backend_init')
        assert "llama_backend_init" in str(exc_info.value)

    def test_bind_runtime_points_binding_at_library(self, tmp_path, monkeypatch):
        monkeypatch.setenv('LLAMA_CPP_LIB_PATH', '')
        library = tmp_path / "libllama.so"
        handle = object()

        with patch('hamorah.ai.native_loader.load_library', return_value=handle) as mock_load, \
                patch('hamorah.ai.native_loader.system_info', return_value="CPU : SSE3 = 1") as mock_info:
            info = native_loader.bind_runtime(library, 'linux')

        assert info == "CPU : SSE3 = 1"
        assert os.environ['LLAMA_CPP_LIB_PATH'] == str(tmp_path)
        mock_load.assert_called_once_with(library, 'linux')
        assert mock_info.call_args == call(handle)
