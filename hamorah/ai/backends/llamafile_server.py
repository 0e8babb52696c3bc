"""
Llamafile Server Backend for Hamorah
Runs a self-contained llamafile executable as a detached local HTTP server
and talks to its OpenAI-compatible chat endpoint.

The server binds a fixed local port. A previous crashed run can leave a
server holding it, so load() first terminates whatever listens there, and
unload() releases it again.
"""

import asyncio
import os
import stat
import subprocess
import sys
from collections.abc import AsyncIterator
from pathlib import Path

import psutil
import requests

from ...config import (
    DEFAULT_TEMPERATURE,
    LLAMAFILE_DIR,
    LOCAL_CONTEXT_TOKENS,
    LOCAL_SERVER_HEALTH_INTERVAL_SECONDS,
    LOCAL_SERVER_HEALTH_RETRIES,
    LOCAL_SERVER_HEALTH_TIMEOUT_SECONDS,
    LOCAL_SERVER_HOST,
    LOCAL_SERVER_PORT,
    LOCAL_SERVER_SHUTDOWN_SECONDS,
    LOCAL_SERVER_TIMEOUT_SECONDS,
)
from ...logging_config import debug_log, warning
from ..artifacts import ModelArtifact, artifact_from_catalog
from ..errors import GenerationError, LoadError, NetworkError
from ..model_store import ModelStore
from ..prompt_formatter import BuiltPrompt, PromptStyle
from .base import BackendHandle, BackendKind, InferenceBackend

MODEL_ARTIFACT_ID = 'tinyllama-llamafile'
PROCESS_NAME_HINTS = ('llamafile', 'tinyllama')


def _stop_process(proc: psutil.Process, timeout: float = LOCAL_SERVER_SHUTDOWN_SECONDS) -> bool:
    """Terminate, then kill if it outlives the timeout. True if the process is gone."""
    try:
        proc.terminate()
        try:
            proc.wait(timeout=timeout)
        except psutil.TimeoutExpired:
            proc.kill()
            proc.wait(timeout=timeout)
        return True
    except psutil.NoSuchProcess:
        return True
    except (psutil.AccessDenied, psutil.TimeoutExpired) as e:
        warning(f"[LLAMAFILE] Could not stop process {proc.pid}: {e}")
        return False


def _listening_pids(port: int) -> set[int]:
    """PIDs listening on a TCP port. Empty when the OS denies the connection table."""
    try:
        connections = psutil.net_connections(kind='tcp')
    except psutil.AccessDenied:
        debug_log("[LLAMAFILE] Connection table not readable, falling back to process scan")
        return set()
    return {
        conn.pid for conn in connections
        if conn.pid and conn.laddr and conn.laddr.port == port and conn.status == psutil.CONN_LISTEN
    }


def _matching_server_pids(port: int) -> set[int]:
    """PIDs of llamafile servers started with this port, found by command line."""
    pids = set()
    for proc in psutil.process_iter(['pid', 'name', 'cmdline']):
        name = (proc.info.get('name') or '').lower()
        cmdline = [part.lower() for part in (proc.info.get('cmdline') or [])]
        looks_like_server = any(hint in name or any(hint in part for part in cmdline) for hint in PROCESS_NAME_HINTS)
        if looks_like_server and str(port) in cmdline:
            pids.add(proc.info['pid'])
    return pids


def free_port(port: int) -> int:
    """
    Terminate any leftover process bound to the port.

    Returns:
        int: Number of processes stopped
    """
    pids = _listening_pids(port) or _matching_server_pids(port)
    pids.discard(os.getpid())

    stopped = 0
    for pid in pids:
        try:
            proc = psutil.Process(pid)
        except psutil.NoSuchProcess:
            continue
        debug_log(f"[LLAMAFILE] Stopping stale process {pid} ({proc.name()}) on port {port}")
        if _stop_process(proc):
            stopped += 1
    return stopped


class LlamafileBackend(InferenceBackend):
    """Local-server backend: detached llamafile process + HTTP chat completions."""

    kind = BackendKind.LOCAL_SERVER

    def __init__(
        self,
        model_store: ModelStore = None,
        llamafile_dir: Path = LLAMAFILE_DIR,
        host: str = LOCAL_SERVER_HOST,
        port: int = LOCAL_SERVER_PORT,
        platform_id: str = None,
        model_artifact: ModelArtifact = None,
        health_retries: int = LOCAL_SERVER_HEALTH_RETRIES,
        health_interval: float = LOCAL_SERVER_HEALTH_INTERVAL_SECONDS,
    ):
        super().__init__(model_store)
        self.platform_id = platform_id or sys.platform
        self.host = host
        self.port = port
        self.health_retries = health_retries
        self.health_interval = health_interval
        self._model_artifact = model_artifact or artifact_from_catalog(MODEL_ARTIFACT_ID, llamafile_dir, self.platform_id)
        self.last_usage: dict | None = None

    @property
    def model_artifact(self) -> ModelArtifact:
        return self._model_artifact

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    @property
    def prompt_style(self) -> PromptStyle:
        return PromptStyle.MESSAGES

    def on_artifact_downloaded(self, artifact: ModelArtifact) -> None:
        if self.platform_id != 'win32':
            path = artifact.destination_path
            path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
            debug_log(f"[LLAMAFILE] Marked executable: {path}")

    # -------------------------------------------------------------------------
    # Server lifecycle
    # -------------------------------------------------------------------------

    def _spawn(self) -> subprocess.Popen:
        path = self._model_artifact.destination_path
        command = [
            str(path),
            '--server',
            '--port', str(self.port),
            '--host', self.host,
            '-c', str(LOCAL_CONTEXT_TOKENS),
            '-ngl', '0',  # CPU only for compatibility
            '--nobrowser',
        ]
        if self.platform_id == 'win32':
            detach = {'creationflags': subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP}
        else:
            detach = {'start_new_session': True}

        debug_log(f"[LLAMAFILE] Starting server: {' '.join(command)}")
        try:
            return subprocess.Popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                **detach,
            )
        except OSError as e:
            raise LoadError("Failed to start AI server. Please try again.",
                            detail=f"could not execute {path}: {e}") from e

    def check_health(self) -> bool:
        """True if the server answers GET /health with 200."""
        try:
            response = requests.get(f"{self.base_url}/health", timeout=LOCAL_SERVER_HEALTH_TIMEOUT_SECONDS)
            return response.status_code == 200
        except requests.RequestException:
            return False

    async def _load(self) -> BackendHandle:
        stopped = await asyncio.to_thread(free_port, self.port)
        if stopped:
            debug_log(f"[LLAMAFILE] Reclaimed port {self.port} from {stopped} stale process(es)")

        process = await asyncio.to_thread(self._spawn)
        ready = False
        try:
            for attempt in range(1, self.health_retries + 1):
                await asyncio.sleep(self.health_interval)

                if process.poll() is not None:
                    raise LoadError("Failed to start AI server. Please try again.",
                                    detail=f"server exited with code {process.returncode}")

                if await asyncio.to_thread(self.check_health):
                    debug_log(f"[LLAMAFILE] Server ready on port {self.port} after {attempt} checks")
                    ready = True
                    return BackendHandle(kind=self.kind, model_path=self._model_artifact.destination_path, ref=process)

            raise LoadError("The AI server did not start in time. Please try again.",
                            detail=f"no healthy response after {self.health_retries} attempts")
        finally:
            if not ready:
                # Includes cancellation while polling
                self._terminate(process)

    @staticmethod
    def _terminate(process: subprocess.Popen) -> None:
        if process.poll() is not None:
            return
        process.terminate()
        try:
            process.wait(timeout=LOCAL_SERVER_SHUTDOWN_SECONDS)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait(timeout=LOCAL_SERVER_SHUTDOWN_SECONDS)

    async def _unload(self, handle: BackendHandle) -> None:
        await asyncio.to_thread(self._terminate, handle.ref)
        await asyncio.to_thread(free_port, self.port)
        handle.ref = None

    # -------------------------------------------------------------------------
    # Generation
    # -------------------------------------------------------------------------

    def _post_chat(self, messages: list[dict[str, str]], max_tokens: int) -> str:
        try:
            response = requests.post(
                f"{self.base_url}/v1/chat/completions",
                json={
                    'messages': messages,
                    'max_tokens': max_tokens,
                    'temperature': DEFAULT_TEMPERATURE,
                    'stream': False,
                },
                timeout=LOCAL_SERVER_TIMEOUT_SECONDS,
            )
        except requests.Timeout as e:
            raise NetworkError("The AI server took too long to respond. Please try again.", detail=str(e)) from e
        except requests.RequestException as e:
            raise NetworkError("Could not reach the AI server. Please try again.", detail=str(e)) from e

        if not response.ok:
            raise NetworkError(f"AI error: {response.status_code}", detail=response.text[:200])

        try:
            data = response.json()
            content = data['choices'][0]['message']['content']
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise GenerationError("The AI server returned an unreadable response.", detail=str(e)) from e

        self.last_usage = data.get('usage') if isinstance(data.get('usage'), dict) else None
        return content or ""

    async def _generate(self, prompt: BuiltPrompt, max_tokens: int) -> AsyncIterator[str]:
        debug_log(f"[LLAMAFILE] Sending {len(prompt.messages)} messages")
        content = await asyncio.to_thread(self._post_chat, prompt.messages, max_tokens)
        if content:
            yield content

    def get_model_info(self) -> dict:
        info = super().get_model_info()
        info['server_url'] = self.base_url
        return info
