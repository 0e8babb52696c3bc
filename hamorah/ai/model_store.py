"""
Model Store for Hamorah
Manages on-disk artifacts: presence checks, resumable streamed downloads with
progress, cancellation, and deletion.

Download protocol:
- Bytes stream into `<final>.downloading`; an existing partial file is resumed
  with an HTTP Range request.
- On stream completion the received size is checked against the expected size
  (1% tolerance) and the partial file is atomically renamed over the final path.
- Failures and cancellation leave the partial file for a later resume and never
  touch a previously completed artifact.
"""

import asyncio
import os
import re
import threading
from collections.abc import AsyncIterator

import requests

from ..config import (
    DOWNLOAD_CHUNK_BYTES,
    DOWNLOAD_CONNECT_TIMEOUT_SECONDS,
    DOWNLOAD_READ_TIMEOUT_SECONDS,
    DOWNLOAD_SIZE_TOLERANCE,
)
from ..logging_config import debug_log, warning
from .artifacts import (
    Complete,
    DownloadProgress,
    DownloadState,
    InProgress,
    ModelArtifact,
    NotStarted,
    ProgressStatus,
)
from .errors import DownloadError

_CONTENT_RANGE_TOTAL = re.compile(r'/(\d+)\s*$')


def format_size(size_bytes: float) -> str:
    """Format bytes to human-readable size."""
    for unit in ['B', 'KB', 'MB', 'GB']:
        if size_bytes < 1024:
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024
    return f"{size_bytes:.1f} TB"


class ModelStore:
    """
    Downloads and tracks model artifacts on disk.

    One download per artifact may run at a time. Progress is reported as an
    async stream of DownloadProgress events ending in exactly one terminal
    event (COMPLETE, CANCELLED or FAILED); download() never raises.
    """

    def __init__(
        self,
        chunk_size: int = DOWNLOAD_CHUNK_BYTES,
        size_tolerance: float = DOWNLOAD_SIZE_TOLERANCE,
        timeout: tuple[float, float] = (DOWNLOAD_CONNECT_TIMEOUT_SECONDS, DOWNLOAD_READ_TIMEOUT_SECONDS),
    ):
        self.chunk_size = chunk_size
        self.size_tolerance = size_tolerance
        self.timeout = timeout
        self._cancel_events: dict[str, threading.Event] = {}
        self._responses: dict[str, requests.Response] = {}
        self._active: dict[str, tuple[int, int]] = {}  # artifact id -> (received, total)

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    def is_present(self, artifact: ModelArtifact) -> bool:
        """True if the final file exists and is larger than the plausibility threshold."""
        path = artifact.destination_path
        try:
            return path.is_file() and path.stat().st_size > artifact.min_size_bytes
        except OSError as e:
            debug_log(f"[MODEL STORE] Error checking {path}: {e}")
            return False

    def get_size(self, artifact: ModelArtifact) -> int:
        """Size of the final file in bytes, or 0 if absent."""
        try:
            return artifact.destination_path.stat().st_size
        except OSError:
            return 0

    def status(self, artifact: ModelArtifact) -> DownloadState:
        """
        Derive the download state from the filesystem and any running download.

        Returns:
            Complete, InProgress or NotStarted. A final file below the size
            threshold counts as absent.
        """
        if artifact.id in self._active:
            received, total = self._active[artifact.id]
            return InProgress(received, total)

        if self.is_present(artifact):
            return Complete()

        try:
            partial_size = artifact.temp_path.stat().st_size
        except OSError:
            return NotStarted()
        return InProgress(partial_size, artifact.expected_size_bytes)

    def is_downloading(self, artifact: ModelArtifact) -> bool:
        return artifact.id in self._cancel_events

    # -------------------------------------------------------------------------
    # Download
    # -------------------------------------------------------------------------

    def cancel(self, artifact: ModelArtifact) -> None:
        """Request cancellation of a running download (no-op if none)."""
        event = self._cancel_events.get(artifact.id)
        if event is None:
            return
        debug_log(f"[MODEL STORE] Cancelling download: {artifact.id}")
        event.set()
        response = self._responses.get(artifact.id)
        if response is not None:
            response.close()  # Unblocks a read stalled on the socket

    def cancel_all(self) -> None:
        for artifact_id, event in list(self._cancel_events.items()):
            event.set()
            response = self._responses.get(artifact_id)
            if response is not None:
                response.close()

    async def download(self, artifact: ModelArtifact, force: bool = False) -> AsyncIterator[DownloadProgress]:
        """
        Download an artifact, yielding progress events.

        Args:
            artifact: What to download
            force: Re-download even if a complete file is present. The existing
                   file is only replaced once the new download is verified.

        Yields:
            DownloadProgress events; the last one is terminal.
        """
        if artifact.id in self._cancel_events:
            yield self._event(artifact, ProgressStatus.FAILED, reason="Download already in progress")
            return

        if not force and self.is_present(artifact):
            size = self.get_size(artifact)
            debug_log(f"[MODEL STORE] {artifact.id} already downloaded ({format_size(size)})")
            yield self._event(artifact, ProgressStatus.COMPLETE, size, size, 1.0)
            return

        cancel_event = threading.Event()
        self._cancel_events[artifact.id] = cancel_event
        self._active[artifact.id] = (0, artifact.expected_size_bytes)
        temp_path = artifact.temp_path
        handle = None
        received = 0
        total = artifact.expected_size_bytes

        try:
            artifact.destination_path.parent.mkdir(parents=True, exist_ok=True)

            start_byte = temp_path.stat().st_size if temp_path.exists() else 0
            headers = {'Range': f'bytes={start_byte}-'} if start_byte > 0 else {}
            if start_byte:
                debug_log(f"[MODEL STORE] Resuming {artifact.id} from byte {start_byte}")
            debug_log(f"[MODEL STORE] Downloading {artifact.source_url} -> {temp_path}")

            response = await asyncio.to_thread(self._open_stream, artifact.source_url, headers)
            self._responses[artifact.id] = response

            if cancel_event.is_set():
                yield self._event(artifact, ProgressStatus.CANCELLED, start_byte, total)
                return

            if response.status_code == 416 and start_byte > 0:
                # Range starts at or past the end; check the partial against the real size
                received = start_byte
                total = self._unsatisfiable_total(response) or artifact.expected_size_bytes
            elif response.status_code in (200, 206):
                if response.status_code == 200 and start_byte > 0:
                    debug_log("[MODEL STORE] Server ignored Range header, restarting from byte 0")
                    start_byte = 0

                total = self._total_size(response, start_byte) or artifact.expected_size_bytes
                received = start_byte
                handle = open(temp_path, 'ab' if start_byte > 0 else 'wb')
                chunks = iter(response.iter_content(chunk_size=self.chunk_size))

                while True:
                    if cancel_event.is_set():
                        debug_log(f"[MODEL STORE] Download cancelled at {received} bytes")
                        yield self._event(artifact, ProgressStatus.CANCELLED, received, total)
                        return

                    written = await asyncio.to_thread(self._pump_chunk, chunks, handle)
                    if written is None:
                        break

                    received += written
                    self._active[artifact.id] = (received, total)
                    fraction = min(received / total, 0.99) if total > 0 else 0.0
                    yield self._event(artifact, ProgressStatus.RUNNING, received, total, fraction)

                handle.close()
                handle = None
            else:
                raise DownloadError(
                    f"Download failed: server returned HTTP {response.status_code}",
                    detail=f"HTTP {response.status_code} for {artifact.source_url}",
                )

            self._verify_size(artifact, received, total)
            await asyncio.to_thread(os.replace, temp_path, artifact.destination_path)

            debug_log(f"[MODEL STORE] Download complete: {artifact.destination_path} ({format_size(received)})")
            yield self._event(artifact, ProgressStatus.COMPLETE, received, total, 1.0)

        except DownloadError as e:
            warning(f"[MODEL STORE] {artifact.id}: {e}")
            yield self._event(artifact, ProgressStatus.FAILED, received, total, reason=e.user_message)
        except Exception as e:
            # Closing the response on cancel surfaces as a read error in the worker thread
            if cancel_event.is_set():
                debug_log(f"[MODEL STORE] Download cancelled at {received} bytes")
                yield self._event(artifact, ProgressStatus.CANCELLED, received, total)
            else:
                warning(f"[MODEL STORE] Download of {artifact.id} failed: {e}")
                yield self._event(artifact, ProgressStatus.FAILED, received, total, reason=self._describe(e))
        finally:
            if handle is not None:
                handle.close()
            response = self._responses.pop(artifact.id, None)
            if response is not None:
                response.close()
            self._cancel_events.pop(artifact.id, None)
            self._active.pop(artifact.id, None)

    def _open_stream(self, url: str, headers: dict[str, str]) -> requests.Response:
        """Open a streaming GET that follows redirects."""
        return requests.get(
            url,
            headers=headers,
            stream=True,
            allow_redirects=True,
            timeout=self.timeout,
        )

    @staticmethod
    def _pump_chunk(chunks, handle) -> int | None:
        """Write the next non-empty chunk; None at end of stream."""
        for chunk in chunks:
            if chunk:
                handle.write(chunk)
                return len(chunk)
        return None

    @staticmethod
    def _unsatisfiable_total(response: requests.Response) -> int:
        """Full artifact size from a 416 `Content-Range: bytes */N` header, or 0."""
        match = _CONTENT_RANGE_TOTAL.search(response.headers.get('Content-Range', ''))
        return int(match.group(1)) if match else 0

    @staticmethod
    def _total_size(response: requests.Response, start_byte: int) -> int:
        """Full artifact size from Content-Range (206) or Content-Length."""
        content_range = response.headers.get('Content-Range')
        if response.status_code == 206 and content_range:
            match = _CONTENT_RANGE_TOTAL.search(content_range)
            if match:
                return int(match.group(1))
        try:
            length = int(response.headers.get('Content-Length', 0))
        except (TypeError, ValueError):
            return 0
        if length <= 0:
            return 0
        return length + start_byte if response.status_code == 206 else length

    def _verify_size(self, artifact: ModelArtifact, received: int, total: int) -> None:
        """
        Check the received size before the final rename.

        Raises:
            DownloadError: On a size mismatch beyond tolerance or an implausibly small file
        """
        expected = total or artifact.expected_size_bytes
        if expected > 0 and abs(received - expected) > expected * self.size_tolerance:
            if received > expected:
                # Oversized partial data cannot be resumed
                artifact.temp_path.unlink(missing_ok=True)
            raise DownloadError(
                f"Download incomplete: {format_size(received)} of {format_size(expected)}",
                detail=f"size mismatch for {artifact.id}: {received} / {expected}",
            )
        if received <= artifact.min_size_bytes:
            raise DownloadError(
                "Downloaded file is too small to be valid",
                detail=f"{artifact.id}: {received} bytes <= minimum {artifact.min_size_bytes}",
            )

    @staticmethod
    def _describe(exc: Exception) -> str:
        if isinstance(exc, requests.exceptions.Timeout):
            return "Network timeout while downloading. Please try again."
        if isinstance(exc, requests.exceptions.ConnectionError):
            return "Network error. Please check your internet connection."
        if isinstance(exc, OSError):
            return f"Could not write the downloaded file: {exc}"
        return f"Download failed: {exc}"

    @staticmethod
    def _event(
        artifact: ModelArtifact,
        status: ProgressStatus,
        received: int = 0,
        total: int = 0,
        fraction: float = 0.0,
        reason: str | None = None,
    ) -> DownloadProgress:
        return DownloadProgress(
            status=status,
            received=received,
            total=total,
            fraction=fraction,
            reason=reason,
            artifact_id=artifact.id,
        )

    # -------------------------------------------------------------------------
    # Delete
    # -------------------------------------------------------------------------

    def delete(self, artifact: ModelArtifact) -> None:
        """
        Remove both the final and the partial file. Idempotent.

        Raises:
            DownloadError: If a file exists but cannot be removed
        """
        self.cancel(artifact)
        for path in (artifact.destination_path, artifact.temp_path):
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                raise DownloadError(f"Could not delete {path.name}", detail=str(e)) from e
        debug_log(f"[MODEL STORE] Deleted artifact: {artifact.id}")
