"""
Downloadable artifacts and their download state.

A ModelArtifact is immutable configuration built from config/models.yaml.
DownloadState is derived from the filesystem (final vs. partial file) and
never persisted.
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from ..config import DOWNLOAD_SUFFIX, get_artifact_config, platform_key


@dataclass(frozen=True)
class ModelArtifact:
    """One downloadable asset (model weights or native runtime library)."""
    id: str
    display_name: str
    source_url: str
    destination_path: Path
    expected_size_bytes: int
    min_size_bytes: int = 1
    model_family: str = ""

    @property
    def temp_path(self) -> Path:
        """In-progress downloads are written here and renamed on success."""
        return self.destination_path.with_name(self.destination_path.name + DOWNLOAD_SUFFIX)


def artifact_from_catalog(artifact_id: str, directory: Path, platform_id: str = None) -> ModelArtifact:
    """
    Build a ModelArtifact from its catalog entry.

    Args:
        artifact_id: Catalog key in config/models.yaml
        directory: Directory the artifact is stored in
        platform_id: sys.platform value used to pick per-platform URLs/filenames

    Returns:
        ModelArtifact
    """
    entry = get_artifact_config(artifact_id)
    key = platform_key(platform_id)

    url = entry.get('urls', {}).get(key) or entry.get('url')
    filename = entry.get('filenames', {}).get(key) or entry['filename']
    if not url:
        raise KeyError(f"Artifact {artifact_id} has no URL for platform {key}")

    return ModelArtifact(
        id=artifact_id,
        display_name=entry.get('display_name', artifact_id),
        source_url=url,
        destination_path=Path(directory) / filename,
        expected_size_bytes=int(entry.get('expected_size_bytes', 0)),
        min_size_bytes=int(entry.get('min_size_bytes', 1)),
        model_family=entry.get('model_family', ''),
    )


# =============================================================================
# Download state (derived)
# =============================================================================

class DownloadState:
    """Base class for the derived download state of an artifact."""

    @property
    def is_complete(self) -> bool:
        return isinstance(self, Complete)


@dataclass(frozen=True)
class NotStarted(DownloadState):
    pass


@dataclass(frozen=True)
class InProgress(DownloadState):
    bytes_received: int
    bytes_total: int


@dataclass(frozen=True)
class Complete(DownloadState):
    pass


@dataclass(frozen=True)
class Failed(DownloadState):
    reason: str


@dataclass(frozen=True)
class Cancelled(DownloadState):
    pass


class ProgressStatus(str, Enum):
    RUNNING = "running"
    COMPLETE = "complete"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class DownloadProgress:
    """
    One event from a download stream.

    fraction is clamped to [0, 0.99] while running and is exactly 1.0 only on
    the COMPLETE event. CANCELLED and FAILED are terminal and distinct.
    """
    status: ProgressStatus
    received: int = 0
    total: int = 0
    fraction: float = 0.0
    reason: str | None = None
    artifact_id: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.status != ProgressStatus.RUNNING

    def to_state(self) -> DownloadState:
        """The DownloadState this event corresponds to."""
        if self.status == ProgressStatus.COMPLETE:
            return Complete()
        if self.status == ProgressStatus.CANCELLED:
            return Cancelled()
        if self.status == ProgressStatus.FAILED:
            return Failed(self.reason or "Download failed")
        return InProgress(self.received, self.total)
