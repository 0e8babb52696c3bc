"""
Secure Preference Store for Hamorah
Key-value storage for the provider selection and the cloud API credential.

The inference engine only depends on the PreferenceStore interface
(read/write/delete). The host application may plug in a platform keychain;
JsonPreferenceStore is the default file-backed implementation.
"""

import json
import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path


class PreferenceStoreError(Exception):
    """Raised when a preference cannot be written or deleted."""


class PreferenceStore(ABC):
    """Interface for the secure preference store collaborator."""

    @abstractmethod
    def read(self, key: str) -> str | None:
        """Return the stored value, or None if absent."""

    @abstractmethod
    def write(self, key: str, value: str) -> None:
        """Store a value. Raises PreferenceStoreError on failure."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove a value. Missing keys are not an error."""


class JsonPreferenceStore(PreferenceStore):
    """
    Preference store backed by a JSON file readable only by the current user.

    Reads tolerate a missing or corrupted file (treated as empty). Writes
    raise PreferenceStoreError so callers can surface the failure.
    """

    def __init__(self, preferences_file: Path):
        """
        Initialize the store.

        Args:
            preferences_file: Path to the JSON file (created on first write)
        """
        self.preferences_file = Path(preferences_file)
        self._lock = threading.Lock()

    def _load(self) -> dict[str, str]:
        """
        Load preferences from the JSON file.

        Returns:
            dict: Stored preferences, or an empty dict if the file is missing
        """
        if not self.preferences_file.exists():
            return {}
        with open(self.preferences_file, encoding='utf-8') as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Preferences file is not a JSON object: {self.preferences_file}")
        return data

    def _save(self, data: dict[str, str]) -> None:
        """Write preferences atomically with owner-only permissions."""
        try:
            self.preferences_file.parent.mkdir(parents=True, exist_ok=True)
            temp_path = self.preferences_file.with_suffix('.tmp')
            with open(temp_path, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2)
            os.chmod(temp_path, 0o600)
            os.replace(temp_path, self.preferences_file)
        except OSError as e:
            raise PreferenceStoreError(f"Could not save preferences: {e}") from e

    def read(self, key: str) -> str | None:
        with self._lock:
            try:
                value = self._load().get(key)
            except (OSError, ValueError):
                return None
        return value if isinstance(value, str) else None

    def write(self, key: str, value: str) -> None:
        with self._lock:
            try:
                data = self._load()
            except (OSError, ValueError):
                # Corrupted file: start over rather than refuse every write
                data = {}
            data[key] = value
            self._save(data)

    def delete(self, key: str) -> None:
        with self._lock:
            try:
                data = self._load()
            except (OSError, ValueError):
                data = {}
            if key in data:
                del data[key]
                self._save(data)


# Global instance
_preference_store = None


def get_preference_store(preferences_file: Path = None) -> PreferenceStore:
    """
    Get the global preference store (singleton pattern).

    Args:
        preferences_file: Optional path to preferences file (only used on first call)

    Returns:
        PreferenceStore: The global preference store
    """
    global _preference_store

    if _preference_store is None:
        if preferences_file is None:
            from .config import PREFERENCES_FILE
            preferences_file = PREFERENCES_FILE

        _preference_store = JsonPreferenceStore(preferences_file)

    return _preference_store
