"""
Namespaced key/value persistence for settings, collections and graphs.

Two implementations share the `KeyValueStore` protocol: an in-memory store
and a JSON file store protected by an HMAC so that edits made outside the
scanner are detected on load.
"""

import copy
import hashlib
import hmac
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Protocol, runtime_checkable

from .exceptions import PersistenceError, TamperingError


@runtime_checkable
class KeyValueStore(Protocol):
    """get/set of JSON-serializable values under (namespace, key)."""

    def get(self, namespace: str, key: str, default: Any = None) -> Any:
        ...

    def set(self, namespace: str, key: str, value: Any) -> None:
        ...


class MemoryStore:
    """Process-local store. Values are deep-copied in and out."""

    def __init__(self, initial: Optional[dict] = None) -> None:
        self._data: dict[str, dict[str, Any]] = copy.deepcopy(initial) if initial else {}

    def get(self, namespace: str, key: str, default: Any = None) -> Any:
        if key not in self._data.get(namespace, {}):
            return default
        return copy.deepcopy(self._data[namespace][key])

    def set(self, namespace: str, key: str, value: Any) -> None:
        self._data.setdefault(namespace, {})[key] = copy.deepcopy(value)

    def dump(self) -> dict:
        return copy.deepcopy(self._data)


class JsonFileStore:
    """
    File-backed store with HMAC protection.

    The whole file is rewritten on every `set`. The HMAC-SHA256 covers the
    serialized `version`, `namespaces` and `last_updated` fields.
    """

    VERSION = 1

    def __init__(self, file_path: Path, hmac_secret: str) -> None:
        """
        Initialize the store.

        Args:
            file_path: Path to the state file (JSON format)
            hmac_secret: Secret key for HMAC computation
        """
        self._file_path = Path(file_path)
        self._hmac_secret = hmac_secret.encode("utf-8")
        self._data: Optional[dict[str, dict[str, Any]]] = None

    @property
    def file_path(self) -> Path:
        """Get the state file path."""
        return self._file_path

    def load(self) -> dict:
        """
        Load and validate the state file.

        Returns:
            The namespaces mapping (empty if the file does not exist)

        Raises:
            TamperingError: If HMAC validation fails
            PersistenceError: If the file cannot be read or parsed
        """
        if not self._file_path.exists():
            self._data = {}
            return {}

        try:
            with open(self._file_path, "r", encoding="utf-8") as f:
                raw_data = json.load(f)
        except json.JSONDecodeError as e:
            raise PersistenceError(
                code="parse_error",
                message=f"Failed to parse state file: {e}",
                details={"file_path": str(self._file_path)},
            )
        except OSError as e:
            raise PersistenceError(
                code="io_error",
                message=f"Failed to read state file: {e}",
                details={"file_path": str(self._file_path)},
            )

        if not isinstance(raw_data, dict):
            raise PersistenceError(
                code="parse_error",
                message="State file does not contain a JSON object",
                details={"file_path": str(self._file_path)},
            )

        stored_hmac = raw_data.get("hmac", "")
        computed_hmac = self.compute_hmac({
            "version": raw_data.get("version"),
            "namespaces": raw_data.get("namespaces", {}),
            "last_updated": raw_data.get("last_updated"),
        })

        if not self.validate_hmac(stored_hmac, computed_hmac):
            raise TamperingError(
                code="hmac_mismatch",
                message="HMAC validation failed - data may have been tampered with",
                details={"file_path": str(self._file_path)},
            )

        namespaces = raw_data.get("namespaces", {})
        self._data = namespaces if isinstance(namespaces, dict) else {}
        return copy.deepcopy(self._data)

    def _loaded(self) -> dict[str, dict[str, Any]]:
        if self._data is None:
            self.load()
        return self._data

    def get(self, namespace: str, key: str, default: Any = None) -> Any:
        values = self._loaded().get(namespace, {})
        if key not in values:
            return default
        return copy.deepcopy(values[key])

    def set(self, namespace: str, key: str, value: Any) -> None:
        """
        Store a value and rewrite the file.

        The cached state only changes once the file has been written, so a
        failed write leaves both the file and later reads unchanged.

        Raises:
            PersistenceError: If the file cannot be written
        """
        data = copy.deepcopy(self._loaded())
        data.setdefault(namespace, {})[key] = copy.deepcopy(value)
        self._write(data)
        self._data = data

    def save(self) -> None:
        self._write(self._loaded())

    def _write(self, data: dict[str, dict[str, Any]]) -> None:
        now = datetime.now(timezone.utc).isoformat()
        try:
            computed_hmac = self.compute_hmac({
                "version": self.VERSION,
                "namespaces": data,
                "last_updated": now,
            })
            output_data = {
                "version": self.VERSION,
                "namespaces": data,
                "last_updated": now,
                "hmac": computed_hmac,
            }
            self._file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._file_path, "w", encoding="utf-8") as f:
                json.dump(output_data, f, indent=2, sort_keys=True)
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(
                code="io_error",
                message=f"Failed to write state file: {e}",
                details={"file_path": str(self._file_path)},
            )

    def compute_hmac(self, data: dict) -> str:
        """Compute HMAC-SHA256 over the canonical JSON serialization of data."""
        serialized = json.dumps(data, sort_keys=True, separators=(",", ":"))
        return hmac.new(
            self._hmac_secret,
            serialized.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def validate_hmac(self, stored_hmac: str, computed_hmac: str) -> bool:
        """Validate HMAC using constant-time comparison."""
        if not isinstance(stored_hmac, str):
            return False
        return hmac.compare_digest(stored_hmac, computed_hmac)
