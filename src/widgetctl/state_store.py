"""Persisted state of previously created resources.

The store keeps one versioned JSON snapshot holding, per resource, its kind,
identifier, remote identity, dependencies and last-known attributes. That is
enough to compute the next diff without querying the provider.

CONCURRENCY:
- Writers hold a scoped lock (in-process and cross-process) for the whole
  replace; the lock is released on every exit path
- The snapshot is written to a temporary file and swapped in with
  os.replace, so readers only ever see a complete snapshot; the file and
  its directory are fsynced before save returns
- Readers take no lock; they may observe a stale but consistent snapshot
"""

from __future__ import annotations

import contextlib
import fcntl
import json
import logging
import os
import tempfile
import threading
from collections.abc import Iterator, Mapping
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel, Field, ValidationError

from .models import ResourceKind, StateRecord

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1
SUPPORTED_STATE_VERSIONS = frozenset({STATE_FORMAT_VERSION})


class StateError(Exception):
    """Raised when persisted state cannot be used."""

    def __init__(self, message: str, resource_id: str | None = None) -> None:
        super().__init__(message)
        self.resource_id = resource_id


class StateUnavailableError(StateError):
    """Raised when the backing store cannot be reached."""

    pass


class StateCorruptError(StateError):
    """Raised when the persisted snapshot is malformed."""

    pass


class StateVersionError(StateCorruptError):
    """Raised when the snapshot carries an unknown format version."""

    pass


class StateBackend(Protocol):
    """Opaque byte storage for the state snapshot."""

    def read(self) -> bytes | None:
        """Return the current snapshot, or None if nothing was ever written."""
        ...

    def write(self, data: bytes) -> None:
        """Atomically replace the snapshot."""
        ...

    def lock(self) -> contextlib.AbstractContextManager[None]:
        """Scoped exclusive write lock."""
        ...


class LocalFileBackend:
    """Snapshot stored in a local file, guarded by a sidecar lock file."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._lock_path = self._path.with_name(self._path.name + ".lock")

    @property
    def path(self) -> Path:
        return self._path

    def read(self) -> bytes | None:
        try:
            return self._path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StateUnavailableError(f"Cannot read state file {self._path}: {e}") from e

    def write(self, data: bytes) -> None:
        directory = self._path.parent
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self._path.name}.", suffix=".tmp", dir=directory
            )
        except OSError as e:
            raise StateUnavailableError(f"Cannot write state file {self._path}: {e}") from e

        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self._path)
        except OSError as e:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(tmp_name)
            raise StateUnavailableError(f"Cannot write state file {self._path}: {e}") from e

        self._sync_directory(directory)

    def _sync_directory(self, directory: Path) -> None:
        """Flush the directory entry so the rename survives a power loss."""
        try:
            dir_fd = os.open(directory, os.O_RDONLY)
        except OSError as e:
            raise StateUnavailableError(f"Cannot sync state directory {directory}: {e}") from e
        try:
            os.fsync(dir_fd)
        except OSError as e:
            raise StateUnavailableError(f"Cannot sync state directory {directory}: {e}") from e
        finally:
            os.close(dir_fd)

    @contextlib.contextmanager
    def lock(self) -> Iterator[None]:
        try:
            self._lock_path.parent.mkdir(parents=True, exist_ok=True)
            handle = open(self._lock_path, "a+b")  # noqa: SIM115
        except OSError as e:
            raise StateUnavailableError(f"Cannot open state lock {self._lock_path}: {e}") from e

        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()


# =============================================================================
# Snapshot schema
# =============================================================================


class _RecordModel(BaseModel):
    model_config = {"extra": "forbid"}

    resource_id: str = Field(min_length=1)
    kind: ResourceKind
    remote_identity: str = Field(min_length=1)
    widget: str = ""
    depends_on: list[str] = Field(default_factory=list)
    attributes: dict[str, Any] = Field(default_factory=dict)


class _SnapshotModel(BaseModel):
    model_config = {"extra": "forbid"}

    version: int
    serial: int = Field(ge=0)
    resources: list[_RecordModel] = Field(default_factory=list)


class StateStore:
    """Loads and atomically replaces the state snapshot."""

    def __init__(self, backend: StateBackend) -> None:
        self._backend = backend
        self._serial = 0
        self._write_lock = threading.Lock()

    @classmethod
    def from_path(cls, path: Path) -> StateStore:
        return cls(LocalFileBackend(path))

    @property
    def serial(self) -> int:
        """Serial of the last snapshot loaded or saved."""
        return self._serial

    def load(self) -> dict[str, StateRecord]:
        """Load all records keyed by resource identifier.

        Returns:
            Empty mapping when no snapshot exists yet.

        Raises:
            StateUnavailableError: If the backend cannot be read.
            StateVersionError: If the snapshot version is not supported.
            StateCorruptError: If the snapshot is malformed.
        """
        data = self._backend.read()
        if data is None:
            logger.info("No state snapshot found, starting empty")
            self._serial = 0
            return {}

        snapshot = self._decode(data)
        records: dict[str, StateRecord] = {}
        for item in snapshot.resources:
            if item.resource_id in records:
                raise StateCorruptError(
                    f"Duplicate resource '{item.resource_id}' in state snapshot",
                    resource_id=item.resource_id,
                )
            if not item.resource_id.startswith(f"{item.kind.value}."):
                raise StateCorruptError(
                    f"Resource '{item.resource_id}' does not match its kind '{item.kind.value}'",
                    resource_id=item.resource_id,
                )
            records[item.resource_id] = StateRecord(
                resource_id=item.resource_id,
                kind=item.kind,
                remote_identity=item.remote_identity,
                last_known_attributes=item.attributes,
                depends_on=tuple(item.depends_on),
                widget=item.widget,
            )

        self._serial = snapshot.serial
        logger.debug(
            "Loaded state snapshot",
            extra={"serial": snapshot.serial, "resource_count": len(records)},
        )
        return records

    def save(self, records: Mapping[str, StateRecord]) -> None:
        """Replace the whole snapshot with the given records.

        Raises:
            StateUnavailableError: If the backend cannot be written.
        """
        with self._write_lock, self._backend.lock():
            serial = self._serial + 1
            payload = {
                "version": STATE_FORMAT_VERSION,
                "serial": serial,
                "resources": [
                    {
                        "resource_id": record.resource_id,
                        "kind": record.kind.value,
                        "remote_identity": record.remote_identity,
                        "widget": record.widget,
                        "depends_on": sorted(record.depends_on),
                        "attributes": record.last_known_attributes,
                    }
                    for _, record in sorted(records.items())
                ],
            }
            self._backend.write(json.dumps(payload, indent=2, sort_keys=True).encode("utf-8"))
            self._serial = serial

        logger.debug(
            "Saved state snapshot",
            extra={"serial": serial, "resource_count": len(records)},
        )

    def _decode(self, data: bytes) -> _SnapshotModel:
        try:
            raw = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise StateCorruptError(f"State snapshot is not valid JSON: {e}") from e

        if not isinstance(raw, dict):
            raise StateCorruptError("State snapshot must be a JSON object")

        version = raw.get("version")
        if version not in SUPPORTED_STATE_VERSIONS:
            # Fail closed: never guess at a layout we do not understand
            raise StateVersionError(
                f"Unsupported state version {version!r}; "
                f"supported: {sorted(SUPPORTED_STATE_VERSIONS)}"
            )

        try:
            return _SnapshotModel.model_validate(raw)
        except ValidationError as e:
            raise StateCorruptError(f"State snapshot failed validation: {e}") from e
