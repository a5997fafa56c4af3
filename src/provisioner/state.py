"""Durable record of applied resources.

The State Store is the only source of truth for "what currently exists".
It maps logical resource names to StateRecords and is written exclusively
by the Executor after the provider has confirmed an operation:

- put() after a confirmed create/update
- remove() after a confirmed delete
- never speculatively, never by the Planner

Records are persisted through a StateBackend. The file backend keeps one
JSON document per key and replaces it atomically, so a write to one record
never touches another. Concurrency control is a per-record asyncio.Lock;
independent subgraphs never contend on a global lock.

PENDING MARKERS:
Before a provider call the Executor writes a pending marker for the
resource and clears it once the outcome is definitive. A marker that
survives (process killed mid-call, call timed out) flags the resource as
needing reconciliation on the next plan.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
import re
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .references import ID_ATTRIBUTE, VALID_NAME_PATTERN, lookup_attribute

logger = logging.getLogger(__name__)

RECORDS_NAMESPACE = "resources"
PENDING_NAMESPACE = "pending"
STATE_FORMAT_VERSION = 1


class StateUnavailableError(Exception):
    """Raised when the state backend cannot be read or written."""

    pass


class StateCorruptError(StateUnavailableError):
    """Raised when a stored document cannot be decoded."""

    pass


def _parse_timestamp(value: str | None) -> datetime:
    if not value:
        return datetime.now(UTC)
    return datetime.fromisoformat(value)


@dataclass(frozen=True)
class DeposedInstance:
    """A superseded instance still awaiting deletion after a replacement."""

    physical_id: str
    kind: str

    def to_dict(self) -> dict[str, str]:
        return {"physical_id": self.physical_id, "kind": self.kind}


@dataclass
class StateRecord:
    """Last-known provider-side state of one resource.

    `attributes` are the resolved inputs last applied, `outputs` the
    attributes the provider reported back. `dependencies` is kept so that a
    resource removed from the declaration can still be deleted in the right
    order.
    """

    name: str
    kind: str
    physical_id: str
    attributes: dict[str, Any] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    deposed: list[DeposedInstance] = field(default_factory=list)

    def resolved_attributes(self) -> dict[str, Any]:
        """Inputs overlaid with provider outputs, plus the physical id."""
        merged = dict(self.attributes)
        merged.update(self.outputs)
        merged[ID_ATTRIBUTE] = self.physical_id
        return merged

    def lookup(self, path: str) -> Any:
        """Value of an attribute path.

        Raises:
            KeyError: If the attribute never materialized.
        """
        return lookup_attribute(self.resolved_attributes(), path)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "version": STATE_FORMAT_VERSION,
            "name": self.name,
            "kind": self.kind,
            "physical_id": self.physical_id,
            "attributes": self.attributes,
            "outputs": self.outputs,
            "dependencies": self.dependencies,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "deposed": [instance.to_dict() for instance in self.deposed],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StateRecord:
        """Create from dictionary."""
        return cls(
            name=data["name"],
            kind=data["kind"],
            physical_id=data["physical_id"],
            attributes=data.get("attributes", {}),
            outputs=data.get("outputs", {}),
            dependencies=list(data.get("dependencies", [])),
            created_at=_parse_timestamp(data.get("created_at")),
            updated_at=_parse_timestamp(data.get("updated_at")),
            deposed=[
                DeposedInstance(physical_id=item["physical_id"], kind=item["kind"])
                for item in data.get("deposed", [])
            ],
        )


@dataclass
class PendingOperation:
    """A provider call that was dispatched but not yet confirmed."""

    name: str
    operation: str
    physical_id: str | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "operation": self.operation,
            "physical_id": self.physical_id,
            "started_at": self.started_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PendingOperation:
        return cls(
            name=data["name"],
            operation=data["operation"],
            physical_id=data.get("physical_id"),
            started_at=_parse_timestamp(data.get("started_at")),
        )


class StateBackend(ABC):
    """Durable key-value persistence with atomic per-key writes."""

    @abstractmethod
    def check(self) -> None:
        """Verify the backend is reachable.

        Raises:
            StateUnavailableError: If it is not.
        """

    @abstractmethod
    def read(self, namespace: str, key: str) -> dict[str, Any] | None:
        """Read one document, or None if absent."""

    @abstractmethod
    def write(self, namespace: str, key: str, data: dict[str, Any]) -> None:
        """Atomically replace one document."""

    @abstractmethod
    def delete(self, namespace: str, key: str) -> None:
        """Delete one document; absent keys are ignored."""

    @abstractmethod
    def keys(self, namespace: str) -> list[str]:
        """All keys in a namespace, sorted."""


class MemoryStateBackend(StateBackend):
    """In-process backend, used for tests and throwaway plans."""

    def __init__(self) -> None:
        self._data: dict[str, dict[str, dict[str, Any]]] = {}
        self.available = True

    def _ensure_available(self) -> None:
        if not self.available:
            raise StateUnavailableError("In-memory state backend marked unavailable")

    def check(self) -> None:
        self._ensure_available()

    def read(self, namespace: str, key: str) -> dict[str, Any] | None:
        self._ensure_available()
        document = self._data.get(namespace, {}).get(key)
        return copy.deepcopy(document) if document is not None else None

    def write(self, namespace: str, key: str, data: dict[str, Any]) -> None:
        self._ensure_available()
        self._data.setdefault(namespace, {})[key] = copy.deepcopy(data)

    def delete(self, namespace: str, key: str) -> None:
        self._ensure_available()
        self._data.get(namespace, {}).pop(key, None)

    def keys(self, namespace: str) -> list[str]:
        self._ensure_available()
        return sorted(self._data.get(namespace, {}))


class FileStateBackend(StateBackend):
    """One JSON file per key under `root/<namespace>/`.

    Writes go to a temporary file in the same directory, are fsynced and then
    moved into place with os.replace, so readers see either the old or the
    new document and never a partial one.
    """

    def __init__(self, root: Path) -> None:
        self._root = root

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, namespace: str, key: str) -> Path:
        # Keys become file names; only logical-name shaped keys are accepted
        if not re.match(VALID_NAME_PATTERN, key):
            raise ValueError(f"Invalid state key: '{key}'")
        return self._root / namespace / f"{key}.json"

    def check(self) -> None:
        try:
            self._root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StateUnavailableError(f"Cannot create state directory {self._root}: {e}") from e
        if not self._root.is_dir():
            raise StateUnavailableError(f"State path is not a directory: {self._root}")
        if not os.access(self._root, os.R_OK | os.W_OK):
            raise StateUnavailableError(f"State directory is not readable/writable: {self._root}")

    def read(self, namespace: str, key: str) -> dict[str, Any] | None:
        path = self._path(namespace, key)
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StateUnavailableError(f"Failed to read state file {path}: {e}") from e

        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise StateCorruptError(f"Corrupt state file {path}: {e}") from e
        if not isinstance(data, dict):
            raise StateCorruptError(f"State file must contain a JSON object: {path}")
        return data

    def write(self, namespace: str, key: str, data: dict[str, Any]) -> None:
        path = self._path(namespace, key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=path.parent,
                prefix=f".{key}.",
                suffix=".tmp",
                delete=False,
            ) as handle:
                json.dump(data, handle, indent=2, sort_keys=True, default=str)
                handle.flush()
                os.fsync(handle.fileno())
                temp_name = handle.name
            os.replace(temp_name, path)
        except OSError as e:
            raise StateUnavailableError(f"Failed to write state file {path}: {e}") from e

    def delete(self, namespace: str, key: str) -> None:
        path = self._path(namespace, key)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise StateUnavailableError(f"Failed to delete state file {path}: {e}") from e

    def keys(self, namespace: str) -> list[str]:
        directory = self._root / namespace
        if not directory.exists():
            return []
        try:
            return sorted(p.stem for p in directory.glob("*.json"))
        except OSError as e:
            raise StateUnavailableError(f"Failed to list state directory {directory}: {e}") from e


class StateStore:
    """Typed access to StateRecords with per-record locking."""

    def __init__(self, backend: StateBackend) -> None:
        self._backend = backend
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def backend(self) -> StateBackend:
        return self._backend

    def check(self) -> None:
        """Fail fast if the backend is unreachable or holds corrupt records.

        Raises:
            StateUnavailableError: If state cannot be trusted as a baseline.
        """
        self._backend.check()
        self.records()
        self.pending()

    def lock(self, name: str) -> asyncio.Lock:
        """Lock serializing writers of one logical name."""
        if name not in self._locks:
            self._locks[name] = asyncio.Lock()
        return self._locks[name]

    def get(self, name: str) -> StateRecord | None:
        data = self._backend.read(RECORDS_NAMESPACE, name)
        if data is None:
            return None
        try:
            return StateRecord.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise StateCorruptError(f"Invalid state record for '{name}': {e}") from e

    def put(self, record: StateRecord) -> None:
        self._backend.write(RECORDS_NAMESPACE, record.name, record.to_dict())
        logger.debug(
            "State record written",
            extra={"resource": record.name, "physical_id": record.physical_id},
        )

    def remove(self, name: str) -> None:
        self._backend.delete(RECORDS_NAMESPACE, name)
        logger.debug("State record removed", extra={"resource": name})

    def names(self) -> list[str]:
        return self._backend.keys(RECORDS_NAMESPACE)

    def records(self) -> dict[str, StateRecord]:
        """All records keyed by logical name."""
        result: dict[str, StateRecord] = {}
        for name in self.names():
            record = self.get(name)
            if record is not None:
                result[name] = record
        return result

    def mark_pending(self, name: str, operation: str, physical_id: str | None = None) -> None:
        pending = PendingOperation(name=name, operation=operation, physical_id=physical_id)
        self._backend.write(PENDING_NAMESPACE, name, pending.to_dict())

    def clear_pending(self, name: str) -> None:
        self._backend.delete(PENDING_NAMESPACE, name)

    def pending(self) -> dict[str, PendingOperation]:
        """Operations whose outcome was never confirmed."""
        result: dict[str, PendingOperation] = {}
        for name in self._backend.keys(PENDING_NAMESPACE):
            data = self._backend.read(PENDING_NAMESPACE, name)
            if data is None:
                continue
            try:
                result[name] = PendingOperation.from_dict(data)
            except (KeyError, TypeError, ValueError) as e:
                raise StateCorruptError(f"Invalid pending marker for '{name}': {e}") from e
        return result
