"""File-backed simulated control plane.

LocalProvider stands in for a real cloud so that declarations can be
planned and applied end to end on one machine. Each resource instance is a
JSON document under `root/` named after its generated physical id. Like a
real provider it assigns identifiers and computes attributes the caller
cannot know before create (an ARN for every resource, a DNS name for load
balancers and similar).
"""

from __future__ import annotations

import fnmatch
import json
import logging
import os
import re
import tempfile
import threading
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .provider import PermanentProviderError, Provider, ProviderResult, TransientProviderError

logger = logging.getLogger(__name__)

# Kind pattern (case-insensitive glob) to attributes computed on create
DEFAULT_COMPUTED_ATTRIBUTES: dict[str, tuple[str, ...]] = {
    "*loadbalancer*": ("dnsName",),
    "*elbv2*": ("dnsName",),
    "*function*": ("url",),
    "*bucket*": ("domainName",),
    "*vpc*": ("cidrBlock",),
}

_SLUG_PATTERN = re.compile(r"[^a-z0-9]+")
_VALID_PHYSICAL_ID = re.compile(r"^[a-z0-9-]+$")


def _slug(kind: str) -> str:
    """Short lowercase prefix derived from the kind's last segment."""
    last = re.split(r"[:/]", kind.split("@", 1)[0])[-1]
    return _SLUG_PATTERN.sub("-", last.lower()).strip("-")[:24] or "resource"


class LocalProvider(Provider):
    """Provider persisting resource instances as files."""

    name = "local"

    def __init__(
        self,
        root: Path,
        computed_attributes: dict[str, tuple[str, ...]] | None = None,
    ) -> None:
        self._root = root
        self._computed = (
            computed_attributes if computed_attributes is not None else DEFAULT_COMPUTED_ATTRIBUTES
        )
        self._lock = threading.Lock()

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, physical_id: str) -> Path:
        if not _VALID_PHYSICAL_ID.match(physical_id):
            raise PermanentProviderError(f"Invalid physical id: '{physical_id}'", code="InvalidId")
        return self._root / f"{physical_id}.json"

    def _write(self, path: Path, document: dict[str, Any]) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w", encoding="utf-8", dir=path.parent, suffix=".tmp", delete=False
            ) as handle:
                json.dump(document, handle, indent=2, sort_keys=True)
                temp_name = handle.name
            os.replace(temp_name, path)
        except OSError as e:
            # Disk hiccups are worth another attempt
            raise TransientProviderError(f"Failed to write {path}: {e}", code="IOError") from e

    def _read(self, physical_id: str) -> dict[str, Any] | None:
        path = self._path(physical_id)
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            raise PermanentProviderError(f"Unreadable resource {path}: {e}", code="Corrupt") from e

    def _computed_outputs(self, kind: str, physical_id: str) -> dict[str, Any]:
        outputs: dict[str, Any] = {"arn": f"arn:local:{kind}:{physical_id}"}
        kind_lower = kind.lower()
        for pattern, attributes in self._computed.items():
            if not fnmatch.fnmatchcase(kind_lower, pattern.lower()):
                continue
            for attribute in attributes:
                if attribute == "dnsName":
                    outputs[attribute] = f"{physical_id}.elb.local"
                elif attribute == "url":
                    outputs[attribute] = f"https://{physical_id}.local/"
                elif attribute == "domainName":
                    outputs[attribute] = f"{physical_id}.storage.local"
                elif attribute == "cidrBlock":
                    outputs[attribute] = "10.0.0.0/16"
                else:
                    outputs[attribute] = f"{physical_id}-{attribute}"
        return outputs

    def create(self, kind: str, attributes: dict[str, Any]) -> ProviderResult:
        physical_id = f"{_slug(kind)}-{uuid.uuid4().hex[:12]}"
        outputs = self._computed_outputs(kind, physical_id)
        for key in outputs:
            # A declared value wins over a computed default
            if key != "arn" and attributes.get(key) is not None:
                outputs[key] = attributes[key]

        document = {
            "physical_id": physical_id,
            "kind": kind,
            "attributes": attributes,
            "outputs": outputs,
            "created_at": datetime.now(UTC).isoformat(),
        }
        with self._lock:
            self._write(self._path(physical_id), document)

        logger.debug("Local resource created", extra={"kind": kind, "physical_id": physical_id})
        return ProviderResult(physical_id=physical_id, outputs=outputs)

    def update(self, kind: str, physical_id: str, attributes: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            document = self._read(physical_id)
            if document is None:
                raise PermanentProviderError(
                    f"Resource '{physical_id}' does not exist", code="NotFound"
                )
            if document["kind"] != kind:
                raise PermanentProviderError(
                    f"Resource '{physical_id}' is a {document['kind']}, not a {kind}",
                    code="KindMismatch",
                )
            document["attributes"] = attributes
            document["updated_at"] = datetime.now(UTC).isoformat()
            self._write(self._path(physical_id), document)

        logger.debug("Local resource updated", extra={"kind": kind, "physical_id": physical_id})
        return dict(document.get("outputs", {}))

    def delete(self, kind: str, physical_id: str) -> None:
        path = self._path(physical_id)
        with self._lock:
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                raise TransientProviderError(f"Failed to delete {path}: {e}", code="IOError") from e
        logger.debug("Local resource deleted", extra={"kind": kind, "physical_id": physical_id})

    def list_resources(self) -> list[dict[str, Any]]:
        """All resource documents currently held by the local control plane."""
        if not self._root.exists():
            return []
        result = []
        for path in sorted(self._root.glob("*.json")):
            document = self._read(path.stem)
            if document is not None:
                result.append(document)
        return result
