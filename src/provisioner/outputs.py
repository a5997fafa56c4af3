"""Output resolution against recorded state."""

from __future__ import annotations

import logging
from typing import Any

from .references import Reference, normalize_value, resolve_value
from .state import StateRecord, StateStore

logger = logging.getLogger(__name__)


class UnresolvedOutputError(Exception):
    """Raised when an output refers to something that has not materialized."""

    def __init__(self, missing: dict[str, str], resolved: dict[str, Any]) -> None:
        self.missing = missing
        self.resolved = resolved
        details = "\n  - ".join(f"{name}: {reason}" for name, reason in sorted(missing.items()))
        super().__init__(f"Unresolved outputs:\n  - {details}")


class _Missing(Exception):
    pass


def resolve_outputs(outputs: dict[str, Any], store: StateStore) -> dict[str, Any]:
    """Resolve every output expression to a concrete value.

    Args:
        outputs: Output name to parsed value (graph.outputs).
        store: State Store holding applied resources.

    Returns:
        Output name to resolved value.

    Raises:
        UnresolvedOutputError: If any output references a resource that is
            not in state or an attribute it never reported.
    """
    records: dict[str, StateRecord | None] = {}

    def lookup(ref: Reference) -> Any:
        if ref.resource not in records:
            records[ref.resource] = store.get(ref.resource)
        record = records[ref.resource]
        if record is None:
            raise _Missing(f"resource '{ref.resource}' has not been applied")
        try:
            return record.lookup(ref.attribute)
        except KeyError:
            raise _Missing(f"attribute '{ref.attribute}' of '{ref.resource}' is not known") from None

    resolved: dict[str, Any] = {}
    missing: dict[str, str] = {}
    for name, value in outputs.items():
        try:
            resolved[name] = normalize_value(resolve_value(value, lookup))
        except _Missing as e:
            missing[name] = str(e)

    if missing:
        raise UnresolvedOutputError(missing, resolved)

    logger.debug("Resolved outputs", extra={"outputs": sorted(resolved)})
    return resolved
