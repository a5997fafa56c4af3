"""Declaration file loading with validation.

All file operations enforce size limits. Input validation is performed at
the boundary so that nothing downstream sees a malformed declaration.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_DECLARATION_FILE_SIZE_BYTES
from .models import Declaration

logger = logging.getLogger(__name__)


class DeclarationLoadError(Exception):
    """Raised when declaration loading or validation fails."""

    pass


def format_validation_error(error: ValidationError) -> str:
    """Render pydantic errors as an indented bullet list."""
    lines = []
    for item in error.errors():
        loc = ".".join(str(x) for x in item["loc"])
        lines.append(f"  - {loc}: {item['msg']}")
    return "\n".join(lines)


def read_document(path: Path, max_size: int) -> Any:
    """Read a YAML or JSON file into Python data.

    Raises:
        DeclarationLoadError: If the file is missing, too large or unparsable.
    """
    if not path.exists():
        raise DeclarationLoadError(f"File not found: {path}")

    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise DeclarationLoadError(f"Failed to stat file {path}: {e}") from e

    if file_size > max_size:
        raise DeclarationLoadError(f"File exceeds maximum size of {max_size} bytes: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise DeclarationLoadError(f"Failed to read file {path}: {e}") from e

    if path.suffix.lower() == ".json":
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise DeclarationLoadError(f"Invalid JSON in {path}: {e}") from e

    try:
        return yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise DeclarationLoadError(f"Invalid YAML in {path}: {e}") from e


def parse_declaration(raw_data: Any, source: str = "<memory>") -> Declaration:
    """Validate already-parsed data as a Declaration.

    Supports both the flat format and a Kubernetes-style wrapper
    (apiVersion/kind/metadata/spec).
    """
    if raw_data is None:
        raw_data = {}
    if not isinstance(raw_data, dict):
        raise DeclarationLoadError(f"Declaration must be a mapping: {source}")

    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec") or {}
        if not isinstance(spec_data, dict):
            raise DeclarationLoadError(f"Spec section must be a mapping: {source}")
    else:
        spec_data = raw_data

    try:
        return Declaration.model_validate(spec_data)
    except ValidationError as e:
        raise DeclarationLoadError(
            f"Validation failed for {source}:\n{format_validation_error(e)}"
        ) from e


def load_declaration(path: Path) -> Declaration:
    """Load and validate a declaration from a YAML or JSON file.

    Raises:
        DeclarationLoadError: If the file cannot be loaded or fails validation.
    """
    raw_data = read_document(path, MAX_DECLARATION_FILE_SIZE_BYTES)
    declaration = parse_declaration(raw_data, source=str(path))
    logger.info(
        "Loaded declaration",
        extra={
            "path": str(path),
            "resources": len(declaration.resources),
            "outputs": len(declaration.outputs),
        },
    )
    return declaration
