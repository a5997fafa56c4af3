"""Cross-resource references inside attribute values.

A declaration refers to other resources in three ways:

```yaml
attributes:
  vpcId: {ref: ProxyVpc}                  # physical id of ProxyVpc
  targetArn: {ref: ProxyApiHandler.arn}   # one attribute of ProxyApiHandler
  url: "http://${ProxyALB.dnsName}/api/v1"
  model: {param: DefaultModelId}          # declaration parameter
```

Parsing turns these into Reference / Template / ParameterRef values. The
graph builder substitutes parameters; References stay unresolved until the
owning resource has been applied and are resolved against recorded state.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any

# Attribute that always holds the provider-assigned identifier
ID_ATTRIBUTE = "id"

VALID_NAME_PATTERN = r"^[A-Za-z][A-Za-z0-9_-]{0,127}$"
VALID_ATTRIBUTE_PATTERN = r"^[A-Za-z0-9_][A-Za-z0-9_.-]*$"

_TEMPLATE_PATTERN = re.compile(r"\$\$\{|\$\{([^}]*)\}")
_PARAM_PREFIX = "param:"


class InvalidReferenceError(ValueError):
    """Raised when a reference expression cannot be parsed."""

    pass


@dataclass(frozen=True)
class Reference:
    """Attribute `attribute` of resource `resource`, known only after apply."""

    resource: str
    attribute: str = ID_ATTRIBUTE

    def __str__(self) -> str:
        return f"${{{self.resource}.{self.attribute}}}"


@dataclass(frozen=True)
class ParameterRef:
    """Declaration parameter, substituted when the graph is built."""

    name: str

    def __str__(self) -> str:
        return f"${{{_PARAM_PREFIX}{self.name}}}"


@dataclass(frozen=True)
class Template:
    """String interpolating references, e.g. "http://${Alb.dnsName}/api"."""

    parts: tuple[str | Reference | ParameterRef, ...]

    def __str__(self) -> str:
        return "".join(
            p.replace("${", "$${") if isinstance(p, str) else str(p) for p in self.parts
        )


class _Unknown:
    """Placeholder for a value that only becomes known during apply."""

    _instance: _Unknown | None = None

    def __new__(cls) -> _Unknown:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "(known after apply)"

    __str__ = __repr__


UNKNOWN = _Unknown()


def parse_reference(expression: str) -> Reference:
    """Parse "Name" or "Name.attribute.path" into a Reference.

    Raises:
        InvalidReferenceError: If the expression is malformed.
    """
    expression = expression.strip()
    name, _, attribute = expression.partition(".")
    if not re.match(VALID_NAME_PATTERN, name):
        raise InvalidReferenceError(f"Invalid resource name in reference: '{expression}'")
    if not attribute:
        return Reference(resource=name)
    if not re.match(VALID_ATTRIBUTE_PATTERN, attribute) or ".." in attribute:
        raise InvalidReferenceError(f"Invalid attribute path in reference: '{expression}'")
    return Reference(resource=name, attribute=attribute)


def _parse_expression(expression: str) -> Reference | ParameterRef:
    if expression.startswith(_PARAM_PREFIX):
        name = expression[len(_PARAM_PREFIX):].strip()
        if not re.match(VALID_NAME_PATTERN, name):
            raise InvalidReferenceError(f"Invalid parameter name: '{name}'")
        return ParameterRef(name)
    return parse_reference(expression)


def parse_template(text: str) -> str | Template:
    """Parse a string with ${...} segments; plain strings come back unchanged.

    "$${" is an escaped literal "${".
    """
    if "${" not in text:
        return text

    parts: list[str | Reference | ParameterRef] = []
    literal = ""
    position = 0
    for match in _TEMPLATE_PATTERN.finditer(text):
        literal += text[position:match.start()]
        position = match.end()
        if match.group(0) == "$${":
            literal += "${"
            continue
        if literal:
            parts.append(literal)
            literal = ""
        parts.append(_parse_expression(match.group(1)))
    literal += text[position:]
    if literal:
        parts.append(literal)

    if all(isinstance(p, str) for p in parts):
        return "".join(parts)  # type: ignore[arg-type]
    return Template(parts=tuple(parts))


def parse_value(raw: Any) -> Any:
    """Recursively convert raw declaration values into reference-aware values."""
    if isinstance(raw, dict):
        if len(raw) == 1 and "ref" in raw:
            target = raw["ref"]
            if not isinstance(target, str):
                raise InvalidReferenceError(f"'ref' must be a string, got {type(target).__name__}")
            return parse_reference(target)
        if len(raw) == 1 and "param" in raw:
            name = raw["param"]
            if not isinstance(name, str) or not re.match(VALID_NAME_PATTERN, name):
                raise InvalidReferenceError(f"Invalid parameter name: {name!r}")
            return ParameterRef(name)
        return {str(k): parse_value(v) for k, v in raw.items()}
    if isinstance(raw, list):
        return [parse_value(v) for v in raw]
    if isinstance(raw, str):
        return parse_template(raw)
    return raw


def iter_references(value: Any) -> Iterator[Reference]:
    """Yield every Reference contained in a parsed value."""
    if isinstance(value, Reference):
        yield value
    elif isinstance(value, Template):
        for part in value.parts:
            if isinstance(part, Reference):
                yield part
    elif isinstance(value, dict):
        for item in value.values():
            yield from iter_references(item)
    elif isinstance(value, list):
        for item in value:
            yield from iter_references(item)


def iter_parameters(value: Any) -> Iterator[ParameterRef]:
    """Yield every ParameterRef contained in a parsed value."""
    if isinstance(value, ParameterRef):
        yield value
    elif isinstance(value, Template):
        for part in value.parts:
            if isinstance(part, ParameterRef):
                yield part
    elif isinstance(value, dict):
        for item in value.values():
            yield from iter_parameters(item)
    elif isinstance(value, list):
        for item in value:
            yield from iter_parameters(item)


def substitute_parameters(value: Any, parameters: dict[str, str]) -> Any:
    """Replace ParameterRef values; callers validate names beforehand."""
    if isinstance(value, ParameterRef):
        return parameters[value.name]
    if isinstance(value, Template):
        parts: list[str | Reference] = []
        for part in value.parts:
            if isinstance(part, ParameterRef):
                part = parameters[part.name]
            if isinstance(part, str) and parts and isinstance(parts[-1], str):
                parts[-1] = parts[-1] + part
            else:
                parts.append(part)
        if all(isinstance(p, str) for p in parts):
            return "".join(parts)  # type: ignore[arg-type]
        return Template(parts=tuple(parts))
    if isinstance(value, dict):
        return {k: substitute_parameters(v, parameters) for k, v in value.items()}
    if isinstance(value, list):
        return [substitute_parameters(v, parameters) for v in value]
    return value


def lookup_attribute(attributes: dict[str, Any], path: str) -> Any:
    """Follow a dotted path through nested mappings and lists.

    Raises:
        KeyError: If any segment is missing.
    """
    current: Any = attributes
    for segment in path.split("."):
        if isinstance(current, dict) and segment in current:
            current = current[segment]
        elif isinstance(current, list) and segment.isdigit() and int(segment) < len(current):
            current = current[int(segment)]
        else:
            raise KeyError(path)
    return current


def resolve_value(value: Any, lookup: Callable[[Reference], Any]) -> Any:
    """Resolve every Reference in a value using `lookup`.

    A Template whose parts include UNKNOWN resolves to UNKNOWN as a whole.
    Exceptions raised by `lookup` propagate to the caller.
    """
    if isinstance(value, Reference):
        return lookup(value)
    if isinstance(value, Template):
        rendered: list[str] = []
        for part in value.parts:
            if isinstance(part, Reference):
                resolved = lookup(part)
                if resolved is UNKNOWN:
                    return UNKNOWN
                rendered.append(str(resolved))
            else:
                rendered.append(str(part))
        return "".join(rendered)
    if isinstance(value, dict):
        return {k: resolve_value(v, lookup) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_value(v, lookup) for v in value]
    return value


def contains_unknown(value: Any) -> bool:
    """Check whether a resolved value still holds an UNKNOWN placeholder."""
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, list):
        return any(contains_unknown(v) for v in value)
    return False


def render_value(value: Any) -> Any:
    """Convert a value to plain JSON-compatible data for display."""
    if isinstance(value, (Reference, ParameterRef, Template, _Unknown)):
        return str(value)
    if isinstance(value, dict):
        return {k: render_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [render_value(v) for v in value]
    return value


def normalize_value(value: Any) -> Any:
    """Round-trip a fully resolved value through JSON.

    State is persisted as JSON, so desired values are compared in the same
    shape they take once stored (tuples become lists, dates become strings).
    """
    return json.loads(json.dumps(value, default=str))
