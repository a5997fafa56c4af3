"""Resource graph construction and validation.

This module turns a Declaration into a validated DAG:
1. Parameter resolution (defaults, allowed patterns)
2. Edge construction from explicit `dependsOn` and from References
3. Unknown-name detection
4. Cycle detection (depth-first, recursion-stack marker)
5. Stable topological ordering

Building a graph is a pure transformation: it never touches the State
Store or the provider, so a broken declaration aborts before any side
effect.

EXAMPLE:
```yaml
resources:
  - name: ProxyApiHandler
    kind: aws:lambda:Function
    attributes:
      role: {ref: ProxyApiHandlerServiceRole.arn}   # implicit edge
  - name: ProxyALB
    kind: aws:elbv2:ApplicationLoadBalancer
    dependsOn: [ProxyVpc]                          # explicit edge
```
"""

from __future__ import annotations

import heapq
import logging
import re
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

from .models import Declaration
from .references import iter_parameters, iter_references, substitute_parameters

logger = logging.getLogger(__name__)

_VISITING = 1
_DONE = 2


class GraphError(Exception):
    """Raised when a declaration cannot be turned into a valid graph."""

    pass


class UnresolvedReferenceError(GraphError):
    """Raised when a dependency or reference names an unknown resource."""

    def __init__(self, name: str, referenced_by: str, what: str = "resource") -> None:
        self.name = name
        self.referenced_by = referenced_by
        super().__init__(f"Unknown {what} '{name}' referenced by '{referenced_by}'")


class CyclicDependencyError(GraphError):
    """Raised when a dependency cycle is detected."""

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        super().__init__(f"Circular dependency detected: {' -> '.join(cycle)}")


class ParameterError(GraphError):
    """Raised when parameter values are missing or invalid."""

    pass


@dataclass(frozen=True)
class ResourceNode:
    """A typed resource in the desired graph."""

    name: str
    kind: str
    attributes: dict[str, Any] = field(default_factory=dict)
    depends_on: tuple[str, ...] = ()
    index: int = 0


@dataclass(frozen=True)
class DependencyEdge:
    """`dependent` must be created/updated after `dependency`."""

    dependent: str
    dependency: str
    implicit: bool = False


@dataclass
class ResourceGraph:
    """Directed acyclic graph of resource nodes keyed by logical name."""

    nodes: dict[str, ResourceNode] = field(default_factory=dict)
    edges: list[DependencyEdge] = field(default_factory=list)
    outputs: dict[str, Any] = field(default_factory=dict)

    def __contains__(self, name: object) -> bool:
        return name in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def __iter__(self) -> Iterator[ResourceNode]:
        return iter(self.nodes.values())

    def get(self, name: str) -> ResourceNode | None:
        """Look up a node by logical name."""
        return self.nodes.get(name)

    def dependencies(self, name: str) -> tuple[str, ...]:
        """Direct dependencies of a node."""
        return self.nodes[name].depends_on

    def dependents(self, name: str) -> list[str]:
        """Nodes that directly depend on `name`, in declaration order."""
        return [node.name for node in self.nodes.values() if name in node.depends_on]

    def find_cycle(self) -> list[str] | None:
        """Return the first cycle found as a node sequence, or None.

        Iterative depth-first traversal; a node on the current path is
        marked VISITING, so reaching it again closes a cycle.
        """
        marks: dict[str, int] = {}
        for root in self.nodes:
            if root in marks:
                continue
            marks[root] = _VISITING
            path = [root]
            pending = [iter(self.nodes[root].depends_on)]
            while pending:
                try:
                    dep = next(pending[-1])
                except StopIteration:
                    pending.pop()
                    marks[path.pop()] = _DONE
                    continue
                mark = marks.get(dep)
                if mark == _VISITING:
                    start = path.index(dep)
                    return path[start:] + [dep]
                if mark is None and dep in self.nodes:
                    marks[dep] = _VISITING
                    path.append(dep)
                    pending.append(iter(self.nodes[dep].depends_on))
        return None

    def validate(self) -> None:
        """Validate the graph for cycles.

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        cycle = self.find_cycle()
        if cycle is not None:
            raise CyclicDependencyError(cycle)

    def topological_order(self) -> list[str]:
        """Return names in dependency order (dependencies first).

        Ties are broken by declaration order so that repeated builds of the
        same declaration always produce the same order.

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        self.validate()

        in_degree = {name: len(node.depends_on) for name, node in self.nodes.items()}
        dependents: dict[str, list[str]] = {name: [] for name in self.nodes}
        for node in self.nodes.values():
            for dep in node.depends_on:
                dependents[dep].append(node.name)

        ready = [
            (node.index, node.name)
            for node in self.nodes.values()
            if in_degree[node.name] == 0
        ]
        heapq.heapify(ready)
        result: list[str] = []
        while ready:
            _, current = heapq.heappop(ready)
            result.append(current)
            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(ready, (self.nodes[dependent].index, dependent))
        return result

    def levels(self) -> list[list[str]]:
        """Group nodes into waves that could be applied in parallel."""
        depth: dict[str, int] = {}
        for name in self.topological_order():
            deps = self.nodes[name].depends_on
            depth[name] = 1 + max((depth[d] for d in deps), default=-1)
        waves: list[list[str]] = [[] for _ in range(max(depth.values(), default=-1) + 1)]
        for name in self.topological_order():
            waves[depth[name]].append(name)
        return waves

    def to_dot(self) -> str:
        """Render the graph in Graphviz DOT format."""
        lines = ["digraph resources {", "  rankdir=LR;"]
        for node in self.nodes.values():
            lines.append(f'  "{node.name}" [label="{node.name}\\n{node.kind}"];')
        for edge in self.edges:
            style = " [style=dashed]" if edge.implicit else ""
            lines.append(f'  "{edge.dependent}" -> "{edge.dependency}"{style};')
        lines.append("}")
        return "\n".join(lines)


def resolve_parameters(
    declaration: Declaration, supplied: dict[str, str] | None = None
) -> dict[str, str]:
    """Combine supplied parameter values with declared defaults.

    Raises:
        ParameterError: On unknown, missing or invalid parameter values.
    """
    supplied = supplied or {}
    unknown = sorted(set(supplied) - set(declaration.parameters))
    if unknown:
        raise ParameterError(f"Unknown parameters supplied: {unknown}")

    values: dict[str, str] = {}
    errors: list[str] = []
    for name, spec in declaration.parameters.items():
        value = supplied.get(name, spec.default)
        if value is None:
            errors.append(f"Parameter '{name}' has no value and no default")
            continue
        if spec.allowed_pattern and not re.fullmatch(spec.allowed_pattern, value):
            errors.append(
                f"Parameter '{name}' does not match allowed pattern {spec.allowed_pattern!r}"
            )
            continue
        if spec.type == "Number":
            try:
                float(value)
            except ValueError:
                errors.append(f"Parameter '{name}' must be a number: {value!r}")
                continue
        values[name] = value

    if errors:
        raise ParameterError("Invalid parameters:\n  - " + "\n  - ".join(errors))
    return values


def build_graph(
    declaration: Declaration, parameters: dict[str, str] | None = None
) -> ResourceGraph:
    """Build and validate the desired resource graph.

    Args:
        declaration: Validated declaration.
        parameters: Values for declaration parameters (defaults fill gaps).

    Returns:
        Validated ResourceGraph.

    Raises:
        ParameterError: If parameter values are missing or invalid.
        UnresolvedReferenceError: If a name cannot be resolved.
        CyclicDependencyError: If the dependency edges form a cycle.
    """
    values = resolve_parameters(declaration, parameters)
    names = {resource.name for resource in declaration.resources}
    graph = ResourceGraph()

    for index, resource in enumerate(declaration.resources):
        for param in iter_parameters(resource.attributes):
            if param.name not in values:
                raise UnresolvedReferenceError(param.name, resource.name, what="parameter")
        attributes = substitute_parameters(resource.attributes, values)

        depends_on: list[str] = []
        for dep in resource.depends_on:
            if dep not in names:
                raise UnresolvedReferenceError(dep, resource.name)
            depends_on.append(dep)
            graph.edges.append(DependencyEdge(resource.name, dep))

        for ref in iter_references(attributes):
            if ref.resource not in names:
                raise UnresolvedReferenceError(ref.resource, resource.name)
            if ref.resource not in depends_on:
                depends_on.append(ref.resource)
                graph.edges.append(DependencyEdge(resource.name, ref.resource, implicit=True))

        graph.nodes[resource.name] = ResourceNode(
            name=resource.name,
            kind=resource.kind,
            attributes=attributes,
            depends_on=tuple(depends_on),
            index=index,
        )

    for output_name, output in declaration.outputs.items():
        owner = f"output:{output_name}"
        for param in iter_parameters(output.value):
            if param.name not in values:
                raise UnresolvedReferenceError(param.name, owner, what="parameter")
        value = substitute_parameters(output.value, values)
        for ref in iter_references(value):
            if ref.resource not in names:
                raise UnresolvedReferenceError(ref.resource, owner)
        graph.outputs[output_name] = value

    graph.validate()

    logger.debug(
        "Built resource graph",
        extra={"nodes": len(graph.nodes), "edges": len(graph.edges)},
    )
    return graph
