"""Resource declarations and cross-resource references.

A resource node describes one desired remote object. Its inputs are plain
values, or References to an output attribute of another node. References may
appear anywhere inside the inputs (nested in lists and mappings), so a
set-valued field such as "propagate into these route tables" is simply a list
of independent references.

EXAMPLE:
```python
vpc = ResourceNode("vpc-a", "vpc", {"cidr_block": "10.0.0.0/24"})
subnet = ResourceNode(
    "vpc-a-subnet",
    "subnet",
    {"vpc_id": Reference("vpc-a", "id"), "cidr_block": "10.0.0.0/24"},
)
```
"""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any

# "${vpc-a.id}" - the whole string must be the reference
REFERENCE_PATTERN = re.compile(
    r"^\$\{(?P<target>[A-Za-z0-9][A-Za-z0-9_-]*)\.(?P<attribute>[A-Za-z0-9_]+)\}$"
)

# Output attribute every applied node exposes for its remote identifier
ID_ATTRIBUTE = "id"


class NodeState(str, Enum):
    """Lifecycle of a node during one run."""

    PENDING = "pending"
    SCHEDULED = "scheduled"
    APPLYING = "applying"
    APPLIED = "applied"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (NodeState.APPLIED, NodeState.FAILED, NodeState.SKIPPED)


@dataclass(frozen=True)
class Reference:
    """Pointer to an output attribute of another node."""

    target: str
    attribute: str = ID_ATTRIBUTE

    def __str__(self) -> str:
        return f"${{{self.target}.{self.attribute}}}"

    @classmethod
    def parse(cls, value: str) -> Reference | None:
        """Parse the "${target.attribute}" syntax.

        Returns:
            The reference, or None if the string is a plain literal.
        """
        match = REFERENCE_PATTERN.match(value)
        if match is None:
            return None
        return cls(target=match.group("target"), attribute=match.group("attribute"))


class UnresolvableReferenceError(Exception):
    """Raised when a reference points at an output that is not available."""

    def __init__(self, reference: Reference, reason: str) -> None:
        super().__init__(f"Cannot resolve {reference}: {reason}")
        self.reference = reference


@dataclass(frozen=True)
class ResourceNode:
    """Immutable description of one desired remote object.

    Attributes:
        name: Logical name, unique within a run.
        kind: Resource type tag understood by the provider (e.g. "vpc").
        inputs: Desired input fields; values may contain References.
        depends_on: Explicit ordering constraints without a data reference.
    """

    name: str
    kind: str
    inputs: Mapping[str, Any] = field(default_factory=dict)
    depends_on: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("ResourceNode name cannot be empty")
        if not self.kind:
            raise ValueError(f"ResourceNode '{self.name}' has no kind")
        # Freeze inputs so the declaration cannot change mid-run
        object.__setattr__(self, "inputs", MappingProxyType(dict(self.inputs)))
        object.__setattr__(self, "depends_on", tuple(self.depends_on))

    def references(self) -> list[Reference]:
        """All references in the inputs, in declaration order."""
        return collect_references(self.inputs)

    def reference_targets(self) -> set[str]:
        """Names of nodes whose outputs this node consumes."""
        return {ref.target for ref in self.references()}

    def predecessors(self) -> set[str]:
        """Names of every node that must reach a terminal state first."""
        return self.reference_targets() | set(self.depends_on)


def collect_references(value: Any) -> list[Reference]:
    """Walk a value and return every Reference found in it."""
    found: list[Reference] = []

    def visit(item: Any) -> None:
        if isinstance(item, Reference):
            found.append(item)
        elif isinstance(item, Mapping):
            for nested in item.values():
                visit(nested)
        elif isinstance(item, (list, tuple)):
            for nested in item:
                visit(nested)

    visit(value)
    return found


def resolve_inputs(
    inputs: Mapping[str, Any],
    lookup: Callable[[Reference], Any],
) -> dict[str, Any]:
    """Replace every Reference in the inputs with its resolved value.

    Args:
        inputs: Declared inputs.
        lookup: Returns the value for a reference, or raises
            UnresolvableReferenceError.

    Returns:
        A plain (JSON-compatible) copy of the inputs.
    """

    def resolve(item: Any) -> Any:
        if isinstance(item, Reference):
            return lookup(item)
        if isinstance(item, Mapping):
            return {key: resolve(nested) for key, nested in item.items()}
        if isinstance(item, (list, tuple)):
            return [resolve(nested) for nested in item]
        return item

    return {key: resolve(value) for key, value in inputs.items()}


def parse_references(value: Any) -> Any:
    """Convert "${target.attribute}" strings into Reference objects, recursively."""
    if isinstance(value, str):
        reference = Reference.parse(value)
        return reference if reference is not None else value
    if isinstance(value, Mapping):
        return {key: parse_references(nested) for key, nested in value.items()}
    if isinstance(value, (list, tuple)):
        return [parse_references(nested) for nested in value]
    return value


def render_references(value: Any) -> Any:
    """Inverse of parse_references, for display."""
    if isinstance(value, Reference):
        return str(value)
    if isinstance(value, Mapping):
        return {key: render_references(nested) for key, nested in value.items()}
    if isinstance(value, (list, tuple)):
        return [render_references(nested) for nested in value]
    return value
