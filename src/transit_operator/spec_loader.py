"""Declaration file loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_SPEC_FILE_SIZE_BYTES
from .models import DeclarationFile
from .resources import ResourceNode
from .topology import compile_topology

logger = logging.getLogger(__name__)


class SpecLoadError(Exception):
    """Raised when a declaration file cannot be loaded or fails validation."""

    pass


def read_declaration_file(spec_path: Path) -> DeclarationFile:
    """Load and validate a declaration file from YAML.

    Args:
        spec_path: Path of the YAML file.

    Returns:
        Validated declaration document.

    Raises:
        SpecLoadError: If the file cannot be loaded or fails validation.
    """
    if not spec_path.exists():
        raise SpecLoadError(f"Spec file not found: {spec_path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = spec_path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat spec file {spec_path}: {e}") from e

    if file_size > MAX_SPEC_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Spec file exceeds maximum size of {MAX_SPEC_FILE_SIZE_BYTES} bytes: {spec_path}"
        )

    try:
        content = spec_path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read spec file {spec_path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {spec_path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Spec file must contain a YAML mapping: {spec_path}")

    return parse_declarations(raw_data, source=str(spec_path))


def parse_declarations(raw_data: dict[str, Any], source: str = "<memory>") -> DeclarationFile:
    """Validate an already parsed declaration mapping."""
    # Support both flat format and Kubernetes-style wrapper
    # If the document has apiVersion/kind/spec, extract the spec section
    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec", {})
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {source}")
    else:
        spec_data = raw_data

    try:
        return DeclarationFile.model_validate(spec_data)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}" if loc else f"  - {msg}")

        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {source}:\n{error_list}") from e


def to_resource_nodes(declarations: DeclarationFile, region: str) -> list[ResourceNode]:
    """Flatten a declaration document into resource nodes.

    Topology nodes come first, explicitly declared resources after them.
    Name clashes between the two are reported by the graph builder.
    """
    nodes: list[ResourceNode] = []
    if declarations.topology is not None:
        nodes.extend(compile_topology(declarations.topology, region))
    nodes.extend(resource.to_node() for resource in declarations.resources)
    return nodes


def load_declarations(spec_path: Path, region: str) -> list[ResourceNode]:
    """Load a declaration file and return its resource nodes.

    Raises:
        SpecLoadError: If the file cannot be loaded or fails validation.
    """
    declarations = read_declaration_file(spec_path)
    nodes = to_resource_nodes(declarations, region)
    logger.info(
        "Loaded declarations",
        extra={
            "spec_file": str(spec_path),
            "resource_count": len(declarations.resources),
            "has_topology": declarations.topology is not None,
            "node_count": len(nodes),
        },
    )
    return nodes
