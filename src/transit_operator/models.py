"""Pydantic models for declaration files with validation.

These models provide:
1. Type-safe YAML parsing
2. Validation at the boundary (fail fast, fail loudly)
3. Clean transformation to ResourceNodes
"""

from __future__ import annotations

import ipaddress
import re
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator, model_validator

from .resources import ResourceNode, parse_references

# Logical names double as reference targets, so they follow the same syntax
RESOURCE_NAME_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_-]*$"
ZONE_NAME_PATTERN = r"^[a-z0-9][a-z0-9-]*$"
ENDPOINT_SERVICE_PATTERN = r"^[a-z0-9][a-z0-9.-]*$"

# Interface endpoints Session Manager needs to reach an instance without
# internet access
DEFAULT_ENDPOINT_SERVICES = ("ssm", "ec2messages", "ssmmessages")

DEFAULT_AMI = "ami-0b5483e9d9802be1f"
DEFAULT_INSTANCE_TYPE = "t4g.nano"
DEFAULT_INSTANCE_PROFILE = "ec2-ssm-mgmt"

# AWS accepts VPC CIDR blocks between /16 and /28
MIN_VPC_PREFIX = 16
MAX_VPC_PREFIX = 28

# Private ASN range accepted for the Amazon side of a transit gateway
MIN_PRIVATE_ASN = 64512
MAX_PRIVATE_ASN = 4294967294


# =============================================================================
# Generic resources
# =============================================================================


class ResourceSpec(BaseModel):
    """One explicitly declared resource."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=128, pattern=RESOURCE_NAME_PATTERN)]
    kind: Annotated[str, Field(min_length=1, max_length=64)]
    inputs: dict[str, Any] = Field(default_factory=dict)

    # Ordering constraints without a data reference
    # Example: dependsOn: ["vpc-a-ssm", "vpc-a-ec2messages"]
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")

    def to_node(self) -> ResourceNode:
        """Convert to a ResourceNode, turning "${name.attr}" strings into references."""
        return ResourceNode(
            name=self.name,
            kind=self.kind,
            inputs=parse_references(self.inputs),
            depends_on=tuple(self.depends_on),
        )


# =============================================================================
# Topology
# =============================================================================


class InstanceConfig(BaseModel):
    """Test instance placed in every zone."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    ami: Annotated[str, Field(pattern=r"^ami-[0-9a-f]+$")] = DEFAULT_AMI
    instance_type: Annotated[str, Field(min_length=1, alias="instanceType")] = (
        DEFAULT_INSTANCE_TYPE
    )
    iam_instance_profile: str | None = Field(
        DEFAULT_INSTANCE_PROFILE, alias="iamInstanceProfile"
    )


class ZoneConfig(BaseModel):
    """One isolated network zone: a VPC with one subnet and one TGW route table."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=32, pattern=ZONE_NAME_PATTERN)]
    cidr_block: str = Field(alias="cidrBlock")
    instance: InstanceConfig | None = Field(default_factory=InstanceConfig)
    endpoint_services: list[str] = Field(
        default_factory=lambda: list(DEFAULT_ENDPOINT_SERVICES), alias="endpointServices"
    )

    # Whether the zone's routes also propagate into its own TGW route table
    propagate_to_own_table: bool = Field(True, alias="propagateToOwnTable")

    @field_validator("cidr_block")
    @classmethod
    def validate_cidr_block(cls, v: str) -> str:
        try:
            network = ipaddress.IPv4Network(v, strict=True)
        except ValueError as e:
            raise ValueError(f"cidrBlock must be an IPv4 network address: {e}") from e
        if not (MIN_VPC_PREFIX <= network.prefixlen <= MAX_VPC_PREFIX):
            raise ValueError(
                f"cidrBlock prefix must be between /{MIN_VPC_PREFIX} and /{MAX_VPC_PREFIX}"
            )
        return str(network)

    @field_validator("endpoint_services")
    @classmethod
    def validate_endpoint_services(cls, v: list[str]) -> list[str]:
        for service in v:
            if not re.match(ENDPOINT_SERVICE_PATTERN, service):
                raise ValueError(f"Invalid endpoint service name: {service!r}")
        if len(set(v)) != len(v):
            raise ValueError("endpointServices must not contain duplicates")
        return v


class TransitGatewayConfig(BaseModel):
    """Shared transit gateway."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=255)] = "tgw"
    description: str = ""
    amazon_side_asn: int | None = Field(None, alias="amazonSideAsn")

    @field_validator("amazon_side_asn")
    @classmethod
    def validate_asn(cls, v: int | None) -> int | None:
        if v is not None and not (MIN_PRIVATE_ASN <= v <= MAX_PRIVATE_ASN):
            raise ValueError(
                f"amazonSideAsn must be between {MIN_PRIVATE_ASN} and {MAX_PRIVATE_ASN}"
            )
        return v


class TopologySpec(BaseModel):
    """Zones plus the reachability policy between them.

    Each connection is undirected: both zones propagate their routes into the
    other zone's TGW route table. Zones without a connection cannot reach
    each other.
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    region: str | None = None
    transit_gateway: TransitGatewayConfig = Field(
        default_factory=TransitGatewayConfig, alias="transitGateway"
    )
    zones: Annotated[list[ZoneConfig], Field(min_length=1)]
    connections: list[tuple[str, str]] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_topology(self) -> TopologySpec:
        names = [zone.name for zone in self.zones]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Duplicate zone names: {duplicates}")

        known = set(names)
        seen_pairs: set[frozenset[str]] = set()
        for left, right in self.connections:
            unknown = sorted({left, right} - known)
            if unknown:
                raise ValueError(f"Connection {left}<->{right} references unknown zones: {unknown}")
            if left == right:
                raise ValueError(f"Zone '{left}' cannot be connected to itself")
            pair = frozenset((left, right))
            if pair in seen_pairs:
                raise ValueError(f"Duplicate connection {left}<->{right}")
            seen_pairs.add(pair)

        # Propagated routes between overlapping networks would be ambiguous
        networks = [(zone.name, ipaddress.IPv4Network(zone.cidr_block)) for zone in self.zones]
        for index, (name, network) in enumerate(networks):
            for other_name, other in networks[index + 1 :]:
                if network.overlaps(other):
                    raise ValueError(
                        f"Zones '{name}' and '{other_name}' have overlapping CIDR blocks"
                    )

        return self

    def peers(self) -> dict[str, list[str]]:
        """Zone name to the sorted names of zones it can reach."""
        result: dict[str, set[str]] = {zone.name: set() for zone in self.zones}
        for left, right in self.connections:
            result[left].add(right)
            result[right].add(left)
        return {name: sorted(peers) for name, peers in result.items()}


# =============================================================================
# Declaration file
# =============================================================================


class DeclarationFile(BaseModel):
    """Top-level declaration document: explicit resources and/or a topology."""

    model_config = {"extra": "ignore"}

    resources: list[ResourceSpec] = Field(default_factory=list)
    topology: TopologySpec | None = None

    @model_validator(mode="after")
    def validate_not_empty(self) -> DeclarationFile:
        if not self.resources and self.topology is None:
            raise ValueError("Declaration must contain 'resources', 'topology' or both")
        return self
