"""Compile a zone topology into resource declarations.

Every zone becomes an isolated VPC with one subnet, a security group, the
interface endpoints Session Manager needs, a test instance, its own transit
gateway route table and an attachment to the shared transit gateway. The
subnet's default route points at the transit gateway.

Reachability is expressed only through TGW route tables:
- each attachment is associated with its zone's route table
- each attachment propagates its routes into the route table of every
  connected zone (and, by default, into its own)

So zone X can reach zone Y exactly when X and Y are connected.

DEFAULT POLICY (three zones, hub C):
```
A <-> C <-> B      A and B cannot reach each other
```
"""

from __future__ import annotations

import logging
from typing import Any

from .models import InstanceConfig, TopologySpec, ZoneConfig
from .resources import Reference, ResourceNode

logger = logging.getLogger(__name__)

TRANSIT_GATEWAY_NODE = "tgw"

# Demo-grade rules: all protocols, any source
ALLOW_ALL_RULE: dict[str, Any] = {
    "protocol": "-1",
    "from_port": 0,
    "to_port": 0,
    "cidr_blocks": ["0.0.0.0/0"],
}

DEFAULT_ROUTE_CIDR = "0.0.0.0/0"


def vpc_node(zone: str) -> str:
    return f"vpc-{zone}"


def subnet_node(zone: str) -> str:
    return f"vpc-{zone}-subnet"


def security_group_node(zone: str) -> str:
    return f"vpc-{zone}-sg"


def endpoint_node(zone: str, service: str) -> str:
    return f"vpc-{zone}-{service}"


def instance_node(zone: str) -> str:
    return f"vpc-{zone}-instance"


def tgw_route_table_node(zone: str) -> str:
    return f"tgw-rt-{zone}"


def attachment_node(zone: str) -> str:
    return f"tgw-attachment-{zone}"


def subnet_route_table_node(zone: str) -> str:
    return f"subnet-rt-{zone}"


def subnet_route_table_association_node(zone: str) -> str:
    return f"subnet-rt-assoc-{zone}"


def _tags(name: str) -> dict[str, str]:
    return {"Name": name}


def default_topology(region: str | None = None) -> TopologySpec:
    """Three zones where A and B each reach C, and C reaches both."""
    return TopologySpec(
        region=region,
        zones=[
            ZoneConfig(name="a", cidr_block="10.0.0.0/24"),
            ZoneConfig(name="b", cidr_block="10.0.1.0/24"),
            ZoneConfig(name="c", cidr_block="10.0.2.0/24"),
        ],
        connections=[("a", "c"), ("b", "c")],
    )


def compile_topology(topology: TopologySpec, region: str) -> list[ResourceNode]:
    """Expand a topology into resource declarations.

    Args:
        topology: Validated topology.
        region: Region used for endpoint service names when the topology
            does not set one.

    Returns:
        Resource nodes, shared transit gateway first, then zone by zone.
    """
    region = topology.region or region
    peers = topology.peers()

    tgw = topology.transit_gateway
    tgw_inputs: dict[str, Any] = {
        "description": tgw.description,
        # Associations and propagations are managed explicitly per zone
        "default_route_table_association": False,
        "default_route_table_propagation": False,
        "tags": _tags(tgw.name),
    }
    if tgw.amazon_side_asn is not None:
        tgw_inputs["amazon_side_asn"] = tgw.amazon_side_asn

    nodes = [ResourceNode(TRANSIT_GATEWAY_NODE, "transit_gateway", tgw_inputs)]
    for zone in topology.zones:
        nodes.extend(_compile_zone(zone, peers[zone.name], region))

    logger.info(
        "Compiled topology",
        extra={
            "zones": [zone.name for zone in topology.zones],
            "connections": [list(pair) for pair in topology.connections],
            "node_count": len(nodes),
        },
    )
    return nodes


def _compile_zone(zone: ZoneConfig, peers: list[str], region: str) -> list[ResourceNode]:
    name = zone.name
    vpc_id = Reference(vpc_node(name))
    subnet_id = Reference(subnet_node(name))
    security_group_id = Reference(security_group_node(name))
    tgw_id = Reference(TRANSIT_GATEWAY_NODE)
    own_table = Reference(tgw_route_table_node(name))

    nodes = [
        ResourceNode(
            vpc_node(name),
            "vpc",
            {
                "cidr_block": zone.cidr_block,
                "enable_dns_hostnames": True,
                "enable_dns_support": True,
                "tags": _tags(vpc_node(name)),
            },
        ),
        ResourceNode(
            subnet_node(name),
            "subnet",
            {
                "vpc_id": vpc_id,
                "cidr_block": zone.cidr_block,
                "tags": _tags(subnet_node(name)),
            },
        ),
        ResourceNode(
            security_group_node(name),
            "security_group",
            {
                "vpc_id": vpc_id,
                "group_name": security_group_node(name),
                "description": "traffic from VPCs",
                "ingress": [dict(ALLOW_ALL_RULE, description="traffic from VPCs")],
                "egress": [dict(ALLOW_ALL_RULE)],
                "tags": _tags(security_group_node(name)),
            },
        ),
    ]

    endpoints = [endpoint_node(name, service) for service in zone.endpoint_services]
    for service, endpoint in zip(zone.endpoint_services, endpoints):
        nodes.append(
            ResourceNode(
                endpoint,
                "vpc_endpoint",
                {
                    "vpc_id": vpc_id,
                    "service_name": f"com.amazonaws.{region}.{service}",
                    "vpc_endpoint_type": "Interface",
                    "private_dns_enabled": True,
                    "subnet_ids": [subnet_id],
                    "security_group_ids": [security_group_id],
                    "tags": _tags(endpoint),
                },
            )
        )

    if zone.instance is not None:
        nodes.append(_instance(zone.name, zone.instance, subnet_id, security_group_id, endpoints))

    propagations = [Reference(tgw_route_table_node(peer)) for peer in peers]
    nodes.extend(
        [
            ResourceNode(
                tgw_route_table_node(name),
                "transit_gateway_route_table",
                {"transit_gateway_id": tgw_id, "tags": _tags(tgw_route_table_node(name))},
            ),
            ResourceNode(
                attachment_node(name),
                "transit_gateway_attachment",
                {
                    "transit_gateway_id": tgw_id,
                    "vpc_id": vpc_id,
                    "subnet_ids": [subnet_id],
                    "association_route_table_id": own_table,
                    "propagation_route_table_ids": propagations,
                    "propagate_to_association_table": zone.propagate_to_own_table,
                    "tags": _tags(attachment_node(name)),
                },
            ),
            # The route to the transit gateway is rejected until the VPC is attached
            ResourceNode(
                subnet_route_table_node(name),
                "route_table",
                {
                    "vpc_id": vpc_id,
                    "routes": [
                        {"destination_cidr_block": DEFAULT_ROUTE_CIDR, "transit_gateway_id": tgw_id}
                    ],
                    "tags": _tags(subnet_route_table_node(name)),
                },
                depends_on=(attachment_node(name),),
            ),
            ResourceNode(
                subnet_route_table_association_node(name),
                "route_table_association",
                {
                    "subnet_id": subnet_id,
                    "route_table_id": Reference(subnet_route_table_node(name)),
                },
            ),
        ]
    )
    return nodes


def _instance(
    zone: str,
    config: InstanceConfig,
    subnet_id: Reference,
    security_group_id: Reference,
    endpoints: list[str],
) -> ResourceNode:
    inputs: dict[str, Any] = {
        "ami": config.ami,
        "instance_type": config.instance_type,
        "subnet_id": subnet_id,
        "security_group_ids": [security_group_id],
        "tags": _tags(instance_node(zone)),
    }
    if config.iam_instance_profile:
        inputs["iam_instance_profile"] = config.iam_instance_profile

    # Session Manager registration fails if the instance boots before its endpoints exist
    return ResourceNode(instance_node(zone), "instance", inputs, depends_on=tuple(endpoints))
