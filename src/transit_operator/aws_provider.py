"""AWS EC2 provider adapter built on boto3.

Implements single-resource CRUD for the kinds a transit topology needs.
Every call returns only once the remote object is usable (waiters or
polling), so the engine can hand outputs straight to dependents.

Updates are limited to what EC2 can change in place:
- tags on every taggable kind
- route table association and propagations of a TGW attachment
Any other input change raises a non-retryable ProviderError. The inputs that
cannot change in place are hashed into a tag at create time, which is how
update() detects them without knowing the previous inputs.

ERROR MAPPING:
- codes ending in "NotFound" -> NotFoundError (retryable ProviderError during
  create, where they refer to a just-created dependency not yet visible)
- throttling and transient codes -> retryable ProviderError
- everything else -> ProviderError
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError, WaiterError

from .provider import NotFoundError, ProviderError, ProviderResult
from .state import compute_fingerprint

logger = logging.getLogger(__name__)

INPUTS_HASH_TAG = "transit-operator:inputs-hash"

# Resource types for TagSpecifications, per kind
TAG_RESOURCE_TYPES: dict[str, str] = {
    "vpc": "vpc",
    "subnet": "subnet",
    "security_group": "security-group",
    "vpc_endpoint": "vpc-endpoint",
    "instance": "instance",
    "transit_gateway": "transit-gateway",
    "transit_gateway_route_table": "transit-gateway-route-table",
    "transit_gateway_attachment": "transit-gateway-attachment",
    "route_table": "route-table",
}

SUPPORTED_KINDS = frozenset(TAG_RESOURCE_TYPES) | {"route_table_association"}

# Inputs that update() may change without replacing the object
MUTABLE_INPUTS: dict[str, frozenset[str]] = {
    "transit_gateway_attachment": frozenset(
        {
            "tags",
            "association_route_table_id",
            "propagation_route_table_ids",
            "propagate_to_association_table",
        }
    ),
}
DEFAULT_MUTABLE_INPUTS = frozenset({"tags"})

RETRYABLE_ERROR_CODES = frozenset(
    {
        "RequestLimitExceeded",
        "Throttling",
        "ThrottlingException",
        "ServiceUnavailable",
        "Unavailable",
        "InternalError",
        "IncorrectState",
        # Dependents are still being torn down
        "DependencyViolation",
    }
)

GONE_STATES = frozenset({"deleted", "deleting", "terminated", "shutting-down"})
FAILED_STATES = frozenset({"failed", "rejected", "failing", "expired"})

DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_MAX_POLL_ATTEMPTS = 120


def immutable_inputs_hash(kind: str, inputs: Mapping[str, Any]) -> str:
    """Fingerprint of the inputs that cannot change in place."""
    mutable = MUTABLE_INPUTS.get(kind, DEFAULT_MUTABLE_INPUTS)
    return compute_fingerprint(kind, {k: v for k, v in inputs.items() if k not in mutable})


def _aws_tags(tags: Mapping[str, str]) -> list[dict[str, str]]:
    return [{"Key": key, "Value": str(value)} for key, value in sorted(tags.items())]


def _tag_map(tags: list[dict[str, str]] | None) -> dict[str, str]:
    return {tag["Key"]: tag["Value"] for tag in tags or []}


def _is_not_found(error: ClientError) -> bool:
    return error.response.get("Error", {}).get("Code", "").endswith("NotFound")


def _single(items: list[dict[str, Any]], kind: str, remote_id: str) -> dict[str, Any]:
    if not items:
        raise NotFoundError(f"{kind} {remote_id} not found", code="NotFound")
    return items[0]


def _state_of(described: Mapping[str, Any]) -> str:
    state = described.get("State", "")
    if isinstance(state, Mapping):
        state = state.get("Name", "")
    return str(state).lower()


class Ec2Provider:
    """ProviderAdapter for EC2 and transit gateway resources."""

    def __init__(
        self,
        region: str,
        *,
        client: Any | None = None,
        session: boto3.Session | None = None,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        max_poll_attempts: int = DEFAULT_MAX_POLL_ATTEMPTS,
    ) -> None:
        """Initialize the provider.

        Args:
            region: AWS region all resources live in.
            client: Pre-built EC2 client (tests pass a mock).
            session: boto3 session used when no client is given.
            poll_interval_seconds: Delay between state polls.
            max_poll_attempts: Polls before giving up on a state transition.
        """
        self._region = region
        if client is None:
            client = (session or boto3.Session()).client("ec2", region_name=region)
        self._client = client
        self._poll_interval = poll_interval_seconds
        self._max_poll_attempts = max_poll_attempts

    @property
    def region(self) -> str:
        return self._region

    # =========================================================================
    # ProviderAdapter
    # =========================================================================

    def create(self, kind: str, inputs: Mapping[str, Any]) -> ProviderResult:
        self._check_kind(kind)
        with self._translate_errors(kind, "create"):
            remote_id = getattr(self, f"_create_{kind}")(inputs)
            logger.info("Created resource", extra={"kind": kind, "remote_id": remote_id})
            return ProviderResult(remote_id=remote_id, outputs=self._outputs(kind, remote_id))

    def read(self, kind: str, remote_id: str) -> Mapping[str, Any]:
        self._check_kind(kind)
        with self._translate_errors(kind, "read"):
            return self._outputs(kind, remote_id)

    def update(self, kind: str, remote_id: str, inputs: Mapping[str, Any]) -> Mapping[str, Any]:
        self._check_kind(kind)
        with self._translate_errors(kind, "update"):
            if kind not in TAG_RESOURCE_TYPES:
                raise ProviderError(
                    f"{kind} {remote_id} cannot be updated in place, requires replacement",
                    code="RequiresReplacement",
                )

            described = self._describe(kind, remote_id)
            current_tags = _tag_map(described.get("Tags"))
            if current_tags.get(INPUTS_HASH_TAG) != immutable_inputs_hash(kind, inputs):
                raise ProviderError(
                    f"{kind} {remote_id} has changed inputs that require replacement",
                    code="RequiresReplacement",
                )

            if kind == "transit_gateway_attachment":
                self._converge_attachment_routing(remote_id, inputs, described)

            self._sync_tags(remote_id, current_tags, self._desired_tags(kind, inputs))
            logger.info("Updated resource", extra={"kind": kind, "remote_id": remote_id})
            return self._outputs(kind, remote_id)

    def delete(self, kind: str, remote_id: str) -> None:
        self._check_kind(kind)
        with self._translate_errors(kind, "delete"):
            getattr(self, f"_delete_{kind}")(remote_id)
            logger.info("Deleted resource", extra={"kind": kind, "remote_id": remote_id})

    # =========================================================================
    # Shared helpers
    # =========================================================================

    def _check_kind(self, kind: str) -> None:
        if kind not in SUPPORTED_KINDS:
            raise ProviderError(f"Unsupported resource kind: {kind}", code="UnsupportedKind")

    @contextmanager
    def _translate_errors(self, kind: str, operation: str) -> Iterator[None]:
        """Map botocore exceptions to the provider error taxonomy."""
        try:
            yield
        except ClientError as e:
            error = e.response.get("Error", {})
            code = error.get("Code", "")
            message = f"{operation} {kind} failed: {code}: {error.get('Message', str(e))}"
            if code.endswith("NotFound"):
                if operation == "create":
                    raise ProviderError(message, retryable=True, code=code) from e
                raise NotFoundError(message, code=code) from e
            raise ProviderError(message, retryable=code in RETRYABLE_ERROR_CODES, code=code) from e
        except WaiterError as e:
            raise ProviderError(
                f"{operation} {kind} failed waiting: {e}", code="WaiterError"
            ) from e
        except BotoCoreError as e:
            # Connection and endpoint errors
            raise ProviderError(f"{operation} {kind} failed: {e}", retryable=True) from e

    def _describe(self, kind: str, remote_id: str) -> dict[str, Any]:
        return getattr(self, f"_describe_{kind}")(remote_id)

    def _outputs(self, kind: str, remote_id: str) -> dict[str, Any]:
        return getattr(self, f"_outputs_{kind}")(self._describe(kind, remote_id))

    def _desired_tags(self, kind: str, inputs: Mapping[str, Any]) -> dict[str, str]:
        tags = {key: str(value) for key, value in dict(inputs.get("tags") or {}).items()}
        tags[INPUTS_HASH_TAG] = immutable_inputs_hash(kind, inputs)
        return tags

    def _tag_specifications(self, kind: str, inputs: Mapping[str, Any]) -> list[dict[str, Any]]:
        return [
            {
                "ResourceType": TAG_RESOURCE_TYPES[kind],
                "Tags": _aws_tags(self._desired_tags(kind, inputs)),
            }
        ]

    def _sync_tags(self, remote_id: str, current: dict[str, str], desired: dict[str, str]) -> None:
        changed = {key: value for key, value in desired.items() if current.get(key) != value}
        # aws: prefixed tags are reserved
        removed = [key for key in current if key not in desired and not key.startswith("aws:")]
        if changed:
            self._client.create_tags(Resources=[remote_id], Tags=_aws_tags(changed))
        if removed:
            self._client.delete_tags(
                Resources=[remote_id], Tags=[{"Key": key} for key in sorted(removed)]
            )

    def _wait_until(
        self,
        kind: str,
        remote_id: str,
        wanted: str,
    ) -> dict[str, Any]:
        """Poll until the object reaches `wanted` state."""
        for _ in range(self._max_poll_attempts):
            try:
                described = self._describe(kind, remote_id)
            except ClientError as e:
                if not _is_not_found(e):
                    raise
                # Newly created objects can take a moment to become visible
                time.sleep(self._poll_interval)
                continue
            state = _state_of(described)
            if state == wanted:
                return described
            if state in FAILED_STATES:
                raise ProviderError(
                    f"{kind} {remote_id} entered state '{state}'", code="FailedState"
                )
            time.sleep(self._poll_interval)
        raise ProviderError(
            f"{kind} {remote_id} did not become {wanted} after {self._max_poll_attempts} polls",
            code="StateTimeout",
        )

    def _wait_until_gone(self, kind: str, remote_id: str) -> None:
        for _ in range(self._max_poll_attempts):
            try:
                self._describe(kind, remote_id)
            except NotFoundError:
                return
            except ClientError as e:
                if not _is_not_found(e):
                    raise
                return
            time.sleep(self._poll_interval)
        raise ProviderError(
            f"{kind} {remote_id} still exists after {self._max_poll_attempts} polls",
            code="StateTimeout",
        )

    def _poll(self, check: Callable[[], bool], description: str) -> None:
        for _ in range(self._max_poll_attempts):
            if check():
                return
            time.sleep(self._poll_interval)
        raise ProviderError(f"Timed out waiting for {description}", code="StateTimeout")

    # =========================================================================
    # vpc
    # =========================================================================

    def _create_vpc(self, inputs: Mapping[str, Any]) -> str:
        response = self._client.create_vpc(
            CidrBlock=inputs["cidr_block"],
            TagSpecifications=self._tag_specifications("vpc", inputs),
        )
        vpc_id = response["Vpc"]["VpcId"]
        self._client.get_waiter("vpc_available").wait(VpcIds=[vpc_id])

        # One attribute per call
        self._client.modify_vpc_attribute(
            VpcId=vpc_id, EnableDnsSupport={"Value": bool(inputs.get("enable_dns_support", True))}
        )
        self._client.modify_vpc_attribute(
            VpcId=vpc_id,
            EnableDnsHostnames={"Value": bool(inputs.get("enable_dns_hostnames", False))},
        )
        return vpc_id

    def _describe_vpc(self, remote_id: str) -> dict[str, Any]:
        vpcs = self._client.describe_vpcs(VpcIds=[remote_id]).get("Vpcs", [])
        return _single(vpcs, "vpc", remote_id)

    def _outputs_vpc(self, described: Mapping[str, Any]) -> dict[str, Any]:
        return {"cidr_block": described.get("CidrBlock"), "owner_id": described.get("OwnerId")}

    def _delete_vpc(self, remote_id: str) -> None:
        self._client.delete_vpc(VpcId=remote_id)

    # =========================================================================
    # subnet
    # =========================================================================

    def _create_subnet(self, inputs: Mapping[str, Any]) -> str:
        kwargs: dict[str, Any] = {
            "VpcId": inputs["vpc_id"],
            "CidrBlock": inputs["cidr_block"],
            "TagSpecifications": self._tag_specifications("subnet", inputs),
        }
        if inputs.get("availability_zone"):
            kwargs["AvailabilityZone"] = inputs["availability_zone"]
        subnet_id = self._client.create_subnet(**kwargs)["Subnet"]["SubnetId"]
        self._client.get_waiter("subnet_available").wait(SubnetIds=[subnet_id])
        return subnet_id

    def _describe_subnet(self, remote_id: str) -> dict[str, Any]:
        subnets = self._client.describe_subnets(SubnetIds=[remote_id]).get("Subnets", [])
        return _single(subnets, "subnet", remote_id)

    def _outputs_subnet(self, described: Mapping[str, Any]) -> dict[str, Any]:
        return {
            "cidr_block": described.get("CidrBlock"),
            "vpc_id": described.get("VpcId"),
            "availability_zone": described.get("AvailabilityZone"),
        }

    def _delete_subnet(self, remote_id: str) -> None:
        self._client.delete_subnet(SubnetId=remote_id)

    # =========================================================================
    # security_group
    # =========================================================================

    @staticmethod
    def _ip_permissions(rules: list[Mapping[str, Any]]) -> list[dict[str, Any]]:
        permissions = []
        for rule in rules:
            protocol = str(rule.get("protocol", "-1"))
            ip_ranges = []
            for cidr in rule.get("cidr_blocks", []):
                ip_range = {"CidrIp": cidr}
                if rule.get("description"):
                    ip_range["Description"] = rule["description"]
                ip_ranges.append(ip_range)
            permission: dict[str, Any] = {"IpProtocol": protocol, "IpRanges": ip_ranges}
            # Ports are meaningless for "all protocols"
            if protocol != "-1":
                permission["FromPort"] = int(rule.get("from_port", 0))
                permission["ToPort"] = int(rule.get("to_port", 0))
            permissions.append(permission)
        return permissions

    def _create_security_group(self, inputs: Mapping[str, Any]) -> str:
        group_id = self._client.create_security_group(
            GroupName=inputs["group_name"],
            Description=inputs.get("description") or inputs["group_name"],
            VpcId=inputs["vpc_id"],
            TagSpecifications=self._tag_specifications("security_group", inputs),
        )["GroupId"]

        ingress = self._ip_permissions(inputs.get("ingress", []))
        if ingress:
            self._client.authorize_security_group_ingress(GroupId=group_id, IpPermissions=ingress)

        # Replace the default allow-all egress rule with the declared rules
        self._client.revoke_security_group_egress(
            GroupId=group_id,
            IpPermissions=[{"IpProtocol": "-1", "IpRanges": [{"CidrIp": "0.0.0.0/0"}]}],
        )
        egress = self._ip_permissions(inputs.get("egress", []))
        if egress:
            self._client.authorize_security_group_egress(GroupId=group_id, IpPermissions=egress)
        return group_id

    def _describe_security_group(self, remote_id: str) -> dict[str, Any]:
        groups = self._client.describe_security_groups(GroupIds=[remote_id]).get(
            "SecurityGroups", []
        )
        return _single(groups, "security_group", remote_id)

    def _outputs_security_group(self, described: Mapping[str, Any]) -> dict[str, Any]:
        return {"group_name": described.get("GroupName"), "vpc_id": described.get("VpcId")}

    def _delete_security_group(self, remote_id: str) -> None:
        self._client.delete_security_group(GroupId=remote_id)

    # =========================================================================
    # vpc_endpoint
    # =========================================================================

    def _create_vpc_endpoint(self, inputs: Mapping[str, Any]) -> str:
        endpoint_id = self._client.create_vpc_endpoint(
            VpcEndpointType=inputs.get("vpc_endpoint_type", "Interface"),
            VpcId=inputs["vpc_id"],
            ServiceName=inputs["service_name"],
            SubnetIds=list(inputs.get("subnet_ids", [])),
            SecurityGroupIds=list(inputs.get("security_group_ids", [])),
            PrivateDnsEnabled=bool(inputs.get("private_dns_enabled", False)),
            TagSpecifications=self._tag_specifications("vpc_endpoint", inputs),
        )["VpcEndpoint"]["VpcEndpointId"]
        self._wait_until("vpc_endpoint", endpoint_id, "available")
        return endpoint_id

    def _describe_vpc_endpoint(self, remote_id: str) -> dict[str, Any]:
        endpoints = self._client.describe_vpc_endpoints(VpcEndpointIds=[remote_id]).get(
            "VpcEndpoints", []
        )
        endpoint = _single(endpoints, "vpc_endpoint", remote_id)
        if _state_of(endpoint) in GONE_STATES:
            raise NotFoundError(
                f"vpc_endpoint {remote_id} is {_state_of(endpoint)}", code="NotFound"
            )
        return endpoint

    def _outputs_vpc_endpoint(self, described: Mapping[str, Any]) -> dict[str, Any]:
        return {
            "service_name": described.get("ServiceName"),
            "dns_names": [entry["DnsName"] for entry in described.get("DnsEntries", [])],
        }

    def _delete_vpc_endpoint(self, remote_id: str) -> None:
        response = self._client.delete_vpc_endpoints(VpcEndpointIds=[remote_id])
        for item in response.get("Unsuccessful", []):
            error = item.get("Error", {})
            code = error.get("Code", "")
            if code.endswith("NotFound"):
                raise NotFoundError(f"vpc_endpoint {remote_id} not found", code=code)
            raise ProviderError(
                f"delete vpc_endpoint {remote_id} failed: {code}: {error.get('Message', '')}",
                code=code,
            )
        # Interface endpoints hold network interfaces in the subnet until gone
        self._wait_until_gone("vpc_endpoint", remote_id)

    # =========================================================================
    # instance
    # =========================================================================

    def _create_instance(self, inputs: Mapping[str, Any]) -> str:
        kwargs: dict[str, Any] = {
            "ImageId": inputs["ami"],
            "InstanceType": inputs["instance_type"],
            "MinCount": 1,
            "MaxCount": 1,
            "SubnetId": inputs["subnet_id"],
            "SecurityGroupIds": list(inputs.get("security_group_ids", [])),
            "TagSpecifications": self._tag_specifications("instance", inputs),
        }
        if inputs.get("iam_instance_profile"):
            kwargs["IamInstanceProfile"] = {"Name": inputs["iam_instance_profile"]}
        instance_id = self._client.run_instances(**kwargs)["Instances"][0]["InstanceId"]
        self._client.get_waiter("instance_running").wait(InstanceIds=[instance_id])
        return instance_id

    def _describe_instance(self, remote_id: str) -> dict[str, Any]:
        reservations = self._client.describe_instances(InstanceIds=[remote_id]).get(
            "Reservations", []
        )
        instances = [i for r in reservations for i in r.get("Instances", [])]
        instance = _single(instances, "instance", remote_id)
        if _state_of(instance) in GONE_STATES:
            raise NotFoundError(f"instance {remote_id} is {_state_of(instance)}", code="NotFound")
        return instance

    def _outputs_instance(self, described: Mapping[str, Any]) -> dict[str, Any]:
        return {
            "private_ip": described.get("PrivateIpAddress"),
            "availability_zone": described.get("Placement", {}).get("AvailabilityZone"),
        }

    def _delete_instance(self, remote_id: str) -> None:
        self._client.terminate_instances(InstanceIds=[remote_id])
        self._client.get_waiter("instance_terminated").wait(InstanceIds=[remote_id])

    # =========================================================================
    # transit_gateway
    # =========================================================================

    def _create_transit_gateway(self, inputs: Mapping[str, Any]) -> str:
        def flag(key: str) -> str:
            return "enable" if inputs.get(key, True) else "disable"

        options: dict[str, Any] = {
            "DefaultRouteTableAssociation": flag("default_route_table_association"),
            "DefaultRouteTablePropagation": flag("default_route_table_propagation"),
        }
        if inputs.get("amazon_side_asn") is not None:
            options["AmazonSideAsn"] = int(inputs["amazon_side_asn"])

        tgw_id = self._client.create_transit_gateway(
            Description=inputs.get("description", ""),
            Options=options,
            TagSpecifications=self._tag_specifications("transit_gateway", inputs),
        )["TransitGateway"]["TransitGatewayId"]
        self._wait_until("transit_gateway", tgw_id, "available")
        return tgw_id

    def _describe_transit_gateway(self, remote_id: str) -> dict[str, Any]:
        gateways = self._client.describe_transit_gateways(TransitGatewayIds=[remote_id]).get(
            "TransitGateways", []
        )
        gateway = _single(gateways, "transit_gateway", remote_id)
        if _state_of(gateway) in GONE_STATES:
            raise NotFoundError(f"transit_gateway {remote_id} is deleted", code="NotFound")
        return gateway

    def _outputs_transit_gateway(self, described: Mapping[str, Any]) -> dict[str, Any]:
        return {
            "arn": described.get("TransitGatewayArn"),
            "amazon_side_asn": described.get("Options", {}).get("AmazonSideAsn"),
        }

    def _delete_transit_gateway(self, remote_id: str) -> None:
        self._client.delete_transit_gateway(TransitGatewayId=remote_id)

    # =========================================================================
    # transit_gateway_route_table
    # =========================================================================

    def _create_transit_gateway_route_table(self, inputs: Mapping[str, Any]) -> str:
        table_id = self._client.create_transit_gateway_route_table(
            TransitGatewayId=inputs["transit_gateway_id"],
            TagSpecifications=self._tag_specifications("transit_gateway_route_table", inputs),
        )["TransitGatewayRouteTable"]["TransitGatewayRouteTableId"]
        self._wait_until("transit_gateway_route_table", table_id, "available")
        return table_id

    def _describe_transit_gateway_route_table(self, remote_id: str) -> dict[str, Any]:
        tables = self._client.describe_transit_gateway_route_tables(
            TransitGatewayRouteTableIds=[remote_id]
        ).get("TransitGatewayRouteTables", [])
        table = _single(tables, "transit_gateway_route_table", remote_id)
        if _state_of(table) in GONE_STATES:
            raise NotFoundError(
                f"transit_gateway_route_table {remote_id} is deleted", code="NotFound"
            )
        return table

    def _outputs_transit_gateway_route_table(self, described: Mapping[str, Any]) -> dict[str, Any]:
        return {"transit_gateway_id": described.get("TransitGatewayId")}

    def _delete_transit_gateway_route_table(self, remote_id: str) -> None:
        self._client.delete_transit_gateway_route_table(TransitGatewayRouteTableId=remote_id)

    # =========================================================================
    # transit_gateway_attachment
    # =========================================================================

    def _create_transit_gateway_attachment(self, inputs: Mapping[str, Any]) -> str:
        attachment_id = self._client.create_transit_gateway_vpc_attachment(
            TransitGatewayId=inputs["transit_gateway_id"],
            VpcId=inputs["vpc_id"],
            SubnetIds=list(inputs["subnet_ids"]),
            TagSpecifications=self._tag_specifications("transit_gateway_attachment", inputs),
        )["TransitGatewayVpcAttachment"]["TransitGatewayAttachmentId"]
        described = self._wait_until("transit_gateway_attachment", attachment_id, "available")
        self._converge_attachment_routing(attachment_id, inputs, described)
        return attachment_id

    def _describe_transit_gateway_attachment(self, remote_id: str) -> dict[str, Any]:
        attachments = self._client.describe_transit_gateway_attachments(
            TransitGatewayAttachmentIds=[remote_id]
        ).get("TransitGatewayAttachments", [])
        attachment = _single(attachments, "transit_gateway_attachment", remote_id)
        if _state_of(attachment) in GONE_STATES:
            raise NotFoundError(
                f"transit_gateway_attachment {remote_id} is {_state_of(attachment)}",
                code="NotFound",
            )
        return attachment

    def _propagated_tables(self, attachment_id: str) -> set[str]:
        response = self._client.get_transit_gateway_attachment_propagations(
            TransitGatewayAttachmentId=attachment_id
        )
        return {
            item["TransitGatewayRouteTableId"]
            for item in response.get("TransitGatewayAttachmentPropagations", [])
            if str(item.get("State", "")).lower() in ("enabled", "enabling")
        }

    def _associated_table(self, described: Mapping[str, Any]) -> str | None:
        association = described.get("Association") or {}
        if str(association.get("State", "")).lower() in ("associated", "associating"):
            return association.get("TransitGatewayRouteTableId")
        return None

    def _converge_attachment_routing(
        self,
        attachment_id: str,
        inputs: Mapping[str, Any],
        described: Mapping[str, Any],
    ) -> None:
        """Associate the attachment with its table and set propagations."""
        wanted_table = inputs.get("association_route_table_id")
        current_table = self._associated_table(described)

        if current_table != wanted_table:
            if current_table is not None:
                self._client.disassociate_transit_gateway_route_table(
                    TransitGatewayRouteTableId=current_table,
                    TransitGatewayAttachmentId=attachment_id,
                )
                # An attachment has at most one association at a time
                self._poll(
                    lambda: self._associated_table(
                        self._describe_transit_gateway_attachment(attachment_id)
                    )
                    is None,
                    f"disassociation of {attachment_id}",
                )
            if wanted_table:
                self._client.associate_transit_gateway_route_table(
                    TransitGatewayRouteTableId=wanted_table,
                    TransitGatewayAttachmentId=attachment_id,
                )

        wanted = set(inputs.get("propagation_route_table_ids", []))
        if wanted_table and inputs.get("propagate_to_association_table", False):
            wanted.add(wanted_table)
        current = self._propagated_tables(attachment_id)

        for table_id in sorted(wanted - current):
            self._client.enable_transit_gateway_route_table_propagation(
                TransitGatewayRouteTableId=table_id, TransitGatewayAttachmentId=attachment_id
            )
        for table_id in sorted(current - wanted):
            self._client.disable_transit_gateway_route_table_propagation(
                TransitGatewayRouteTableId=table_id, TransitGatewayAttachmentId=attachment_id
            )

        logger.debug(
            "Converged attachment routing",
            extra={
                "attachment_id": attachment_id,
                "association": wanted_table,
                "propagations": sorted(wanted),
            },
        )

    def _outputs_transit_gateway_attachment(self, described: Mapping[str, Any]) -> dict[str, Any]:
        attachment_id = described["TransitGatewayAttachmentId"]
        association = self._associated_table(described)
        propagated = self._propagated_tables(attachment_id)
        return {
            "association_route_table_id": association,
            # Peer tables only; propagation into the own table is reported separately
            "propagations": sorted(propagated - {association}),
            "propagates_to_association_table": association in propagated,
        }

    def _delete_transit_gateway_attachment(self, remote_id: str) -> None:
        self._client.delete_transit_gateway_vpc_attachment(TransitGatewayAttachmentId=remote_id)
        # Route tables and the gateway cannot be deleted while attached
        self._wait_until_gone("transit_gateway_attachment", remote_id)

    # =========================================================================
    # route_table
    # =========================================================================

    def _create_route_table(self, inputs: Mapping[str, Any]) -> str:
        table_id = self._client.create_route_table(
            VpcId=inputs["vpc_id"],
            TagSpecifications=self._tag_specifications("route_table", inputs),
        )["RouteTable"]["RouteTableId"]

        for route in inputs.get("routes", []):
            kwargs: dict[str, Any] = {
                "RouteTableId": table_id,
                "DestinationCidrBlock": route["destination_cidr_block"],
            }
            if route.get("transit_gateway_id"):
                kwargs["TransitGatewayId"] = route["transit_gateway_id"]
            if route.get("gateway_id"):
                kwargs["GatewayId"] = route["gateway_id"]
            self._client.create_route(**kwargs)
        return table_id

    def _describe_route_table(self, remote_id: str) -> dict[str, Any]:
        tables = self._client.describe_route_tables(RouteTableIds=[remote_id]).get(
            "RouteTables", []
        )
        return _single(tables, "route_table", remote_id)

    def _outputs_route_table(self, described: Mapping[str, Any]) -> dict[str, Any]:
        return {
            "vpc_id": described.get("VpcId"),
            "routes": [
                route["DestinationCidrBlock"]
                for route in described.get("Routes", [])
                if "DestinationCidrBlock" in route
            ],
        }

    def _delete_route_table(self, remote_id: str) -> None:
        self._client.delete_route_table(RouteTableId=remote_id)

    # =========================================================================
    # route_table_association
    # =========================================================================

    def _create_route_table_association(self, inputs: Mapping[str, Any]) -> str:
        return self._client.associate_route_table(
            SubnetId=inputs["subnet_id"],
            RouteTableId=inputs["route_table_id"],
        )["AssociationId"]

    def _describe_route_table_association(self, remote_id: str) -> dict[str, Any]:
        tables = self._client.describe_route_tables(
            Filters=[{"Name": "association.route-table-association-id", "Values": [remote_id]}]
        ).get("RouteTables", [])
        associations = [
            association
            for table in tables
            for association in table.get("Associations", [])
            if association.get("RouteTableAssociationId") == remote_id
        ]
        return _single(associations, "route_table_association", remote_id)

    def _outputs_route_table_association(self, described: Mapping[str, Any]) -> dict[str, Any]:
        return {
            "subnet_id": described.get("SubnetId"),
            "route_table_id": described.get("RouteTableId"),
        }

    def _delete_route_table_association(self, remote_id: str) -> None:
        self._client.disassociate_route_table(AssociationId=remote_id)
