"""AWS EC2 control plane.

Implements ``CloudClient`` on top of a boto3 EC2 client. Instances are
matched by security group name (the default) or by their ``Name`` tag.
"""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from functools import cached_property
from typing import TYPE_CHECKING, Any, Literal

from botocore.exceptions import ClientError
from loguru import logger
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_fixed,
)

from shellfleet.constants import DISCOVERABLE_STATES, InstanceState
from shellfleet.exceptions import CloudError
from shellfleet.types import FirewallRule, Instance, LaunchSpec, Reservation, TerminationResult

if TYPE_CHECKING:
    from mypy_boto3_ec2 import EC2Client

type MatchBy = Literal["security-group", "tag"]

_MATCH_FILTERS: dict[MatchBy, str] = {
    "security-group": "instance.group-name",
    "tag": "tag:Name",
}


def _is_not_found(e: BaseException) -> bool:
    """Freshly launched ids can be unknown to describe calls for a moment."""
    return (
        isinstance(e, ClientError)
        and e.response.get("Error", {}).get("Code") == "InvalidInstanceID.NotFound"
    )


@contextmanager
def _translate(action: str) -> Iterator[None]:
    try:
        yield
    except ClientError as e:
        error = e.response.get("Error", {})
        raise CloudError(action, f"{error.get('Code', '?')}: {error.get('Message', e)}") from e


def parse_instance(raw: dict[str, Any], reservation_id: str | None = None) -> Instance:
    """Parse an instance description from the EC2 API."""
    reason = raw.get("StateTransitionReason") or raw.get("StateReason", {}).get("Message", "")
    return Instance(
        id=raw["InstanceId"],
        state=InstanceState.parse(raw.get("State", {}).get("Name")),
        public_address=raw.get("PublicDnsName") or raw.get("PublicIpAddress") or None,
        security_groups=tuple(g["GroupName"] for g in raw.get("SecurityGroups", [])),
        reservation_id=reservation_id,
        state_reason=reason,
    )


def parse_rules(security_group: dict[str, Any], protocol: str) -> list[FirewallRule]:
    """Inbound rules of a security group for exactly ``protocol``."""
    rules = []
    for permission in security_group.get("IpPermissions", []):
        if permission.get("IpProtocol") != protocol:
            continue
        sources = [r["CidrIp"] for r in permission.get("IpRanges", [])]
        sources += [r["CidrIpv6"] for r in permission.get("Ipv6Ranges", [])]
        rules.append(
            FirewallRule(
                protocol=protocol,
                from_port=permission.get("FromPort"),
                to_port=permission.get("ToPort"),
                sources=tuple(sources),
                group=security_group.get("GroupName", ""),
            )
        )
    return rules


class EC2Cloud:
    """EC2 implementation of the cloud control plane."""

    def __init__(
        self,
        region: str | None = None,
        *,
        profile: str | None = None,
        match: MatchBy = "security-group",
        client: EC2Client | None = None,
    ) -> None:
        self.region = region
        self.profile = profile
        self.match = match
        if client is not None:
            self.__dict__["_ec2"] = client

    @cached_property
    def _ec2(self) -> EC2Client:
        import boto3

        session = boto3.Session(profile_name=self.profile) if self.profile else boto3.Session()
        return session.client("ec2", region_name=self.region)

    def _paginate(self, action: str, **kwargs: Any) -> Iterator[dict[str, Any]]:
        paginator = self._ec2.get_paginator(action)  # type: ignore[call-overload]
        yield from paginator.paginate(**kwargs)

    def find_instances(
        self, group: str, states: Sequence[InstanceState] = DISCOVERABLE_STATES,
    ) -> list[Instance]:
        filters = [
            {"Name": _MATCH_FILTERS[self.match], "Values": [group]},
            {"Name": "instance-state-name", "Values": [str(s) for s in states]},
        ]
        instances = []
        with _translate("describe_instances"):
            for page in self._paginate("describe_instances", Filters=filters):
                for reservation in page.get("Reservations", []):
                    raw = sorted(reservation.get("Instances", []), key=lambda i: i.get("AmiLaunchIndex", 0))
                    instances += [parse_instance(i, reservation.get("ReservationId")) for i in raw]
        logger.debug(f"EC2: {len(instances)} instances match {self.match} '{group}'")
        return instances

    @retry(
        stop=stop_after_attempt(5),
        wait=wait_fixed(2),
        retry=retry_if_exception(_is_not_found),
        reraise=True,
    )
    def _describe(self, instance_ids: Sequence[str]) -> list[Instance]:
        instances = []
        for page in self._paginate("describe_instances", InstanceIds=list(instance_ids)):
            for reservation in page.get("Reservations", []):
                instances += [
                    parse_instance(i, reservation.get("ReservationId"))
                    for i in reservation.get("Instances", [])
                ]
        return instances

    def describe(self, instance_ids: Sequence[str]) -> list[Instance]:
        if not instance_ids:
            return []
        with _translate("describe_instances"):
            return self._describe(instance_ids)

    def launch(self, spec: LaunchSpec) -> Reservation:
        request: dict[str, Any] = {
            "ImageId": spec.image_id,
            "InstanceType": spec.instance_type,
            "MinCount": spec.min_count,
            "MaxCount": spec.max_count,
        }
        if spec.security_groups:
            request["SecurityGroups"] = list(spec.security_groups)
        if spec.key_name:
            request["KeyName"] = spec.key_name
        if spec.user_data:
            request["UserData"] = spec.user_data
        if spec.tags:
            request["TagSpecifications"] = [
                {
                    "ResourceType": "instance",
                    "Tags": [{"Key": k, "Value": v} for k, v in spec.tags.items()],
                }
            ]

        with _translate("run_instances"):
            response = self._ec2.run_instances(**request)

        reservation_id = response["ReservationId"]
        return Reservation(
            id=reservation_id,
            instances=tuple(parse_instance(i, reservation_id) for i in response.get("Instances", [])),
        )

    def terminate(self, instance_ids: Sequence[str]) -> TerminationResult:
        with _translate("terminate_instances"):
            response = self._ec2.terminate_instances(InstanceIds=list(instance_ids))
        return TerminationResult(
            terminating=tuple(i["InstanceId"] for i in response.get("TerminatingInstances", [])),
        )

    def list_firewall_rules(self, groups: Sequence[str], protocol: str) -> list[FirewallRule]:
        if not groups:
            return []
        rules = []
        with _translate("describe_security_groups"):
            for page in self._paginate(
                "describe_security_groups",
                Filters=[{"Name": "group-name", "Values": list(groups)}],
            ):
                for security_group in page.get("SecurityGroups", []):
                    rules += parse_rules(security_group, protocol)
        return rules

