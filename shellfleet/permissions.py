"""Permission checker: is inbound SSH open on the members' security groups?"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from loguru import logger

from shellfleet.constants import SSH_PORT, SSH_PROTOCOL
from shellfleet.exceptions import PermissionError
from shellfleet.types import CloudClient, FirewallRule


@dataclass(frozen=True, slots=True)
class SshPermission:
    """The inbound rule a group needs for remote shell access.

    Protocol and port range must match a rule exactly; a rule that covers
    a wider or overlapping range does not count. With ``sources`` set, the
    rule must also admit at least one of them.
    """

    protocol: str = SSH_PROTOCOL
    from_port: int = SSH_PORT
    to_port: int = SSH_PORT
    sources: tuple[str, ...] | None = None

    def matches(self, rule: FirewallRule) -> bool:
        if rule.protocol != self.protocol:
            return False
        if rule.from_port != self.from_port or rule.to_port != self.to_port:
            return False
        if self.sources is None:
            return True
        return any(source in rule.sources for source in self.sources)

    def __str__(self) -> str:
        ports = f"{self.from_port}-{self.to_port}"
        return f"{self.protocol}:{ports}" + (f" from {list(self.sources)}" if self.sources else "")


def check_ssh_permission(
    cloud: CloudClient,
    groups: Sequence[str],
    permission: SshPermission | None = None,
) -> FirewallRule:
    """Return the first rule granting ``permission`` on ``groups``.

    Raises:
        PermissionError: If no rule exists for the protocol, or the rules
            for the protocol use different ports or sources.
    """
    permission = permission or SshPermission()
    rules = cloud.list_firewall_rules(groups, permission.protocol)

    if not rules:
        raise PermissionError(f"No permission for '{permission}' set on groups {list(groups)}")

    for rule in rules:
        if permission.matches(rule):
            logger.debug(f"SSH permitted by rule {rule}")
            return rule

    found = ", ".join(f"{r.group or '?'}:{r.from_port}-{r.to_port}" for r in rules)
    raise PermissionError(
        f"Found permissions for protocol '{permission.protocol}' on groups {list(groups)} "
        f"but with diverse ports or sources ({found}); need {permission}"
    )
