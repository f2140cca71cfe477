"""Whitelist/blacklist classification of a request's network identity.

Precedence:
- The blacklist is checked first and is absolute.
- Otherwise a whitelisted IP (internal or admin list) or the admin role
  short-circuits to ALLOW_LISTED, bypassing rate and abuse checks.
- Everything else is UNLISTED.

List entries are either exact addresses (string equality, with the
IPv4-mapped ``::ffff:a.b.c.d`` form treated as ``a.b.c.d``) or IPv4 CIDR
ranges ``a.b.c.d/prefix`` with a prefix of 0-32. Structurally invalid
addresses or ranges never match.

The evaluator is pure and immutable: rules are compiled once at startup.
"""

from __future__ import annotations

import ipaddress
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

from gatekeeper.core.config import AccessListSettings
from gatekeeper.core.errors import InvalidIdentityError

logger = logging.getLogger(__name__)

_IPV4_MAPPED_PREFIX = "::ffff:"


class AccessClass(str, Enum):
    ALLOW_LISTED = "allow_listed"
    DENY_LISTED = "deny_listed"
    UNLISTED = "unlisted"


def _strip_mapped_prefix(ip: str) -> str:
    if ip.lower().startswith(_IPV4_MAPPED_PREFIX):
        return ip[len(_IPV4_MAPPED_PREFIX):]
    return ip


def parse_ipv4(ip: str) -> ipaddress.IPv4Address:
    """Parse a dotted-quad address, accepting the IPv4-mapped IPv6 form.

    Raises:
        InvalidIdentityError: If the value is not four numeric octets.
    """
    try:
        return ipaddress.IPv4Address(_strip_mapped_prefix(ip.strip()))
    except (ipaddress.AddressValueError, ValueError) as exc:
        raise InvalidIdentityError(
            code="invalid_ip",
            message=f"Not a valid IPv4 address: {ip!r}",
        ) from exc


def parse_cidr(cidr: str) -> ipaddress.IPv4Network:
    """Parse ``a.b.c.d/prefix`` with host bits allowed.

    Raises:
        InvalidIdentityError: If the base address or prefix is malformed.
    """
    base, sep, prefix = cidr.strip().partition("/")
    if not sep or not prefix.isdigit() or not 0 <= int(prefix) <= 32:
        raise InvalidIdentityError(
            code="invalid_cidr",
            message=f"Not a valid IPv4 CIDR range: {cidr!r}",
        )
    try:
        return ipaddress.IPv4Network(f"{base}/{int(prefix)}", strict=False)
    except (ipaddress.AddressValueError, ipaddress.NetmaskValueError, ValueError) as exc:
        raise InvalidIdentityError(
            code="invalid_cidr",
            message=f"Not a valid IPv4 CIDR range: {cidr!r}",
        ) from exc


def is_ip_in_range(ip: str, cidr: str) -> bool:
    """Return whether ``ip`` lies inside ``cidr``; invalid input never matches."""

    if not ip or not cidr:
        return False
    try:
        return parse_ipv4(ip) in parse_cidr(cidr)
    except InvalidIdentityError:
        return False


@dataclass(frozen=True)
class IpRule:
    """One compiled list entry.

    Attributes:
        raw: Entry as configured.
        network: Parsed range for CIDR entries, None for exact entries.
        valid: False when a CIDR entry failed to parse (never matches).
    """

    raw: str
    network: ipaddress.IPv4Network | None = None
    valid: bool = True

    def matches(self, ip: str) -> bool:
        if not self.valid:
            return False
        if self.network is None:
            return ip == self.raw or _strip_mapped_prefix(ip) == self.raw
        try:
            return parse_ipv4(ip) in self.network
        except InvalidIdentityError:
            return False


def compile_rules(entries: Iterable[str]) -> tuple[IpRule, ...]:
    """Compile configured list entries into immutable rules."""

    rules: list[IpRule] = []
    for entry in entries:
        entry = entry.strip()
        if not entry:
            continue
        if "/" not in entry:
            rules.append(IpRule(raw=entry))
            continue
        try:
            rules.append(IpRule(raw=entry, network=parse_cidr(entry)))
        except InvalidIdentityError as exc:
            logger.warning(
                "access_list.invalid_entry",
                extra={"entry": entry, "error_code": exc.code},
            )
            rules.append(IpRule(raw=entry, valid=False))
    return tuple(rules)


def is_ip_listed(ip: str | None, rules: Iterable[IpRule]) -> bool:
    """Return whether any rule matches ``ip``."""

    if not ip:
        return False
    return any(rule.matches(ip) for rule in rules)


class AccessListEvaluator:
    """Classify client IPs and roles against static allow/deny lists."""

    def __init__(
        self,
        *,
        internal_ips: Iterable[str] = (),
        admin_ips: Iterable[str] = (),
        blacklist_ips: Iterable[str] = (),
        admin_role: str = "admin",
    ) -> None:
        self._internal = compile_rules(internal_ips)
        self._admin = compile_rules(admin_ips)
        self._blacklist = compile_rules(blacklist_ips)
        self._admin_role = admin_role

    @classmethod
    def from_settings(cls, access_lists: AccessListSettings) -> "AccessListEvaluator":
        return cls(
            internal_ips=access_lists.whitelist_internal_ips,
            admin_ips=access_lists.whitelist_admin_ips,
            blacklist_ips=access_lists.blacklist_ips,
            admin_role=access_lists.admin_role,
        )

    def is_blacklisted(self, ip: str | None) -> bool:
        return is_ip_listed(ip, self._blacklist)

    def is_whitelisted(self, ip: str | None, role: str | None = None) -> bool:
        if role is not None and role == self._admin_role:
            return True
        return is_ip_listed(ip, self._internal) or is_ip_listed(ip, self._admin)

    def classify(self, ip: str | None, role: str | None = None) -> AccessClass:
        """Classify a request by client IP and authenticated role."""

        if self.is_blacklisted(ip):
            return AccessClass.DENY_LISTED
        if self.is_whitelisted(ip, role):
            return AccessClass.ALLOW_LISTED
        return AccessClass.UNLISTED
