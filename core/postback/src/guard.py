"""
Access Guard: caller address allow-listing for the postback route.

Default deny in secure mode.  Open mode short-circuits to allow without
resolving any address.
"""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from .audit_log import AuditLogWriter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    caller_ip: Optional[str]
    reason: str


def strip_port(address: str) -> str:
    """
    Remove a trailing port from ``a.b.c.d:port`` or ``[v6]:port``.

    IPv4-mapped IPv6 (``::ffff:1.2.3.4``) is unwrapped to the IPv4 form.
    Bare IPv6 addresses and anything unparseable come back as given.
    """
    addr = address.strip()
    if addr.startswith("["):
        end = addr.find("]")
        if end != -1:
            addr = addr[1:end]
    elif addr.count(":") == 1:
        addr = addr.rsplit(":", 1)[0]

    try:
        ip = ipaddress.ip_address(addr)
    except ValueError:
        return addr
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return str(ip.ipv4_mapped)
    return addr


def resolve_caller_ip(
    forwarded_for: Optional[str],
    peer_host: Optional[str],
) -> Optional[str]:
    """
    Forwarded-for header wins when present.  It is treated as one opaque
    token (no hop splitting); only a trailing port is removed.
    """
    if forwarded_for and forwarded_for.strip():
        return strip_port(forwarded_for)
    if peer_host:
        return strip_port(peer_host)
    return None


class AccessGuard:
    """Allow/deny decision per request, fixed to a mode at construction."""

    def __init__(
        self,
        mode: str,
        allowed_ips: Iterable[str],
        audit: AuditLogWriter,
    ) -> None:
        if mode not in ("secure", "open"):
            raise ValueError(f"Unknown access mode: {mode!r}")
        self.mode = mode
        self.allowed_ips = frozenset(allowed_ips)
        self._audit = audit

    def check(
        self,
        forwarded_for: Optional[str],
        peer_host: Optional[str],
    ) -> AccessDecision:
        if self.mode == "open":
            return AccessDecision(allowed=True, caller_ip=None, reason="open mode")

        caller_ip = resolve_caller_ip(forwarded_for, peer_host)
        if caller_ip is not None and caller_ip in self.allowed_ips:
            return AccessDecision(allowed=True, caller_ip=caller_ip, reason="allowlisted")

        logger.warning("Blocked postback from %s", caller_ip)
        self._audit.append_blocked(caller_ip)
        return AccessDecision(allowed=False, caller_ip=caller_ip, reason="not allowlisted")
