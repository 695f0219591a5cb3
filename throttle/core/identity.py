"""Identity key resolution for rate limiting.

Keys take one of two shapes:
- ``user:<principal id>`` when the caller is authenticated;
- ``ip:<address>`` otherwise.

The client address is the direct connection peer. ``X-Forwarded-For`` is
only believed when that peer is one of the configured trusted proxies, and
then only up to the nearest untrusted hop; otherwise any client could pick
its own bucket by sending the header.
Addresses that cannot be parsed collapse into the ``0.0.0.0`` bucket so an
unidentifiable caller is still throttled.
"""

from __future__ import annotations

import ipaddress
from typing import Iterable, Mapping

from starlette.requests import Request

UNKNOWN_ADDRESS = "0.0.0.0"
FORWARDED_FOR_HEADER = "x-forwarded-for"

IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network


def parse_trusted_proxies(value: str | Iterable[str] | None) -> tuple[IPNetwork, ...]:
    """Parse trusted proxy addresses or CIDR ranges.

    Args:
        value: Comma-separated string or iterable of IPs/CIDRs, or None.

    Returns:
        Tuple of networks; single addresses become /32 or /128 networks.

    Raises:
        ValueError: If an entry is not a valid address or network.

    Examples:
        >>> parse_trusted_proxies("10.0.0.0/8, 127.0.0.1")
        (IPv4Network('10.0.0.0/8'), IPv4Network('127.0.0.1/32'))
        >>> parse_trusted_proxies(None)
        ()
    """
    if not value:
        return ()
    entries = value.split(",") if isinstance(value, str) else value
    return tuple(
        ipaddress.ip_network(entry.strip(), strict=False) for entry in entries if entry.strip()
    )


def normalize_ip(value: str | None) -> str | None:
    """Return the canonical text form of an IP address, or None if invalid.

    IPv4-mapped IPv6 addresses are reduced to their IPv4 form so the same
    client cannot occupy two buckets.
    """
    if not value:
        return None
    candidate = value.strip()
    # Bracketed IPv6 ("[::1]") as seen in some proxy headers.
    if candidate.startswith("[") and candidate.endswith("]"):
        candidate = candidate[1:-1]
    try:
        address = ipaddress.ip_address(candidate)
    except ValueError:
        return None
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        address = address.ipv4_mapped
    return str(address)


class IdentityResolver:
    """Build deterministic rate limit keys from request attributes."""

    def __init__(self, trusted_proxies: str | Iterable[str] | None = None) -> None:
        self._trusted = parse_trusted_proxies(trusted_proxies)

    def _is_trusted_proxy(self, address: str) -> bool:
        if not self._trusted:
            return False
        ip = ipaddress.ip_address(address)
        return any(ip.version == net.version and ip in net for net in self._trusted)

    def client_ip(
        self,
        remote_addr: str | None,
        headers: Mapping[str, str] | None = None,
    ) -> str:
        """Return the client address to throttle under.

        Args:
            remote_addr: Direct connection peer address.
            headers: Request headers (case-insensitive mapping preferred).

        Returns:
            Normalized IP address, or ``0.0.0.0`` when none can be parsed.
        """
        direct = normalize_ip(remote_addr)
        if direct is None:
            return UNKNOWN_ADDRESS

        if headers is not None and self._is_trusted_proxy(direct):
            forwarded = headers.get(FORWARDED_FOR_HEADER) or headers.get("X-Forwarded-For")
            if forwarded:
                return self._forwarded_client(forwarded, direct)

        return direct

    def _forwarded_client(self, forwarded: str, direct: str) -> str:
        """Pick the client out of an ``X-Forwarded-For`` chain.

        Proxies append the address they received the request from, so only
        the right-hand end of the chain was written by infrastructure we
        trust. Walking right to left past trusted proxies, the first
        untrusted address is the client. Anything to its left was supplied
        by the client itself and is ignored.
        """
        client = direct
        for hop in reversed(forwarded.split(",")):
            address = normalize_ip(hop)
            if address is None:
                continue
            client = address
            if not self._is_trusted_proxy(address):
                break
        return client

    def resolve(
        self,
        *,
        principal_id: str | int | None = None,
        remote_addr: str | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> str:
        """Return the identity key for a caller.

        An authenticated principal always wins over the network address.
        """
        if principal_id is not None and str(principal_id) != "":
            return f"user:{principal_id}"
        return f"ip:{self.client_ip(remote_addr, headers)}"

    def resolve_request(self, request: Request, principal_id: str | int | None = None) -> str:
        """Return the identity key for a Starlette/FastAPI request."""
        remote_addr = request.client.host if request.client else None
        return self.resolve(
            principal_id=principal_id,
            remote_addr=remote_addr,
            headers=request.headers,
        )
