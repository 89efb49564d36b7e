"""Check that a domain points at this server before requesting a certificate."""

import ipaddress
from typing import Iterable, List, Optional, Tuple

import dns.exception
import dns.resolver
import requests
import structlog

from server_provisioner.exceptions import DnsMismatchError
from server_provisioner.types import DnsMatch, DnsRecords, ServerAddresses
from server_provisioner.utils.validation import normalize_ip

logger = structlog.get_logger(__name__)


def resolve_records(
    domain: str, nameserver: str = "8.8.8.8", lifetime: float = 5.0
) -> DnsRecords:
    """Resolve the A and AAAA records of a domain through one nameserver.

    Missing records, NXDOMAIN and timeouts all yield an empty tuple for
    that family.
    """
    resolver = dns.resolver.Resolver(configure=False)
    resolver.nameservers = [nameserver]
    resolver.lifetime = lifetime

    def _lookup(rdtype: str) -> Tuple[str, ...]:
        try:
            answer = resolver.resolve(domain, rdtype)
        except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer, dns.resolver.NoNameservers):
            return ()
        except dns.exception.Timeout:
            logger.warning("dns_lookup_timeout", domain=domain, rdtype=rdtype)
            return ()
        return tuple(str(rdata) for rdata in answer)

    return DnsRecords(ipv4=_lookup("A"), ipv6=_lookup("AAAA"))


def fetch_public_ip(url: str, version: int, timeout: float = 5.0) -> Optional[str]:
    """Ask an IP echo service for this host's public address.

    Returns:
        The address, or None if the service is unreachable or answers with
        an address of the wrong family
    """
    try:
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as e:
        logger.debug("public_ip_unavailable", url=url, error=str(e))
        return None

    address = normalize_ip(response.text)
    if address is None or ipaddress.ip_address(address).version != version:
        return None
    return address


def fetch_server_addresses(
    ipv4_url: str, ipv6_url: str, timeout: float = 5.0
) -> ServerAddresses:
    return ServerAddresses(
        ipv4=fetch_public_ip(ipv4_url, 4, timeout),
        ipv6=fetch_public_ip(ipv6_url, 6, timeout),
    )


def _normalized(addresses: Iterable[str]) -> List[str]:
    return [ip for ip in (normalize_ip(a) for a in addresses) if ip]


def match_records(records: DnsRecords, server: ServerAddresses) -> DnsMatch:
    """Compare resolved records with the host's public addresses.

    Either family matching is enough; a host reachable over IPv4 only or
    IPv6 only can still answer the HTTP challenge.
    """
    server_v4 = normalize_ip(server.ipv4) if server.ipv4 else None
    server_v6 = normalize_ip(server.ipv6) if server.ipv6 else None
    return DnsMatch(
        ipv4_match=server_v4 is not None and server_v4 in _normalized(records.ipv4),
        ipv6_match=server_v6 is not None and server_v6 in _normalized(records.ipv6),
    )


def check_dns(domain: str, records: DnsRecords, server: ServerAddresses) -> DnsMatch:
    """Verify that a domain resolves to this server.

    Raises:
        DnsMismatchError: If the domain has no records or none of them match
    """
    resolved = list(records.ipv4) + list(records.ipv6)
    if records.empty:
        raise DnsMismatchError(
            f"Domain {domain} does not resolve to any IP address",
            resolved=resolved,
            server_ipv4=server.ipv4,
            server_ipv6=server.ipv6,
        )

    match = match_records(records, server)
    if not match.ok:
        raise DnsMismatchError(
            f"Domain {domain} does not point to this server",
            resolved=resolved,
            server_ipv4=server.ipv4,
            server_ipv6=server.ipv6,
        )

    if match.ipv4_match:
        logger.info("dns_match", domain=domain, family="IPv4", address=server.ipv4)
    if match.ipv6_match:
        logger.info("dns_match", domain=domain, family="IPv6", address=server.ipv6)
    return match
