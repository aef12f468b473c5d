"""
Shared aiohttp plumbing for venue gateways and the notifier.
"""
import aiohttp
import socket
import logging

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 10.0


def get_dns_resolver() -> aiohttp.ThreadedResolver:
    """
    Returns a ThreadedResolver. This avoids the need for aiodns.
    """
    return aiohttp.ThreadedResolver()


def get_connector(limit: int = 100, limit_per_host: int = 20, force_ipv4: bool = True) -> aiohttp.TCPConnector:
    """
    Returns a TCPConnector with the threaded resolver and pooled connections.

    Args:
        limit: Total connection pool size
        limit_per_host: Max connections per host
        force_ipv4: If True, forces IPv4 (AF_INET) to avoid IPv6 timeouts
    """
    family = socket.AF_INET if force_ipv4 else 0
    log.debug(f"Creating TCPConnector (IPv4={force_ipv4}, limit={limit}/{limit_per_host})")
    return aiohttp.TCPConnector(
        limit=limit,
        limit_per_host=limit_per_host,
        resolver=get_dns_resolver(),
        family=family,
        ttl_dns_cache=300,  # 5 minutes
    )


def new_session(timeout_s: float = DEFAULT_TIMEOUT_S, **kwargs) -> aiohttp.ClientSession:
    """ClientSession bound to a fresh pooled connector with a total request timeout."""
    return aiohttp.ClientSession(
        connector=get_connector(),
        timeout=aiohttp.ClientTimeout(total=timeout_s),
        **kwargs,
    )
