"""Per-client request limits for the escrow endpoints.

Clients are keyed by IP. A forwarded client address is believed only when
the connecting peer is one of TRUSTED_PROXY_CIDRS (the load balancer), so a
caller cannot pick its own limit bucket.
"""

import ipaddress
from functools import lru_cache

from slowapi import Limiter
from slowapi.util import get_remote_address

from .config import get_settings
from .logging_config import get_logger

logger = get_logger("agrotrust.rate_limit")


def parse_cidrs(raw: str) -> tuple:
    """Comma-separated CIDRs to networks; bad entries are logged and skipped."""
    networks = []
    for cidr in filter(None, (part.strip() for part in raw.split(","))):
        try:
            networks.append(ipaddress.ip_network(cidr, strict=False))
        except ValueError:
            logger.warning(f"Ignoring invalid trusted proxy CIDR: {cidr}")
    return tuple(networks)


@lru_cache
def trusted_proxies() -> tuple:
    return parse_cidrs(get_settings().trusted_proxy_cidrs)


def get_client_ip(request) -> str:
    """Limiter key: the forwarded client behind a trusted proxy, else the peer."""
    peer = get_remote_address(request)
    forwarded = request.headers.get("x-forwarded-for", "").split(",")[0].strip()
    if not forwarded:
        return peer
    try:
        peer_addr = ipaddress.ip_address(peer)
    except ValueError:
        return peer
    if any(peer_addr in network for network in trusted_proxies()):
        return forwarded
    return peer


limiter = Limiter(key_func=get_client_ip)
