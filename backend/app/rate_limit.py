"""Rate limiting for the Checkpay backend.

Reads are limited per client IP. Routes that send ledger transactions are
limited per authenticated party, so one party cannot spread its writes over
several addresses and parties behind a shared NAT do not starve each other.
Forwarded headers are only honoured from trusted proxies.
"""

import ipaddress
from functools import lru_cache

from jose import JWTError, jwt
from slowapi import Limiter
from slowapi.util import get_remote_address

from checkpay.parties import normalize_party

from .config import get_settings
from .logging_config import get_logger

logger = get_logger("checkpay.api.rate_limit")

READ_LIMIT = "60/minute"
WRITE_LIMIT = "10/minute"


@lru_cache
def _trusted_networks(cidrs: tuple[str, ...]) -> list[ipaddress.IPv4Network | ipaddress.IPv6Network]:
    networks = []
    for cidr in cidrs:
        try:
            networks.append(ipaddress.ip_network(cidr, strict=False))
        except ValueError:
            logger.warning(f"Ignoring invalid trusted proxy CIDR: {cidr}")
    return networks


def _is_trusted_proxy(ip_str: str) -> bool:
    try:
        addr = ipaddress.ip_address(ip_str)
    except ValueError:
        return False
    networks = _trusted_networks(tuple(get_settings().trusted_proxy_cidrs))
    return any(addr in network for network in networks)


def get_client_ip(request) -> str:
    """Resolve client IP, only honoring X-Forwarded-For from trusted proxies."""
    direct_ip = get_remote_address(request)
    if _is_trusted_proxy(direct_ip):
        forwarded_for = request.headers.get("x-forwarded-for")
        if forwarded_for:
            client_ip = forwarded_for.split(",")[0].strip()
            if client_ip:
                return client_ip
    return direct_ip


def get_party_key(request) -> str:
    """Key writes on the bearer token's party, or the client IP without one.

    The token is only decoded here; routes still authenticate it. An invalid
    token falls back to the IP so it cannot be used to mint fresh buckets.
    """
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() == "bearer" and token:
        settings = get_settings()
        try:
            payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
        except JWTError:
            payload = {}
        party_id = payload.get("sub")
        if party_id and payload.get("type") == "access":
            return f"party:{normalize_party(party_id)}"
    return f"ip:{get_client_ip(request)}"


limiter = Limiter(key_func=get_client_ip)
