"""
Network-based access to PRIVATE (internal) content.

PRIVATE videos and posts are visible to any signed-in user, and to anonymous
clients whose address falls inside one of the CIDR ranges stored in the
``private_video_allowed_ips`` setting (a JSON array such as
["192.168.0.0/16", "10.0.0.0/8"]).
"""

import ipaddress
import logging
from typing import Iterable, Optional

from fastapi import Request

from api.auth import AuthUser
from api.common import get_real_ip
from api.settings_service import get_settings_service

logger = logging.getLogger(__name__)

ALLOWED_IPS_SETTING = "private_video_allowed_ips"


def normalize_ip(ip: str) -> str:
    """IPv6 loopback is checked as its IPv4 equivalent."""
    ip = (ip or "").strip()
    if ip == "::1":
        return "127.0.0.1"
    return ip


def is_ip_in_range(ip: str, cidr: str) -> bool:
    """True when ip is inside cidr. Malformed input never matches."""
    try:
        address = ipaddress.ip_address(normalize_ip(ip))
        network = ipaddress.ip_network(cidr.strip(), strict=False)
    except (ValueError, AttributeError):
        return False
    if address.version != network.version:
        return False
    return address in network


def is_ip_allowed(ip: str, allowed_ranges: Iterable[str]) -> bool:
    return any(is_ip_in_range(ip, cidr) for cidr in allowed_ranges)


async def get_allowed_ranges() -> list:
    ranges = await get_settings_service().get(ALLOWED_IPS_SETTING, [])
    if not isinstance(ranges, list):
        logger.warning(f"Setting {ALLOWED_IPS_SETTING} is not a list, ignoring it")
        return []
    return [str(r) for r in ranges if r]


async def check_private_access(request: Request) -> bool:
    """Whether the client address may see PRIVATE content without signing in."""
    client_ip = get_real_ip(request)
    ranges = await get_allowed_ranges()
    if not ranges:
        return False
    if is_ip_allowed(client_ip, ranges):
        return True
    logger.debug(f"Private content access denied for {client_ip}")
    return False


async def has_internal_access(request: Request, user: Optional[AuthUser]) -> bool:
    if user is not None:
        return True
    return await check_private_access(request)
