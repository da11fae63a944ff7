"""Request utility functions for handling common request operations."""

import ipaddress

from fastapi import Request

from sessionguard.core.logging import get_logger

logger = get_logger("request_utils")

# Peers allowed to set X-Real-IP (a reverse proxy on the same host)
TRUSTED_PROXY_HOSTS = frozenset({"127.0.0.1", "::1", "localhost"})


def _is_valid_ip(ip_str: str) -> bool:
    """Check if a string is a valid IP address."""
    try:
        ipaddress.ip_address(ip_str)
        return True
    except ValueError:
        return False


def get_client_ip(request: Request) -> str | None:
    """Get the client IP address from a request.

    X-Real-IP is honored only when the direct peer is a trusted local
    proxy. X-Forwarded-For is never trusted since clients can set it.

    Returns:
        Client IP address or None if not available
    """
    if request.client and request.client.host in TRUSTED_PROXY_HOSTS:
        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            ip = real_ip.strip()
            if _is_valid_ip(ip):
                return ip
            logger.warning(f"Invalid X-Real-IP: {real_ip}")

    if request.client:
        return request.client.host

    return None


def get_bearer_token(request: Request) -> str | None:
    """Token from an ``Authorization: Bearer <token>`` header."""
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:].strip()
        return token or None
    return None
