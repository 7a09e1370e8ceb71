"""
SSRF protection for author-registered webhook URLs.

Kept free of Flask so the webhook channel and the dispatcher can use it
outside a request.

SECURITY: Webhook registration is refused when the URL:
- Uses a scheme other than http or https
- Names localhost or a cloud metadata host
- Resolves to a private, loopback, link-local or reserved address
"""

import ipaddress
import os
import socket
from collections.abc import Callable
from urllib.parse import urlparse

# ============================================================
# Configuration
# ============================================================

BLOCKED_IP_RANGES = [
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("169.254.0.0/16"),    # Link-local (cloud metadata)
    ipaddress.ip_network("100.64.0.0/10"),     # Carrier-grade NAT
    ipaddress.ip_network("192.0.0.0/24"),
    ipaddress.ip_network("192.0.2.0/24"),
    ipaddress.ip_network("198.51.100.0/24"),
    ipaddress.ip_network("203.0.113.0/24"),
    ipaddress.ip_network("0.0.0.0/8"),
    ipaddress.ip_network("224.0.0.0/4"),
    ipaddress.ip_network("240.0.0.0/4"),
    ipaddress.ip_network("255.255.255.255/32"),
    ipaddress.ip_network("::1/128"),
    ipaddress.ip_network("fc00::/7"),
    ipaddress.ip_network("fe80::/10"),
    ipaddress.ip_network("ff00::/8"),
]

BLOCKED_HOSTS = {
    "localhost",
    "localhost.localdomain",
    "metadata.google.internal",
    "metadata.google.com",
    "instance-data.ec2.internal",
    "metadata.azure.com",
    "kubernetes.default",
    "kubernetes.default.svc",
    "kubernetes.default.svc.cluster.local",
}

# Local development only: permits webhooks on localhost
ALLOW_PRIVATE_WEBHOOKS = os.getenv("ROYALTY_ALLOW_PRIVATE_WEBHOOKS", "false").lower() == "true"

Resolver = Callable[..., list]


def is_private_ip(ip_str: str) -> bool:
    """True if the address falls in any blocked range; False for non-addresses."""
    try:
        ip = ipaddress.ip_address(ip_str.strip())
    except (ValueError, AttributeError):
        return False
    return any(ip in blocked for blocked in BLOCKED_IP_RANGES)


def validate_url_for_ssrf(
    url: str, resolver: Resolver = socket.getaddrinfo
) -> tuple[bool, str | None]:
    """
    Validate a URL before the engine is allowed to POST to it.

    Args:
        url: The URL to validate
        resolver: getaddrinfo-compatible resolver, injectable for tests

    Returns:
        (True, None) if the URL is safe, else (False, reason)
    """
    if not url or not isinstance(url, str):
        return False, "URL is required"

    try:
        parsed = urlparse(url)
    except ValueError as e:
        return False, f"Invalid URL format: {e}"

    if parsed.scheme not in ("http", "https"):
        return False, f"URL scheme must be http or https, got: {parsed.scheme}"

    hostname = parsed.hostname
    if not hostname:
        return False, "URL must contain a hostname"

    if ALLOW_PRIVATE_WEBHOOKS:
        return True, None

    hostname_lower = hostname.lower()
    if (
        hostname_lower in BLOCKED_HOSTS
        or "metadata" in hostname_lower
        or hostname_lower.endswith(".internal")
    ):
        return False, f"Access to host '{hostname}' is blocked for security reasons"

    if is_private_ip(hostname):
        return False, "Access to internal IP addresses is blocked for security reasons"

    try:
        port = parsed.port or (443 if parsed.scheme == "https" else 80)
        for _family, _, _, _, sockaddr in resolver(hostname, port):
            if is_private_ip(str(sockaddr[0])):
                return False, "Access to internal IP addresses is blocked for security reasons"
    except socket.gaierror as e:
        # Unresolvable hosts are refused
        return False, f"DNS resolution failed for host '{hostname}': {e}"
    except (OSError, ValueError) as e:
        return False, f"Failed to validate host '{hostname}': {e}"

    return True, None
