"""
Redirect plain-HTTP requests to HTTPS.

    GET http://example.com/login?next=/a   →   302 Location: https://example.com/login?next=/a

Whether a request is secure comes from Request.is_secure, which honors
X-Forwarded-Proto only when trust_proxy_headers is enabled. Behind a TLS
terminating proxy, enable it or every request will loop through this
redirect.
"""

import ipaddress
import logging
from typing import TYPE_CHECKING
from urllib.parse import urlsplit, urlunsplit

from .base import Middleware, Next

if TYPE_CHECKING:
    from ..http.context import Context

logger = logging.getLogger(__name__)


def is_local_ip(address: str) -> bool:
    """True for loopback, private and link-local addresses."""
    try:
        ip = ipaddress.ip_address(address.strip("[]"))
    except ValueError:
        return False
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return ip.is_loopback or ip.is_private or ip.is_link_local


class ForceSSLMiddleware(Middleware):
    """
    Usage:
        server.use(ForceSSLMiddleware())

        # let developers hit the server over http://localhost
        server.use(ForceSSLMiddleware(allow_insecure_local_ip_addresses=True))
    """

    def __init__(self, allow_insecure_local_ip_addresses: bool = False):
        self.allow_insecure_local_ip_addresses = allow_insecure_local_ip_addresses

    def __call__(self, context: "Context", next: Next) -> None:
        request = context.request

        if request.is_secure:
            next()
            return

        if self.allow_insecure_local_ip_addresses and is_local_ip(request.ip):
            next()
            return

        parts = urlsplit(request.url)
        secure_url = urlunsplit(("https", parts.netloc, parts.path, parts.query, parts.fragment))
        logger.debug(f"Redirecting insecure request to {secure_url}")
        context.response.redirect(secure_url)
