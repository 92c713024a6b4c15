"""
=============================================================================
SERVER CONFIGURATION
=============================================================================

All tunables of the server and the request facade live in one dataclass.

    Priority (highest to lowest):

    1. Command-line flags       python -m onionweb --port 3000
    2. Environment variables    HTTP_PORT=3000 python -m onionweb
    3. Defaults below

=============================================================================
PROXY TRUST
=============================================================================

Behind a reverse proxy, the socket peer is the proxy and the client's real
address, scheme and host arrive in headers:

    X-Forwarded-For:   203.0.113.5, 70.41.3.18
    X-Forwarded-Proto: https
    X-Forwarded-Host:  shop.example.com

Anyone can send these headers. They are honored only when
trust_proxy_headers is on, which should only be the case when every request
really passes through a proxy that overwrites them.

=============================================================================
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional


@dataclass
class ServerConfig:
    """
    Configuration for the HTTP server.

    NETWORK     host, port, backlog, buffer_size, timeout
    HTTP        keep_alive, keep_alive_timeout, max_request_size
    THREADING   min_workers, max_workers, queue_size
    PROXY       trust_proxy_headers, proxy_ip_header_name, subdomain_offset
    TLS         ssl_certfile, ssl_keyfile
    LOGGING     log_level
    """

    # NETWORK
    host: str = "127.0.0.1"
    port: int = 8080
    backlog: int = 128
    buffer_size: int = 8192
    timeout: Optional[float] = 30.0

    # HTTP
    keep_alive: bool = True
    keep_alive_timeout: float = 5.0
    max_request_size: int = 10 * 1024 * 1024

    # THREADING
    min_workers: int = 4
    max_workers: int = 16
    queue_size: int = 100

    # PROXY TRUST
    trust_proxy_headers: bool = False
    proxy_ip_header_name: str = "X-Forwarded-For"
    subdomain_offset: int = 2
    """Number of trailing host labels that are not subdomains ("example.com")."""

    # TLS
    ssl_certfile: Optional[str] = None
    ssl_keyfile: Optional[str] = None

    # LOGGING
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "ServerConfig":
        """
        Create configuration from environment variables.

        HTTP_HOST               Server host (default: 127.0.0.1)
        HTTP_PORT               Server port (default: 8080)
        HTTP_WORKERS            Max worker threads (default: 16)
        HTTP_TIMEOUT            Request timeout in seconds (default: 30)
        HTTP_LOG_LEVEL          Logging level (default: INFO)
        HTTP_TRUST_PROXY        "1"/"true"/"yes" to trust X-Forwarded-* headers
        HTTP_PROXY_IP_HEADER    Header carrying the client IP chain
        HTTP_SUBDOMAIN_OFFSET   Host labels to drop for subdomains (default: 2)
        HTTP_SSL_CERTFILE       PEM certificate chain, enables TLS
        HTTP_SSL_KEYFILE        PEM private key
        """
        workers = int(os.getenv("HTTP_WORKERS", "16"))
        return cls(
            host=os.getenv("HTTP_HOST", "127.0.0.1"),
            port=int(os.getenv("HTTP_PORT", "8080")),
            min_workers=min(4, workers),
            max_workers=workers,
            timeout=float(os.getenv("HTTP_TIMEOUT", "30")),
            log_level=os.getenv("HTTP_LOG_LEVEL", "INFO"),
            trust_proxy_headers=os.getenv("HTTP_TRUST_PROXY", "").lower() in ("1", "true", "yes"),
            proxy_ip_header_name=os.getenv("HTTP_PROXY_IP_HEADER", "X-Forwarded-For"),
            subdomain_offset=int(os.getenv("HTTP_SUBDOMAIN_OFFSET", "2")),
            ssl_certfile=os.getenv("HTTP_SSL_CERTFILE"),
            ssl_keyfile=os.getenv("HTTP_SSL_KEYFILE"),
        )

    def validate(self) -> None:
        """
        Validate configuration values at startup.

        Raises:
            ValueError: On the first invalid value.
        """
        if not 0 <= self.port < 65536:
            raise ValueError(f"Invalid port: {self.port}. Must be 0-65535.")
        if self.min_workers < 1:
            raise ValueError("min_workers must be >= 1")
        if self.max_workers < self.min_workers:
            raise ValueError("max_workers must be >= min_workers")
        if self.queue_size < 1:
            raise ValueError("queue_size must be >= 1")
        if self.buffer_size < 1024:
            raise ValueError("buffer_size must be >= 1024")
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError("timeout must be > 0")
        if self.subdomain_offset < 0:
            raise ValueError("subdomain_offset must be >= 0")
        if not self.proxy_ip_header_name.strip():
            raise ValueError("proxy_ip_header_name must not be empty")
        if bool(self.ssl_certfile) != bool(self.ssl_keyfile):
            raise ValueError("ssl_certfile and ssl_keyfile must be set together")
        if not isinstance(logging.getLevelName(self.log_level.upper()), int):
            raise ValueError(f"Invalid log level: {self.log_level}")


# =============================================================================
# MODULE SUMMARY
# =============================================================================
#
# 1. One dataclass with defaults for development
# 2. from_env() for container deployments
# 3. validate() fails fast at startup with a ValueError
#
# The proxy trust fields are read by the request facade on every request;
# they are plain values and never mutated after startup.
# =============================================================================
