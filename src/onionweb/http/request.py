"""
=============================================================================
REQUEST FACADE
=============================================================================

Request wraps a WireRequest and answers the questions middleware actually
asks: who is the client, which host and scheme did they use, what path and
query, what kind of body.

=============================================================================
LAZY, CACHED DERIVATION
=============================================================================

Every derived value is held in a ComputedValue cell:

    ┌──────────────┐   first get()    ┌──────────────┐
    │  NOT COMPUTED │ ───────────────► │   COMPUTED   │ ◄── set(value)
    └──────────────┘                  └──────┬───────┘
           ▲                                 │
           └────────────── reset() ──────────┘

The value is computed at most once per request. Setters (request.host = ...)
overwrite the cell, which is how a middleware rewrites the perceived origin
after internal forwarding.

=============================================================================
PROXY TRUST
=============================================================================

    protocol                         host                      ip_chain
    ────────                         ────                      ────────
    1. TLS socket → "https"          trusted:                  trusted and header set:
    2. untrusted  → "http"             X-Forwarded-Host          split proxy IP header
    3. X-Forwarded-Proto,              → :authority              on ",", trim, drop empty
       first token, lower-cased        → Host                  otherwise:
       ("http"/"https", else "http")  untrusted:                 [socket peer address]
                                        :authority → Host
                                                               ip = ip_chain[0] or ""

=============================================================================
"""

import ipaddress
import re
from typing import TYPE_CHECKING, Any, Callable, Dict, Generic, List, Optional, Tuple, TypeVar
from urllib.parse import parse_qs, urlsplit

from ..config import ServerConfig
from .accepts import Accepts
from .headers import Headers, parse_http_date

if TYPE_CHECKING:
    from ..core.wire import WireRequest
    from .context import Context


T = TypeVar("T")

_UNSET: Any = object()

IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "PUT", "DELETE", "OPTIONS", "TRACE"})

_NO_CACHE_PATTERN = re.compile(r"(?:^|,)\s*?no-cache\s*?(?:,|$)", re.IGNORECASE)


class ComputedValue(Generic[T]):
    """
    Compute-once cell.

    Usage:
        host = ComputedValue(lambda: expensive_lookup())
        host.get()        # computes
        host.get()        # cached
        host.set("x")     # override
        host.reset()      # next get() recomputes
    """

    def __init__(self, compute: Callable[[], T]):
        self._compute = compute
        self._value: Any = _UNSET

    @property
    def is_computed(self) -> bool:
        return self._value is not _UNSET

    def get(self) -> T:
        if self._value is _UNSET:
            self._value = self._compute()
        return self._value

    def set(self, value: T) -> None:
        self._value = value

    def reset(self) -> None:
        self._value = _UNSET


def split_target(target: str) -> Tuple[str, str]:
    """
    Split a request-target into (path, query string), without decoding.

    Handles origin-form ("/a?b") and absolute-form ("http://h/a?b").
    """
    if target.startswith("/") or target == "*":
        path, _, query = target.partition("?")
        return path.partition("#")[0] or "/", query.partition("#")[0]
    parts = urlsplit(target)
    return parts.path or "/", parts.query


class Request:
    """
    Facade over an inbound WireRequest.

    Attributes:
        wire: The underlying WireRequest
        context: The owning Context (for freshness checks against the response)
        trust_proxy_headers: Honor X-Forwarded-* headers
        proxy_ip_header_name: Header carrying the client IP chain
        subdomain_offset: Trailing host labels that are not subdomains
    """

    def __init__(
        self,
        wire: "WireRequest",
        context: Optional["Context"] = None,
        config: Optional[ServerConfig] = None,
    ):
        config = config or ServerConfig()
        self.wire = wire
        self.context = context
        self.trust_proxy_headers = config.trust_proxy_headers
        self.proxy_ip_header_name = config.proxy_ip_header_name
        self.subdomain_offset = config.subdomain_offset

        self._protocol = ComputedValue(self._resolve_protocol)
        self._host = ComputedValue(self._resolve_host)
        self._ip_chain = ComputedValue(self._resolve_ip_chain)
        self._ip = ComputedValue(self._resolve_ip)
        self._path = ComputedValue(lambda: split_target(self.wire.target)[0])
        self._query_string = ComputedValue(lambda: split_target(self.wire.target)[1])
        self._search_params = ComputedValue(
            lambda: parse_qs(self.query_string, keep_blank_values=True)
        )
        self._url = ComputedValue(self._resolve_url)
        self._accepts = ComputedValue(lambda: Accepts(self.headers))
        self._body_bytes: Optional[bytes] = None

    # =========================================================================
    # HEADERS
    # =========================================================================

    @property
    def headers(self) -> Headers:
        return self.wire.headers

    def get_header_value(self, name: str) -> Optional[str]:
        """
        Get a request header (case-insensitive).

        "Referer" and "Referrer" are interchangeable; a Referrer header wins
        when both are present.
        """
        if name.lower() in ("referer", "referrer"):
            return self.headers.get("Referrer") or self.headers.get("Referer")
        return self.headers.get(name)

    def get_header_values(self, name: str) -> List[str]:
        if name.lower() in ("referer", "referrer"):
            return self.headers.get_all("Referrer") or self.headers.get_all("Referer")
        return self.headers.get_all(name)

    # =========================================================================
    # REQUEST LINE
    # =========================================================================

    @property
    def http_method(self) -> str:
        return self.wire.method

    @property
    def http_version(self) -> str:
        return self.wire.version

    @property
    def is_idempotent(self) -> bool:
        return self.http_method in IDEMPOTENT_METHODS

    # =========================================================================
    # CONTENT METADATA
    # =========================================================================

    @property
    def content_length(self) -> Optional[int]:
        value = self.headers.get("Content-Length")
        if value is None or not value.strip().isdigit():
            return None
        return int(value.strip())

    @property
    def content_type(self) -> Optional[str]:
        """Media type without parameters, lower-cased ("application/json")."""
        value = self.headers.get("Content-Type")
        if not value:
            return None
        return value.split(";")[0].strip().lower() or None

    @property
    def charset(self) -> Optional[str]:
        value = self.headers.get("Content-Type")
        if not value:
            return None
        for param in value.split(";")[1:]:
            name, _, param_value = param.partition("=")
            if name.strip().lower() == "charset":
                return param_value.strip().strip('"').lower() or None
        return None

    @property
    def has_body(self) -> bool:
        return "Transfer-Encoding" in self.headers or self.content_length is not None

    @property
    def body(self):
        """The raw request body stream."""
        return self.wire.body

    def read_body(self) -> bytes:
        """Read the whole body once; later calls return the same bytes."""
        if self._body_bytes is None:
            self._body_bytes = self.wire.body.read()
        return self._body_bytes

    # =========================================================================
    # PROTOCOL / HOST
    # =========================================================================

    def _resolve_protocol(self) -> str:
        if self.wire.is_tls:
            return "https"
        if not self.trust_proxy_headers:
            return "http"
        forwarded = self.headers.get("X-Forwarded-Proto")
        if not forwarded:
            return "http"
        token = forwarded.split(",")[0].strip().lower()
        return token if token in ("http", "https") else "http"

    @property
    def protocol(self) -> str:
        return self._protocol.get()

    @protocol.setter
    def protocol(self, value: str) -> None:
        self._protocol.set(value)
        self._url.reset()

    @property
    def is_secure(self) -> bool:
        return self.protocol == "https"

    def _resolve_host(self) -> str:
        if self.trust_proxy_headers:
            forwarded = self.headers.get("X-Forwarded-Host")
            if forwarded:
                return forwarded.split(",")[0].strip()
        if self.wire.authority:
            return self.wire.authority
        return self.headers.get("Host") or ""

    @property
    def host(self) -> str:
        """Host with port ("example.com:8080"), or "" when unknown."""
        return self._host.get()

    @host.setter
    def host(self, value: str) -> None:
        self._host.set(value)
        self._url.reset()

    @property
    def hostname(self) -> str:
        """Host without port. IPv6 literals keep their brackets ("[::1]")."""
        host = self.host
        if not host:
            return ""
        if host.startswith("["):
            end = host.find("]")
            return host[: end + 1] if end != -1 else host
        return host.split(":")[0]

    @property
    def subdomains(self) -> List[str]:
        """
        Subdomains, most significant first.

        With subdomain_offset=2, "tobi.ferrets.example.com" gives
        ["ferrets", "tobi"]. IP literals have no subdomains.
        """
        hostname = self.hostname
        if not hostname:
            return []
        try:
            ipaddress.ip_address(hostname.strip("[]"))
            return []
        except ValueError:
            labels = hostname.split(".")
        return list(reversed(labels))[self.subdomain_offset:]

    # =========================================================================
    # URL
    # =========================================================================

    @property
    def origin(self) -> str:
        return f"{self.protocol}://{self.host}"

    def _resolve_url(self) -> str:
        query = self.query_string
        return f"{self.origin}{self.path}{'?' + query if query else ''}"

    @property
    def url(self) -> str:
        """Full URL: origin + path + query string."""
        return self._url.get()

    @url.setter
    def url(self, value: str) -> None:
        path, query = split_target(value)
        self._path.set(path)
        self._query_string.set(query)
        self._search_params.reset()
        self._url.set(value if "://" in value else f"{self.origin}{value}")

    @property
    def original_url(self) -> str:
        """Origin + the request-target exactly as received."""
        return f"{self.origin}{self.wire.target}"

    @property
    def path(self) -> str:
        """Path component, not percent-decoded."""
        return self._path.get()

    @path.setter
    def path(self, value: str) -> None:
        self._path.set(value)
        self._url.reset()

    @property
    def query_string(self) -> str:
        return self._query_string.get()

    @query_string.setter
    def query_string(self, value: str) -> None:
        self._query_string.set(value.lstrip("?"))
        self._search_params.reset()
        self._url.reset()

    @property
    def search_params(self) -> Dict[str, List[str]]:
        return self._search_params.get()

    def get_search_param(self, name: str, default: Optional[str] = None) -> Optional[str]:
        values = self.search_params.get(name)
        return values[0] if values else default

    # =========================================================================
    # CLIENT ADDRESS
    # =========================================================================

    def _resolve_ip_chain(self) -> List[str]:
        if self.trust_proxy_headers:
            value = self.headers.get(self.proxy_ip_header_name)
            if value:
                chain = [part.strip() for part in value.split(",") if part.strip()]
                if chain:
                    return chain
        peer_ip = self.wire.peer_address[0] if self.wire.peer_address else ""
        return [peer_ip]

    def _resolve_ip(self) -> str:
        chain = self.ip_chain
        return chain[0] if chain else ""

    @property
    def ip_chain(self) -> List[str]:
        """Client address chain, client first, proxies after."""
        return self._ip_chain.get()

    @ip_chain.setter
    def ip_chain(self, value: List[str]) -> None:
        self._ip_chain.set(list(value))
        self._ip.reset()

    @property
    def ip(self) -> str:
        return self._ip.get()

    @ip.setter
    def ip(self, value: str) -> None:
        self._ip.set(value)

    # =========================================================================
    # NEGOTIATION / CACHING
    # =========================================================================

    @property
    def accepts(self) -> Accepts:
        return self._accepts.get()

    @property
    def is_fresh(self) -> bool:
        """
        Conditional GET check against the current response validators.

        Only GET/HEAD requests answered with 2xx or 304 can be fresh.
        """
        if self.http_method not in ("GET", "HEAD") or self.context is None:
            return False

        response = self.context.response
        status = response.status_code
        if not (200 <= status < 300 or status == 304):
            return False

        if_modified_since = self.headers.get("If-Modified-Since")
        if_none_match = self.headers.get("If-None-Match")
        if not if_modified_since and not if_none_match:
            return False

        cache_control = self.headers.get("Cache-Control")
        if cache_control and _NO_CACHE_PATTERN.search(cache_control):
            return False

        if if_none_match and if_none_match.strip() != "*":
            etag = response.get_header_value("ETag")
            if not etag:
                return False
            candidates = [tag.strip() for tag in if_none_match.split(",")]
            if not any(
                tag == etag or tag == f"W/{etag}" or f"W/{tag}" == etag for tag in candidates
            ):
                return False

        if if_modified_since:
            last_modified = parse_http_date(response.get_header_value("Last-Modified"))
            modified_since = parse_http_date(if_modified_since)
            if last_modified is None or modified_since is None:
                return False
            if last_modified > modified_since:
                return False

        return True

    @property
    def is_stale(self) -> bool:
        return not self.is_fresh

    def __repr__(self) -> str:
        return f"Request({self.http_method} {self.wire.target})"
