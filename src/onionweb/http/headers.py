"""
=============================================================================
HEADER VIEW
=============================================================================

A case-insensitive, multi-valued header collection shared by the wire layer
and both facades.

=============================================================================
WHY NOT A PLAIN DICT?
=============================================================================

HTTP header names are case-insensitive (RFC 7230), and a header may appear
more than once:

    Accept-Encoding: gzip
    Accept-Encoding: br
    Set-Cookie: a=1
    Set-Cookie: b=2

A dict keyed by lowercase name loses the original spelling and cannot hold
repeated fields. Headers keeps both:

    ┌─────────────────────────────────────────────────────────────────────┐
    │  key (lowercase)     display name        values                     │
    ├─────────────────────────────────────────────────────────────────────┤
    │  "accept-encoding"   "Accept-Encoding"   ["gzip", "br"]             │
    │  "set-cookie"        "Set-Cookie"        ["a=1", "b=2"]             │
    └─────────────────────────────────────────────────────────────────────┘

    headers.get("accept-encoding")      → "gzip, br"     (folded)
    headers.get_all("Set-Cookie")       → ["a=1", "b=2"] (raw)
    list(headers.items())               → one pair per value (wire order)

=============================================================================
"""

from datetime import datetime, timezone
from email.utils import format_datetime, parsedate_to_datetime
from typing import Dict, Iterable, Iterator, List, Optional, Tuple, Union


HeaderValue = Union[str, int, Iterable[str]]


def format_http_date(value: Optional[datetime] = None) -> str:
    """
    Format a datetime as an IMF-fixdate (RFC 7231), defaulting to now.

    Example: "Sun, 06 Nov 1994 08:49:37 GMT"
    """
    if value is None:
        value = datetime.now(timezone.utc)
    elif value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return format_datetime(value.astimezone(timezone.utc), usegmt=True)


def parse_http_date(value: Optional[str]) -> Optional[datetime]:
    """Parse an HTTP date header value; None when absent or malformed."""
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _to_values(value: HeaderValue) -> List[str]:
    if isinstance(value, (str, int)):
        return [str(value)]
    return [str(item) for item in value]


class Headers:
    """
    Case-insensitive, insertion-ordered multi-map of HTTP headers.

    Usage:
        headers = Headers([("Content-Type", "text/html")])
        headers.append("Vary", "Origin")
        headers.append("vary", "Accept-Encoding")
        headers.get("VARY")          # "Origin, Accept-Encoding"
        "content-type" in headers    # True
    """

    def __init__(self, fields: Iterable[Tuple[str, str]] = ()):
        # lowercase name → (display name, values)
        self._fields: Dict[str, Tuple[str, List[str]]] = {}
        for name, value in fields:
            self.append(name, value)

    # =========================================================================
    # READ ACCESS
    # =========================================================================

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """
        Get a header value, folding repeated fields with ", ".

        Args:
            name: Header name (any case)
            default: Returned when the header is absent

        Returns:
            The folded value or default
        """
        entry = self._fields.get(name.lower())
        if entry is None:
            return default
        return ", ".join(entry[1])

    def get_all(self, name: str) -> List[str]:
        """Get every raw value of a header (empty list if absent)."""
        entry = self._fields.get(name.lower())
        return list(entry[1]) if entry else []

    def __getitem__(self, name: str) -> str:
        value = self.get(name)
        if value is None:
            raise KeyError(name)
        return value

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._fields

    def __len__(self) -> int:
        return len(self._fields)

    def __iter__(self) -> Iterator[str]:
        """Iterate display names (one per distinct header)."""
        return iter([display for display, _ in self._fields.values()])

    def items(self) -> Iterator[Tuple[str, str]]:
        """Yield (name, value) pairs, one per value, in insertion order."""
        for display, values in list(self._fields.values()):
            for value in values:
                yield display, value

    def fields(self) -> List[Tuple[str, str]]:
        return list(self.items())

    # =========================================================================
    # WRITE ACCESS
    # =========================================================================

    def set(self, name: str, value: HeaderValue) -> None:
        """Replace every value of a header."""
        self._fields[name.lower()] = (name, _to_values(value))

    def append(self, name: str, value: HeaderValue) -> None:
        """Add value(s) to a header, keeping existing ones."""
        key = name.lower()
        entry = self._fields.get(key)
        if entry is None:
            self._fields[key] = (name, _to_values(value))
        else:
            entry[1].extend(_to_values(value))

    def remove(self, name: str) -> None:
        """Remove a header. Missing headers are ignored."""
        self._fields.pop(name.lower(), None)

    def clear(self) -> None:
        self._fields.clear()

    def __setitem__(self, name: str, value: HeaderValue) -> None:
        self.set(name, value)

    def __delitem__(self, name: str) -> None:
        if name not in self:
            raise KeyError(name)
        self.remove(name)

    def copy(self) -> "Headers":
        return Headers(self.items())

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Headers):
            return NotImplemented
        return {k: v for k, (_, v) in self._fields.items()} == {
            k: v for k, (_, v) in other._fields.items()
        }

    def __repr__(self) -> str:
        return f"Headers({self.fields()!r})"
