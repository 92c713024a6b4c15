"""
=============================================================================
CONTENT NEGOTIATION
=============================================================================

Parses Accept-style headers and picks the best of a set of candidates.

    Accept: text/html, application/json;q=0.9, */*;q=0.1

    accepts.types("json", "html")   → "html"        (q=1.0 beats q=0.9)
    accepts.types("png")            → "png"         (only */*, q=0.1)
    accepts.encodings("gzip")       → None          (no Accept-Encoding → identity only)

Quality values come from the most specific matching entry:

    exact "text/html"  >  "text/*"  >  "*/*"

A candidate whose quality is 0 is never selected. Ties go to the candidate
listed first by the caller.

=============================================================================
"""

from typing import List, Optional, Tuple

from .headers import Headers
from .mime_types import resolve_content_type


# (value, quality, position in header)
AcceptEntry = Tuple[str, float, int]


def parse_accept_header(value: Optional[str]) -> List[AcceptEntry]:
    """
    Parse an Accept-style header into (value, q, position) entries.

    Entries are returned ordered by quality (highest first), keeping header
    order for equal qualities. Malformed q values count as 0.
    """
    if not value:
        return []

    entries: List[AcceptEntry] = []
    for position, part in enumerate(value.split(",")):
        pieces = [piece.strip() for piece in part.split(";")]
        token = pieces[0].lower()
        if not token:
            continue

        quality = 1.0
        for param in pieces[1:]:
            name, _, param_value = param.partition("=")
            if name.strip().lower() == "q":
                try:
                    quality = float(param_value)
                except ValueError:
                    quality = 0.0
                quality = min(max(quality, 0.0), 1.0)

        entries.append((token, quality, position))

    return sorted(entries, key=lambda entry: (-entry[1], entry[2]))


def _media_type(value: str) -> str:
    resolved = resolve_content_type(value) if "/" not in value else value
    return (resolved or "").split(";")[0].strip().lower()


def _media_specificity(accepted: str, media_type: str) -> int:
    """-1 if accepted does not match media_type, else 0 (*/*), 1 (type/*), 2 (exact)."""
    if accepted == media_type:
        return 2
    if accepted in ("*/*", "*"):
        return 0
    main, _, sub = accepted.partition("/")
    if sub == "*" and media_type.split("/")[0] == main:
        return 1
    return -1


def _token_specificity(accepted: str, token: str) -> int:
    if accepted == token:
        return 1
    if accepted == "*":
        return 0
    return -1


class Accepts:
    """
    Negotiation helper over a request's headers.

    Every method returns the full preference list when called without
    candidates, or the best candidate (as the caller spelled it) or None.
    """

    def __init__(self, headers: Headers):
        self.headers = headers

    # =========================================================================
    # MEDIA TYPES
    # =========================================================================

    def types(self, *candidates: str):
        """
        Pick the best response type.

        Candidates may be short names ("json"), extensions (".png") or full
        types ("text/html"). A missing Accept header accepts everything.
        """
        entries = parse_accept_header(self.headers.get("Accept"))

        if not candidates:
            return [value for value, quality, _ in entries if quality > 0] or ["*/*"]

        if "Accept" not in self.headers:
            return candidates[0]

        return self._best(candidates, entries, _media_type, _media_specificity)

    # =========================================================================
    # TOKENS (encodings, charsets, languages)
    # =========================================================================

    def encodings(self, *candidates: str):
        """
        Pick the best content coding.

        "identity" is acceptable unless explicitly refused with q=0.
        """
        header = self.headers.get("Accept-Encoding")
        entries = parse_accept_header(header)

        refuses_identity = any(
            value in ("identity", "*") and quality == 0 for value, quality, _ in entries
        )
        if not any(value in ("identity", "*") for value, _, _ in entries):
            entries.append(("identity", 0.001, len(entries)))
        elif refuses_identity:
            entries = [e for e in entries if not (e[0] == "identity" and e[1] == 0)]
            if not any(value == "identity" for value, _, _ in entries):
                entries.append(("identity", 0.0, len(entries)))

        if not candidates:
            return [value for value, quality, _ in entries if quality > 0]

        return self._best(candidates, entries, str.lower, _token_specificity)

    def charsets(self, *candidates: str):
        entries = parse_accept_header(self.headers.get("Accept-Charset"))
        if not candidates:
            return [value for value, quality, _ in entries if quality > 0] or ["*"]
        if "Accept-Charset" not in self.headers:
            return candidates[0]
        return self._best(candidates, entries, str.lower, _token_specificity)

    def languages(self, *candidates: str):
        entries = parse_accept_header(self.headers.get("Accept-Language"))
        if not candidates:
            return [value for value, quality, _ in entries if quality > 0] or ["*"]
        if "Accept-Language" not in self.headers:
            return candidates[0]

        def language_specificity(accepted: str, language: str) -> int:
            if accepted == language:
                return 2
            if language.split("-")[0] == accepted:
                return 1
            return 0 if accepted == "*" else -1

        return self._best(candidates, entries, str.lower, language_specificity)

    @staticmethod
    def _best(candidates, entries, normalize, specificity) -> Optional[str]:
        best: Optional[str] = None
        best_quality = 0.0

        for candidate in candidates:
            normalized = normalize(candidate)
            match_quality = None
            match_rank = -1
            for value, quality, _ in entries:
                rank = specificity(value, normalized)
                if rank > match_rank:
                    match_rank = rank
                    match_quality = quality
            if match_quality is not None and match_quality > best_quality:
                best = candidate
                best_quality = match_quality

        return best
