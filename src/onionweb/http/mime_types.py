"""
=============================================================================
MIME TYPE LOOKUP
=============================================================================

Two ways of naming a content type show up in the framework:

1. FILE NAMES / EXTENSIONS (static files, Content-Disposition):

       "report.pdf"   → application/pdf
       ".css"         → text/css

2. SHORT NAMES (response.content_type = "json"):

       "html" → text/html; charset=utf-8
       "text" → text/plain; charset=utf-8
       "json" → application/json; charset=utf-8
       "bin"  → application/octet-stream

resolve_content_type() accepts either, plus a full "type/subtype" string
which is passed through (a charset is added to textual types that lack one).

=============================================================================
"""

from pathlib import Path
from typing import Optional, Union


# Extensions (lowercase, with dot) → MIME type
MIME_TYPES = {
    # Text
    ".html": "text/html",
    ".htm": "text/html",
    ".css": "text/css",
    ".js": "text/javascript",
    ".mjs": "text/javascript",
    ".json": "application/json",
    ".map": "application/json",
    ".xml": "application/xml",
    ".txt": "text/plain",
    ".md": "text/markdown",
    ".csv": "text/csv",
    # Images
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".svg": "image/svg+xml",
    ".ico": "image/x-icon",
    ".webp": "image/webp",
    ".avif": "image/avif",
    # Fonts
    ".woff": "font/woff",
    ".woff2": "font/woff2",
    ".ttf": "font/ttf",
    ".otf": "font/otf",
    # Media
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".ogg": "audio/ogg",
    ".mp4": "video/mp4",
    ".webm": "video/webm",
    # Documents and archives
    ".pdf": "application/pdf",
    ".zip": "application/zip",
    ".gz": "application/gzip",
    ".tar": "application/x-tar",
    ".wasm": "application/wasm",
}

SHORT_NAMES = {
    "html": "text/html",
    "text": "text/plain",
    "txt": "text/plain",
    "json": "application/json",
    "bin": "application/octet-stream",
    "xml": "application/xml",
    "css": "text/css",
    "js": "text/javascript",
    "form": "application/x-www-form-urlencoded",
}

DEFAULT_MIME_TYPE = "application/octet-stream"

_TEXTUAL_APPLICATION_TYPES = {
    "application/json",
    "application/xml",
    "application/javascript",
    "application/x-javascript",
    "image/svg+xml",
}


def get_mime_type(path: Union[str, Path], default: Optional[str] = None) -> Optional[str]:
    """
    Look up a MIME type from a file name.

    Returns default (None unless given) for unknown extensions.
    """
    extension = Path(path).suffix.lower()
    return MIME_TYPES.get(extension, default)


def is_text_type(mime_type: str) -> bool:
    """True for content that should carry a charset parameter."""
    mime_type = mime_type.split(";")[0].strip().lower()
    return mime_type.startswith("text/") or mime_type in _TEXTUAL_APPLICATION_TYPES


def is_compressible(mime_type: str) -> bool:
    """
    Decide whether gzip is worth applying.

    Text formats compress well; images, fonts, media and archives are
    already compressed.
    """
    mime_type = mime_type.split(";")[0].strip().lower()
    if is_text_type(mime_type):
        return True
    return mime_type.endswith("+json") or mime_type.endswith("+xml")


def resolve_content_type(value: str, charset: str = "utf-8") -> Optional[str]:
    """
    Turn a short name, extension or full type into a Content-Type value.

    Examples:
        >>> resolve_content_type("json")
        'application/json; charset=utf-8'
        >>> resolve_content_type(".png")
        'image/png'
        >>> resolve_content_type("text/csv; charset=latin-1")
        'text/csv; charset=latin-1'

    Returns:
        The header value, or None if an extension is unknown.
    """
    if "/" in value:
        mime_type = value
    elif value.lower() in SHORT_NAMES:
        mime_type = SHORT_NAMES[value.lower()]
    else:
        extension = value if value.startswith(".") else "." + value
        mime_type = MIME_TYPES.get(extension.lower())
        if mime_type is None:
            return None

    if "charset" not in mime_type.lower() and is_text_type(mime_type):
        return f"{mime_type}; charset={charset}"
    return mime_type
