"""
=============================================================================
STATUS CODE CLASSIFICATION
=============================================================================

The response state machine only cares about a few families of status codes:

    ┌────────────────────────────────────────────────────────────────────┐
    │  EMPTY BODY    204, 205, 304                                       │
    │                A body MUST NOT be sent. Assigning one of these     │
    │                codes throws away whatever body was set.            │
    ├────────────────────────────────────────────────────────────────────┤
    │  REDIRECT      300, 301, 302, 303, 305, 307, 308                    │
    │                Used by redirect() to decide whether to keep the     │
    │                current status or fall back to 302 Found.           │
    ├────────────────────────────────────────────────────────────────────┤
    │  2xx / 3xx     A missing body is fine: nothing is written.         │
    │  others        A missing body becomes the status code as text.     │
    └────────────────────────────────────────────────────────────────────┘

Reason phrases come from the standard library's http.HTTPStatus table.

=============================================================================
"""

from http import HTTPStatus


EMPTY_BODY_STATUS_CODES = frozenset({204, 205, 304})

REDIRECT_STATUS_CODES = frozenset({300, 301, 302, 303, 305, 307, 308})

MIN_STATUS_CODE = 100
MAX_STATUS_CODE = 999


def is_empty_body_status_code(status_code: int) -> bool:
    """True for statuses that must never carry a body (204, 205, 304)."""
    return status_code in EMPTY_BODY_STATUS_CODES


def is_redirect_status_code(status_code: int) -> bool:
    """True for statuses redirect() keeps instead of forcing 302."""
    return status_code in REDIRECT_STATUS_CODES


def is_success_or_redirect(status_code: int) -> bool:
    return 200 <= status_code < 400


def is_valid_status_code(status_code: object) -> bool:
    return (
        isinstance(status_code, int)
        and not isinstance(status_code, bool)
        and MIN_STATUS_CODE <= status_code <= MAX_STATUS_CODE
    )


def reason_phrase(status_code: int) -> str:
    """
    Get the reason phrase for a status code.

    Examples:
        >>> reason_phrase(404)
        'Not Found'
        >>> reason_phrase(799)
        'Unknown'
    """
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return "Unknown"
