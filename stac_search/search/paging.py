"""
Offset continuation tokens.

Tokens issued by the in-memory and parquet backends are URL-safe base64 of
a small JSON document naming the issuing backend and the offset of the next
page. Callers treat them as opaque strings.
"""

import base64
import binascii
import json
from typing import Optional

from stac_search.utils.errors import ErrorDetail, MalformedRequest


def encode_token(backend: str, offset: int) -> str:
    """Encode the offset of a page for one backend."""
    document = json.dumps({"b": backend, "o": offset}, separators=(",", ":"))
    return base64.urlsafe_b64encode(document.encode("utf-8")).decode("ascii").rstrip("=")


def decode_token(token: Optional[str], backend: str) -> int:
    """
    Decode a continuation token issued by ``backend``.

    Args:
        token: Token from a previous result, or None for the first page
        backend: Name of the backend answering the request

    Returns:
        The offset to resume from

    Raises:
        MalformedRequest: If the token is garbage or was issued by another
            backend
    """
    if not token:
        return 0
    try:
        padded = token + "=" * (-len(token) % 4)
        document = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
        issuer, offset = document["b"], document["o"]
    except (binascii.Error, UnicodeError, ValueError, KeyError, TypeError):
        raise _invalid(token, "token is not valid")
    if issuer != backend:
        raise _invalid(token, f"token was issued by the {issuer!r} backend")
    if not isinstance(offset, int) or isinstance(offset, bool) or offset < 0:
        raise _invalid(token, "token offset is not valid")
    return offset


def _invalid(token: str, message: str) -> MalformedRequest:
    return MalformedRequest(
        f"Invalid continuation token: {message}",
        details=[ErrorDetail(param="token", value=token, message=message)],
    )
