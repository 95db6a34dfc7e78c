"""Signed session-id cookies.

Values use the ``cookie-signature`` layout: ``<value>.<signature>`` where the
signature is the unpadded base64 HMAC-SHA256 of the value under the secret.
"""

from __future__ import annotations

import base64
import hashlib
import hmac


def _signature(value: str, secret: str) -> str:
    digest = hmac.new(secret.encode(), value.encode(), hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii").rstrip("=")


def sign(value: str, secret: str) -> str:
    """Return *value* with its signature appended."""
    if not secret:
        raise ValueError("Secret key required to sign a cookie")
    return f"{value}.{_signature(value, secret)}"


def unsign(signed: str, secret: str) -> str | None:
    """Return the original value, or None if the signature does not verify."""
    if not secret:
        raise ValueError("Secret key required to unsign a cookie")
    if not signed or "." not in signed:
        return None
    value = signed[: signed.rindex(".")]
    expected = sign(value, secret)
    if hmac.compare_digest(expected.encode(), signed.encode()):
        return value
    return None
