"""
Signing helpers.

- HMAC-SHA256 signatures for inbound payment-provider events and outbound
  webhook deliveries (same "timestamp.body" scheme in both directions)
- JWTs for operator bearer tokens and offline license grants
"""
from __future__ import annotations

import hashlib
import hmac
from datetime import datetime, timedelta, timezone
from typing import Any

import jwt

from storefront.core.config import settings

ALGORITHM = "HS256"

# Audience claims keep operator tokens and license grants from being swapped.
OPERATOR_AUDIENCE = "storefront:operator"
LICENSE_GRANT_AUDIENCE = "storefront:license"


def compute_signature(secret: str, timestamp: int, body: bytes) -> str:
    """Hex HMAC-SHA256 of "<timestamp>.<body>"."""
    signed = f"{timestamp}.".encode() + body
    return hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()


def build_signature_header(secret: str, timestamp: int, body: bytes) -> str:
    return f"t={timestamp},v1={compute_signature(secret, timestamp, body)}"


def parse_signature_header(header: str) -> tuple[int | None, list[str]]:
    """
    Split a "t=...,v1=...,v1=..." header.

    Several v1 entries are allowed so the provider can roll secrets.

    Returns:
        (timestamp or None, list of candidate signatures)
    """
    timestamp: int | None = None
    signatures: list[str] = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                timestamp = None
        elif key == "v1" and value:
            signatures.append(value)
    return timestamp, signatures


def verify_signature_header(
    *,
    secret: str,
    header: str | None,
    body: bytes,
    now: datetime,
    tolerance_seconds: int,
) -> bool:
    """
    Check a provider signature header against the raw request body.

    Returns:
        True when a v1 signature matches and the timestamp is inside the
        tolerance window
    """
    if not header:
        return False
    timestamp, signatures = parse_signature_header(header)
    if timestamp is None or not signatures:
        return False
    if abs(now.timestamp() - timestamp) > tolerance_seconds:
        return False
    expected = compute_signature(secret, timestamp, body)
    return any(hmac.compare_digest(expected, candidate) for candidate in signatures)


def create_access_token(subject: str | Any, expires_delta: timedelta) -> str:
    """Operator bearer token, consumed by api.deps.get_current_operator."""
    expire = datetime.now(timezone.utc) + expires_delta
    to_encode = {"exp": expire, "sub": str(subject), "aud": OPERATOR_AUDIENCE}
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=ALGORITHM)


def create_license_grant(
    *,
    license_key: str,
    device_id_hash: str,
    version_id: int,
    issued_at: datetime,
    expires_at: datetime,
) -> str:
    """
    Signed offline grant handed to the licensed client.

    The client keeps working without contacting the server until ``exp``;
    after that it must validate again.
    """
    claims = {
        "sub": license_key,
        "dev": device_id_hash,
        "ver": str(version_id),
        "iat": int(issued_at.timestamp()),
        "exp": int(expires_at.timestamp()),
        "aud": LICENSE_GRANT_AUDIENCE,
    }
    return jwt.encode(claims, settings.SECRET_KEY, algorithm=ALGORITHM)


def decode_license_grant(token: str) -> dict[str, Any]:
    return jwt.decode(
        token,
        settings.SECRET_KEY,
        algorithms=[ALGORITHM],
        audience=LICENSE_GRANT_AUDIENCE,
    )
