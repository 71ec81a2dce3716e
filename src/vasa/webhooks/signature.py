"""HMAC-SHA256 signature generation and verification for webhooks.

Every delivery body is signed with the subscription secret. Receivers
recompute the HMAC over the raw body they received.

Signature Format:
    X-Signature: sha256=abc123def456...
    X-Signature-Algorithm: sha256

The signature is computed as:
    HMAC-SHA256(secret, raw_body)

Example:
    >>> from vasa.webhooks.signature import sign_payload, verify_signature
    >>>
    >>> secret = "0f3c9a..."
    >>> body = b'{"event":"order.created","data":{}}'
    >>>
    >>> signature = sign_payload(body, secret)
    >>> print(signature)
    'sha256=a1b2c3d4...'
    >>>
    >>> verify_signature(body, signature, [secret])
    True
"""

from __future__ import annotations

import hashlib
import hmac
import secrets as _secrets
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence

__all__ = [
    "SIGNATURE_ALGORITHM",
    "SIGNATURE_ALGORITHM_HEADER",
    "SIGNATURE_HEADER",
    "SignatureError",
    "compute_signature",
    "generate_secret",
    "parse_signature",
    "sign_payload",
    "verify_signature",
]

# Header names for webhook signatures
SIGNATURE_HEADER = "X-Signature"
SIGNATURE_ALGORITHM_HEADER = "X-Signature-Algorithm"

SIGNATURE_ALGORITHM = "sha256"


class SignatureError(Exception):
    """Error during signature verification."""

    pass


def generate_secret() -> str:
    """Generate a new signing secret (64 hex characters)."""
    return _secrets.token_hex(32)


def compute_signature(body: bytes, secret: str) -> str:
    """Compute the raw hex HMAC-SHA256 digest of ``body``."""
    return hmac.new(
        key=secret.encode("utf-8"),
        msg=body,
        digestmod=hashlib.sha256,
    ).hexdigest()


def sign_payload(body: bytes, secret: str) -> str:
    """Generate the signature header value for a delivery body.

    Args:
        body: Exact serialized JSON body that will be sent
        secret: Subscription secret

    Returns:
        Signature string in format: sha256={hex_signature}
    """
    return f"{SIGNATURE_ALGORITHM}={compute_signature(body, secret)}"


def parse_signature(signature: str) -> str:
    """Extract the hex digest from a signature header.

    Raises:
        SignatureError: If the header is not ``sha256=<hex>``
    """
    if "=" not in signature:
        raise SignatureError(f"Invalid signature: {signature}")

    algorithm, digest = signature.strip().split("=", 1)
    if algorithm != SIGNATURE_ALGORITHM:
        raise SignatureError(f"Unsupported signature algorithm: {algorithm}")
    if not digest:
        raise SignatureError("Missing signature digest")
    try:
        bytes.fromhex(digest)
    except ValueError as e:
        raise SignatureError("Signature digest is not hex") from e
    return digest


def verify_signature(
    body: bytes,
    signature: str,
    secrets: str | Sequence[str],
) -> bool:
    """Verify a delivery signature.

    Args:
        body: Raw request body bytes as received
        signature: Signature header value
        secrets: Secret or list of valid secrets (supports rotation)

    Returns:
        True if signature is valid, False otherwise

    Raises:
        SignatureError: If no secrets were given
    """
    if isinstance(secrets, str):
        secrets = [secrets]
    if not secrets:
        raise SignatureError("No secrets provided for verification")

    try:
        provided = parse_signature(signature)
    except SignatureError:
        return False

    for secret in secrets:
        # Timing-safe comparison
        if hmac.compare_digest(compute_signature(body, secret), provided):
            return True

    return False
