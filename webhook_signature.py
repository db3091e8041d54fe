"""
Webhook signature verification for Replicate callbacks.

Replicate signs each webhook with HMAC-SHA256 over "{id}.{timestamp}.{body}"
using the base64 key that follows the "whsec_" prefix of the signing secret.
The signature header carries one or more space-separated "v1,<base64>" tokens
so that secrets can be rotated without dropping deliveries.
"""

import base64
import binascii
import hashlib
import hmac
import time
from typing import List, Optional, Union

# Maximum clock skew accepted between the provider and us, in seconds
REPLAY_TOLERANCE_SECONDS = 300

SECRET_PREFIX = 'whsec_'
SIGNATURE_VERSION = 'v1'


def _secret_key(secret: str) -> bytes:
    """Decode the HMAC key from a (possibly prefixed) signing secret."""
    if secret.startswith(SECRET_PREFIX):
        secret = secret[len(SECRET_PREFIX):]
    return base64.b64decode(secret)


def _to_text(payload: Union[str, bytes]) -> str:
    if isinstance(payload, bytes):
        return payload.decode('utf-8')
    return payload


def compute_signature(raw_payload: Union[str, bytes], webhook_id: str,
                      webhook_timestamp: str, secret: str) -> str:
    """Return the base64 HMAC-SHA256 signature for a webhook delivery."""
    signed_content = f"{webhook_id}.{webhook_timestamp}.{_to_text(raw_payload)}"
    digest = hmac.new(
        _secret_key(secret),
        signed_content.encode('utf-8'),
        hashlib.sha256
    ).digest()
    return base64.b64encode(digest).decode('ascii')


def sign(raw_payload: Union[str, bytes], webhook_id: str,
         webhook_timestamp: str, secret: str) -> str:
    """Build a signature header token ("v1,<sig>") for a payload."""
    signature = compute_signature(raw_payload, webhook_id, webhook_timestamp, secret)
    return f"{SIGNATURE_VERSION},{signature}"


def parse_signature_header(signature_header: str) -> List[str]:
    """
    Extract the signatures from a webhook-signature header.

    Tokens are "version,signature"; a token without a comma is taken as a
    bare signature.
    """
    signatures = []
    for token in (signature_header or '').split(' '):
        if not token:
            continue
        parts = token.split(',')
        signatures.append(parts[1] if len(parts) == 2 else token)
    return signatures


def verify(raw_payload: Union[str, bytes], webhook_id: str, webhook_timestamp: str,
           signature_header: str, secret: str, now: Optional[float] = None) -> bool:
    """
    Verify a webhook delivery.

    Returns False (never raises) when the secret is missing, the timestamp is
    malformed or outside the replay window, or no signature in the header
    matches. Comparison is constant time.

    Args:
        raw_payload: Request body exactly as received
        webhook_id: Value of the webhook-id header
        webhook_timestamp: Value of the webhook-timestamp header (Unix seconds)
        signature_header: Value of the webhook-signature header
        secret: Signing secret ("whsec_<base64>")
        now: Current Unix time (defaults to time.time())
    """
    if not secret or not webhook_id or not signature_header:
        return False

    try:
        timestamp = int(webhook_timestamp)
    except (TypeError, ValueError):
        return False

    current = time.time() if now is None else now
    if abs(current - timestamp) > REPLAY_TOLERANCE_SECONDS:
        return False

    try:
        expected = compute_signature(raw_payload, webhook_id, webhook_timestamp, secret)
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return False

    expected_bytes = expected.encode('ascii')
    matched = False
    for candidate in parse_signature_header(signature_header):
        # No early exit: every token is compared
        if hmac.compare_digest(expected_bytes, candidate.encode('utf-8', 'replace')):
            matched = True
    return matched
