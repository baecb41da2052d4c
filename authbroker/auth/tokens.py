"""
Signed Token Codec
==================

Encodes and decodes the signed JWTs issued by this service: session tokens
(jwt strategy), sealed check cookies (state, nonce, PKCE verifier) and the
state parameter itself.

Tokens are HS256 JWS. The signing key is never the raw secret: it is derived
with HKDF-SHA256 from (secret, salt), where the salt is the cookie name or
another purpose label. A token issued for one cookie therefore never verifies
as another.

Secrets rotate newest-first: encode() always signs with the first secret,
decode() accepts a signature from any configured secret.
"""

import logging
import time
import uuid
from typing import Any, Dict, Sequence, Union

import jwt
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from ..errors import InvalidSession

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
DEFAULT_MAX_AGE = 30 * 24 * 60 * 60  # 30 days
CLOCK_TOLERANCE = 15  # seconds

SecretInput = Union[str, Sequence[str]]


def _secrets(secret: SecretInput) -> list:
    return [secret] if isinstance(secret, str) else list(secret)


def derive_key(secret: str, salt: str) -> bytes:
    """Derive the 256-bit signing key for (secret, salt)."""
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt.encode("utf-8"),
        info=f"authbroker generated signing key ({salt})".encode("utf-8"),
    )
    return hkdf.derive(secret.encode("utf-8"))


def encode(token: Dict[str, Any], secret: SecretInput, salt: str, max_age: int = DEFAULT_MAX_AGE) -> str:
    """
    Sign a claim set.

    Args:
        token: Claims to sign; iat, exp and jti are (re)set here
        secret: Secret or secrets (newest first)
        salt: Purpose label mixed into the key derivation
        max_age: Lifetime in seconds

    Returns:
        Compact JWS string
    """
    signing_secret = _secrets(secret)[0]
    now = int(time.time())

    payload = dict(token)
    payload.update({
        "iat": now,
        "exp": now + max_age,
        "jti": str(uuid.uuid4()),
    })

    return jwt.encode(payload, derive_key(signing_secret, salt), algorithm=ALGORITHM)


def decode(token: str, secret: SecretInput, salt: str) -> Dict[str, Any]:
    """
    Verify and decode a token issued by encode().

    Args:
        token: Compact JWS string
        secret: Secret or secrets; each is tried in order
        salt: The salt the token was issued with

    Returns:
        The decoded claims

    Raises:
        InvalidSession: If the token is empty, malformed, expired, or no
            configured secret verifies its signature
    """
    if not token:
        raise InvalidSession("No token to decode")

    for candidate in _secrets(secret):
        try:
            return jwt.decode(
                token,
                derive_key(candidate, salt),
                algorithms=[ALGORITHM],
                leeway=CLOCK_TOLERANCE,
                options={"require": ["exp", "iat"]},
            )
        except jwt.InvalidSignatureError:
            continue
        except jwt.ExpiredSignatureError as e:
            raise InvalidSession("Token has expired", cause=e) from e
        except jwt.InvalidTokenError as e:
            raise InvalidSession(f"Invalid token: {e}", cause=e) from e

    raise InvalidSession("No matching secret verified the token signature")
