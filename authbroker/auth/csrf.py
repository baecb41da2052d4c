"""CSRF protection using the double-submit cookie pattern.

The CSRF cookie holds `token|hash`, where hash = sha256(token + secret). Only
the server can produce a matching hash, so a cookie whose hash verifies was
set by us and not planted by an attacker. A state-changing request is
verified when it echoes the same token in its body.
"""

import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from typing import Optional

from ..errors import MissingCSRF
from ..options import InternalOptions

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CSRFResult:
    token: str
    verified: bool = False
    cookie: Optional[str] = None  # new `token|hash` value to set, if minted


def create_hash(message: str) -> str:
    return hashlib.sha256(message.encode("utf-8")).hexdigest()


def create_csrf_token(
    options: InternalOptions,
    cookie_value: Optional[str],
    is_post: bool,
    body_value: Optional[str],
) -> CSRFResult:
    """
    Verify the CSRF cookie, or mint a new one.

    A trusted cookie is never rotated. A missing or forged cookie is
    replaced, and the request is not verified.
    """
    secret = options.secret[0]

    if cookie_value:
        token, _, token_hash = cookie_value.partition("|")
        expected_hash = create_hash(f"{token}{secret}")

        if token and hmac.compare_digest(token_hash.encode(), expected_hash.encode()):
            verified = bool(
                is_post
                and body_value is not None
                and hmac.compare_digest(token.encode(), str(body_value).encode())
            )
            return CSRFResult(token=token, verified=verified)

        logger.warning("CSRF cookie hash mismatch; issuing a new token")

    token = secrets.token_hex(32)
    cookie = f"{token}|{create_hash(f'{token}{secret}')}"
    return CSRFResult(token=token, verified=False, cookie=cookie)


def validate_csrf(action: str, verified: bool) -> None:
    if verified:
        return
    raise MissingCSRF(f"CSRF token was missing during an action {action}")
