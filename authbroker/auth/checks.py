"""
OAuth Checks
============

The single-use values that bind an authorization response to the browser that
started it:

- state: a signed token carrying a random value and the callback URL, sent to
  the provider and sealed in the state cookie
- nonce: random value sent to OIDC providers and echoed in the ID token
- pkce: code_verifier sealed in a cookie, its S256 challenge sent to the
  provider

create_* functions return (parameter value, cookie to set). use_* functions
open the cookie, append a clearing cookie to the response so the value cannot
be used twice, and return the stored value.
"""

import base64
import hashlib
import logging
import secrets
from typing import Any, Dict, List, Optional, Tuple

from ..errors import InvalidCheck, InvalidNonce, InvalidPKCE, InvalidSession, InvalidState
from ..models import Cookie
from ..options import InternalOptions
from . import cookies as cookie_codec
from . import tokens

logger = logging.getLogger(__name__)

STATE_SALT = "encodedState"


# =============================================================================
# PKCE Helper Functions
# =============================================================================

def generate_code_verifier() -> str:
    """
    Generate a cryptographically random code verifier for PKCE.

    Returns:
        Base64-URL-encoded random string (43 characters)
    """
    return secrets.token_urlsafe(32)


def generate_code_challenge(verifier: str) -> str:
    """
    Generate code challenge from verifier using S256 method.

    Args:
        verifier: Code verifier string

    Returns:
        Base64-URL-encoded SHA256 hash of verifier, without padding
    """
    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("utf-8").rstrip("=")


# =============================================================================
# State
# =============================================================================

def create_state(options: InternalOptions, callback_url: Optional[str] = None) -> Tuple[str, Cookie]:
    """
    Create the state parameter and its cookie.

    The state is itself a signed token, so it can carry the callback URL
    through the provider round trip without a server-side store.
    """
    payload: Dict[str, Any] = {"random": secrets.token_urlsafe(32)}
    if callback_url:
        payload["callback_url"] = callback_url

    state = tokens.encode(
        payload, options.secret, salt=STATE_SALT, max_age=cookie_codec.CHECK_COOKIE_TTL
    )
    cookie = cookie_codec.seal(options.cookies.state, state, options.secret)
    logger.debug("Created state", extra={"cookie": options.cookies.state.name})
    return state, cookie


def decode_state(state: str, options: InternalOptions) -> Dict[str, Any]:
    """
    Raises:
        InvalidState: If the state token was not issued by us or has expired
    """
    try:
        return tokens.decode(state, options.secret, salt=STATE_SALT)
    except InvalidSession as e:
        raise InvalidState("State value could not be decoded", cause=e) from e


def use_state(
    returned_state: Optional[str],
    cookie_values: Dict[str, str],
    response_cookies: List[Cookie],
    options: InternalOptions,
) -> Dict[str, Any]:
    """
    Validate the state returned by the provider and consume the state cookie.

    Args:
        returned_state: state query parameter from the callback
        cookie_values: Request cookies
        response_cookies: Outbound cookies; the clearing cookie is appended
        options: Resolved options

    Returns:
        The decoded state payload (random value and callback URL)

    Raises:
        InvalidState: If the cookie is missing, expired or does not match
    """
    option = options.cookies.state

    # Cleared whatever the outcome; a failed attempt still burns the state.
    response_cookies.append(cookie_codec.clear(option))

    try:
        expected = cookie_codec.unseal(option, cookie_values.get(option.name), options.secret)
    except InvalidCheck as e:
        raise InvalidState("State cookie was missing or invalid", cause=e) from e

    if not returned_state:
        raise InvalidState("State was missing from the callback")
    if not secrets.compare_digest(returned_state.encode(), expected.encode()):
        raise InvalidState("State value did not match the state cookie")

    return decode_state(expected, options)


# =============================================================================
# Nonce
# =============================================================================

def create_nonce(options: InternalOptions) -> Tuple[str, Cookie]:
    nonce = secrets.token_urlsafe(32)
    return nonce, cookie_codec.seal(options.cookies.nonce, nonce, options.secret)


def use_nonce(
    cookie_values: Dict[str, str],
    response_cookies: List[Cookie],
    options: InternalOptions,
) -> str:
    """
    Return the nonce sealed at sign-in and consume its cookie.

    Raises:
        InvalidNonce: If the nonce cookie is missing or invalid
    """
    option = options.cookies.nonce
    response_cookies.append(cookie_codec.clear(option))
    try:
        return cookie_codec.unseal(option, cookie_values.get(option.name), options.secret)
    except InvalidCheck as e:
        raise InvalidNonce("Nonce cookie was missing or invalid", cause=e) from e


# =============================================================================
# PKCE
# =============================================================================

def create_pkce(options: InternalOptions) -> Tuple[str, Cookie]:
    """Return (code_challenge, verifier cookie)."""
    verifier = generate_code_verifier()
    cookie = cookie_codec.seal(options.cookies.pkce_code_verifier, verifier, options.secret)
    return generate_code_challenge(verifier), cookie


def use_pkce(
    cookie_values: Dict[str, str],
    response_cookies: List[Cookie],
    options: InternalOptions,
) -> str:
    """
    Return the code_verifier sealed at sign-in and consume its cookie.

    Raises:
        InvalidPKCE: If the verifier cookie is missing or invalid
    """
    option = options.cookies.pkce_code_verifier
    response_cookies.append(cookie_codec.clear(option))
    try:
        return cookie_codec.unseal(option, cookie_values.get(option.name), options.secret)
    except InvalidCheck as e:
        raise InvalidPKCE("PKCE code_verifier cookie was missing or invalid", cause=e) from e
