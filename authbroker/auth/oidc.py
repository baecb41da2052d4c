"""
OpenID Connect utilities: discovery, JWKS retrieval and ID token verification.

This module handles:
- Resolving provider endpoints (explicit or via .well-known discovery)
- Fetching the provider's JWKS (JSON Web Key Set) for each verification
- Verifying ID token signatures and the iss/aud/exp/iat claims

Nothing here is cached: every callback fetches the keys it needs, so there
is no state shared between requests.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
from jose import jwt, JWTError
from jose.exceptions import ExpiredSignatureError, JWTClaimsError

from ..errors import InvalidIDToken
from ..providers import Provider

logger = logging.getLogger(__name__)

CLOCK_LEEWAY = 10  # seconds of clock skew tolerance


@dataclass(frozen=True)
class ProviderEndpoints:
    authorization: Optional[str]
    token: Optional[str]
    userinfo: Optional[str] = None
    jwks_uri: Optional[str] = None
    issuer: Optional[str] = None


# =============================================================================
# Discovery
# =============================================================================

async def discover(issuer: str, client: httpx.AsyncClient) -> Dict[str, Any]:
    """
    Fetch the issuer's OpenID Provider metadata.

    Raises:
        httpx.HTTPError: If the discovery endpoint is unreachable
        ValueError: If the document is for a different issuer
    """
    url = f"{issuer.rstrip('/')}/.well-known/openid-configuration"
    response = await client.get(url)
    response.raise_for_status()
    metadata = response.json()

    if metadata.get("issuer", "").rstrip("/") != issuer.rstrip("/"):
        raise ValueError(
            f"Discovery document issuer {metadata.get('issuer')!r} does not match {issuer!r}"
        )
    return metadata


async def resolve_endpoints(provider: Provider, client: httpx.AsyncClient) -> ProviderEndpoints:
    """
    Return the provider's endpoints, filling gaps from OIDC discovery.

    OAuth providers must declare their endpoints; OIDC providers only need an
    issuer.
    """
    explicit = ProviderEndpoints(
        authorization=provider.authorization,
        token=provider.token,
        userinfo=provider.userinfo,
        jwks_uri=provider.jwks_uri,
        issuer=provider.issuer,
    )
    if provider.type != "oidc" or (explicit.authorization and explicit.token and explicit.jwks_uri):
        return explicit

    metadata = await discover(provider.issuer, client)
    return ProviderEndpoints(
        authorization=provider.authorization or metadata.get("authorization_endpoint"),
        token=provider.token or metadata.get("token_endpoint"),
        userinfo=provider.userinfo or metadata.get("userinfo_endpoint"),
        jwks_uri=provider.jwks_uri or metadata.get("jwks_uri"),
        issuer=metadata.get("issuer", provider.issuer),
    )


# =============================================================================
# JWKS
# =============================================================================

async def fetch_jwks(jwks_uri: str, client: httpx.AsyncClient) -> Dict[str, Any]:
    """
    Fetch a JWKS document.

    Raises:
        httpx.HTTPError: If the JWKS endpoint is unreachable
        ValueError: If the response has no 'keys' field
    """
    response = await client.get(jwks_uri)
    response.raise_for_status()
    jwks = response.json()

    if "keys" not in jwks:
        raise ValueError("Invalid JWKS response: missing 'keys' field")
    return jwks


def get_signing_key(token: str, jwks: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Extract the key from the JWKS that matches the token's kid.

    A token without a kid is accepted only when the set holds a single key.

    Raises:
        JWTError: If the token header is malformed
    """
    header = jwt.get_unverified_header(token)
    keys = jwks.get("keys", [])
    kid = header.get("kid")

    if not kid:
        return keys[0] if len(keys) == 1 else None

    for key in keys:
        if key.get("kid") == kid:
            return key
    return None


# =============================================================================
# ID token verification
# =============================================================================

def _claim_from_error(message: str) -> str:
    lowered = message.lower()
    for needle, claim in (
        ("audience", "aud"),
        ("issuer", "iss"),
        ("at_hash", "at_hash"),
        ("not yet valid", "nbf"),
        ("nbf", "nbf"),
        ("iat", "iat"),
    ):
        if needle in lowered:
            return claim
    return "claims"


def _decode_id_token(
    id_token: str,
    key: Dict[str, Any],
    provider: Provider,
    issuer: str,
    access_token: Optional[str],
) -> Dict[str, Any]:
    try:
        return jwt.decode(
            id_token,
            key,
            algorithms=list(provider.id_token_signing_algs),
            audience=provider.client_id,
            issuer=issuer,
            access_token=access_token,
            options={
                "verify_signature": True,
                "verify_aud": True,
                "verify_iat": True,
                "verify_exp": True,
                "verify_nbf": True,
                "verify_iss": True,
                "verify_at_hash": access_token is not None,
                "require_exp": True,
                "require_iat": True,
                "leeway": CLOCK_LEEWAY,
            },
        )
    except ExpiredSignatureError as e:
        raise InvalidIDToken("ID token has expired", claim="exp", cause=e) from e
    except JWTClaimsError as e:
        claim = _claim_from_error(str(e))
        raise InvalidIDToken(f"Invalid ID token claims: {e}", claim=claim, cause=e) from e
    except JWTError as e:
        raise InvalidIDToken(f"ID token verification failed: {e}", claim="signature", cause=e) from e


async def verify_id_token(
    id_token: str,
    provider: Provider,
    endpoints: ProviderEndpoints,
    client: httpx.AsyncClient,
    access_token: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Verify and decode an ID token.

    This function performs comprehensive validation:
    1. Fetches the JWKS and finds the key matching the token's kid
    2. Verifies the signature with an algorithm the provider allows
    3. Validates iss (configured issuer), aud (contains client id), exp, nbf
    4. Checks iat is present and not in the future

    The nonce is checked by the caller, which owns the nonce cookie.

    Args:
        id_token: Compact JWS from the token response
        provider: Provider descriptor (client id, accepted algorithms)
        endpoints: Resolved endpoints (jwks_uri, issuer)
        client: HTTP client for the JWKS fetch
        access_token: When given, the at_hash claim is checked against it

    Returns:
        Verified ID token claims

    Raises:
        InvalidIDToken: If the signature or any claim check fails
        httpx.HTTPError: If the JWKS endpoint is unreachable
    """
    if not endpoints.issuer:
        raise InvalidIDToken(f"Provider {provider.id} has no issuer", claim="iss")
    if not endpoints.jwks_uri:
        raise InvalidIDToken(f"Provider {provider.id} has no jwks_uri", claim="signature")

    jwks = await fetch_jwks(endpoints.jwks_uri, client)

    try:
        signing_key = get_signing_key(id_token, jwks)
    except JWTError as e:
        raise InvalidIDToken(f"Failed to decode ID token header: {e}", claim="header", cause=e) from e

    if not signing_key:
        raise InvalidIDToken(
            "Unable to find matching signing key in JWKS",
            claim="kid",
        )

    # RSA/EC verification is CPU-bound; keep it off the event loop.
    claims = await asyncio.to_thread(
        _decode_id_token, id_token, signing_key, provider, endpoints.issuer, access_token
    )

    iat = claims.get("iat")
    if not isinstance(iat, (int, float)) or iat > time.time() + CLOCK_LEEWAY:
        raise InvalidIDToken("ID token iat is missing or in the future", claim="iat")

    logger.debug("ID token verified", extra={"provider": provider.id})
    return claims
