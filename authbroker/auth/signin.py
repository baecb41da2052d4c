"""Build the provider authorization URL for an OAuth/OIDC sign-in."""

import logging
from typing import Dict, List, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx

from ..errors import OAuthSignInError
from ..models import Cookie
from ..options import InternalOptions
from . import checks
from .oidc import resolve_endpoints

logger = logging.getLogger(__name__)

DEFAULT_SCOPES = {
    "oidc": "openid profile email",
    "oauth": None,
}

# Parameters owned by the engine; callers cannot override them.
RESERVED_PARAMS = frozenset({
    "client_id",
    "redirect_uri",
    "response_type",
    "state",
    "nonce",
    "code_challenge",
    "code_challenge_method",
})


async def get_authorization_url(
    options: InternalOptions,
    callback_url: Optional[str] = None,
    authorization_params: Optional[Dict[str, str]] = None,
) -> Tuple[str, List[Cookie]]:
    """
    Construct the authorization URL for options.provider.

    Only the checks the provider declares produce parameters and cookies: a
    provider without "state" gets no state parameter.

    Args:
        options: Options bound to the requested provider
        callback_url: Where to land after the callback; carried in the state
        authorization_params: Extra query parameters from the caller

    Returns:
        (authorization_url, cookies to set)

    Raises:
        OAuthSignInError: If the provider endpoints cannot be resolved
    """
    provider = options.provider

    try:
        async with options.http_client() as client:
            endpoints = await resolve_endpoints(provider, client)
    except (httpx.HTTPError, ValueError) as e:
        logger.error(f"Endpoint discovery failed for {provider.id}: {e}")
        raise OAuthSignInError(f"Could not resolve endpoints for {provider.id}", cause=e) from e

    if not endpoints.authorization:
        raise OAuthSignInError(f"Provider {provider.id} has no authorization endpoint")

    url = urlsplit(endpoints.authorization)
    params: Dict[str, str] = dict(parse_qsl(url.query))

    scope = DEFAULT_SCOPES.get(provider.type)
    if scope:
        params["scope"] = scope
    params.update(provider.authorization_params)
    for key, value in (authorization_params or {}).items():
        if key not in RESERVED_PARAMS:
            params[key] = value

    params.update({
        "response_type": "code",
        "client_id": provider.client_id or "",
        "redirect_uri": options.redirect_uri(provider),
    })

    cookies: List[Cookie] = []

    if provider.has_check("state"):
        state, cookie = checks.create_state(options, callback_url)
        params["state"] = state
        cookies.append(cookie)

    if provider.has_check("pkce"):
        challenge, cookie = checks.create_pkce(options)
        params["code_challenge"] = challenge
        params["code_challenge_method"] = "S256"
        cookies.append(cookie)

    if provider.has_check("nonce"):
        nonce, cookie = checks.create_nonce(options)
        params["nonce"] = nonce
        cookies.append(cookie)

    authorization_url = urlunsplit(url._replace(query=urlencode(params)))

    logger.info(
        f"Sign-in redirect to {provider.id}",
        extra={"provider": provider.id, "checks": list(provider.checks)},
    )
    return authorization_url, cookies
