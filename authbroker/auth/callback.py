"""
OAuth Callback Handling
=======================

Processes the provider's redirect back to /callback/{provider}.

The handler walks a fixed sequence of stages:

    AUTHORIZATION_REQUESTED -> CALLBACK_RECEIVED -> STATE_VALIDATED
        -> TOKEN_EXCHANGED -> CLAIMS_VALIDATED -> COMPLETE

Any stage may end in ERROR. Every failure is fatal for the request: there is
no retry, and the caller restarts sign-in. Session issuance happens after
COMPLETE, so an abandoned or failed callback leaves no partial session.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx

from ..errors import AuthError, InvalidNonce, OAuthCallbackError
from ..models import Account, Cookie, User
from ..options import InternalOptions
from ..providers import Provider
from . import checks
from .identity import normalize_profile
from .oidc import ProviderEndpoints, resolve_endpoints, verify_id_token

logger = logging.getLogger(__name__)


class CallbackStage(str, Enum):
    AUTHORIZATION_REQUESTED = "authorization_requested"
    CALLBACK_RECEIVED = "callback_received"
    STATE_VALIDATED = "state_validated"
    TOKEN_EXCHANGED = "token_exchanged"
    CLAIMS_VALIDATED = "claims_validated"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass
class CallbackResult:
    user: User
    account: Account
    profile: Dict[str, Any]
    tokens: Dict[str, Any]
    cookies: List[Cookie] = field(default_factory=list)
    callback_url: Optional[str] = None
    stage: CallbackStage = CallbackStage.COMPLETE


# =============================================================================
# Token Exchange Helper
# =============================================================================

def _provider_error(response: httpx.Response) -> Optional[str]:
    try:
        data = response.json()
    except ValueError:
        return None
    return data.get("error") if isinstance(data, dict) else None


async def exchange_code(
    code: str,
    code_verifier: Optional[str],
    provider: Provider,
    endpoints: ProviderEndpoints,
    options: InternalOptions,
    client: httpx.AsyncClient,
) -> Dict[str, Any]:
    """
    Exchange an authorization code for tokens.

    A single attempt is made.

    Args:
        code: Authorization code from the callback
        code_verifier: PKCE verifier, if the provider uses PKCE
        provider: Provider descriptor
        endpoints: Resolved endpoints
        options: Options (for the redirect URI)
        client: HTTP client

    Returns:
        Token response dictionary (access_token, id_token, ...)

    Raises:
        OAuthCallbackError: On network failure, timeout, non-2xx status or an
            error body
    """
    if not endpoints.token:
        raise OAuthCallbackError(f"Provider {provider.id} has no token endpoint")

    payload = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": options.redirect_uri(provider),
    }
    if code_verifier:
        payload["code_verifier"] = code_verifier

    auth = None
    if provider.client_secret and provider.token_endpoint_auth_method == "client_secret_basic":
        auth = httpx.BasicAuth(provider.client_id or "", provider.client_secret)
    else:
        payload["client_id"] = provider.client_id or ""
        if provider.client_secret:
            payload["client_secret"] = provider.client_secret

    try:
        response = await client.post(
            endpoints.token,
            data=payload,
            auth=auth,
            headers={"Accept": "application/json"},
        )
    except httpx.HTTPError as e:
        logger.error(f"Token request to {provider.id} failed: {e.__class__.__name__}")
        raise OAuthCallbackError("Unable to reach the token endpoint", cause=e) from e

    if not response.is_success:
        provider_error = _provider_error(response)
        logger.warning(
            f"Token endpoint returned {response.status_code}",
            extra={"provider": provider.id, "provider_error": provider_error},
        )
        raise OAuthCallbackError(
            f"Token exchange failed with status {response.status_code}",
            provider_error=provider_error,
        )

    try:
        tokens = response.json()
    except ValueError as e:
        raise OAuthCallbackError("Token response was not valid JSON", cause=e) from e

    if not isinstance(tokens, dict) or tokens.get("error"):
        provider_error = tokens.get("error") if isinstance(tokens, dict) else None
        raise OAuthCallbackError("Token response carried an error", provider_error=provider_error)

    if not tokens.get("access_token") and not tokens.get("id_token"):
        raise OAuthCallbackError("Token response had neither access_token nor id_token")

    return tokens


async def fetch_userinfo(
    tokens: Dict[str, Any],
    provider: Provider,
    endpoints: ProviderEndpoints,
    client: httpx.AsyncClient,
) -> Dict[str, Any]:
    """
    Raises:
        OAuthCallbackError: If the userinfo request fails
    """
    try:
        if provider.userinfo_request:
            return await provider.userinfo_request(tokens, provider, client)

        if not endpoints.userinfo:
            raise OAuthCallbackError(f"Provider {provider.id} has no userinfo endpoint")

        response = await client.get(
            endpoints.userinfo,
            headers={
                "Authorization": f"Bearer {tokens.get('access_token')}",
                "Accept": "application/json",
            },
        )
        response.raise_for_status()
        return response.json()
    except httpx.HTTPError as e:
        raise OAuthCallbackError("Userinfo request failed", cause=e) from e
    except ValueError as e:
        raise OAuthCallbackError("Userinfo response was not valid JSON", cause=e) from e


# =============================================================================
# Callback state machine
# =============================================================================

async def handle_oauth_callback(
    params: Dict[str, str],
    cookie_values: Dict[str, str],
    options: InternalOptions,
) -> CallbackResult:
    """
    Handle an OAuth/OIDC callback for options.provider.

    Args:
        params: Callback query (or form_post body) parameters
        cookie_values: Request cookies
        options: Options bound to the provider

    Returns:
        CallbackResult with the normalized user and account, raw profile,
        token set, the cookies to clear, and the callback URL from the state

    Raises:
        OAuthCallbackError: Provider error, failed exchange or userinfo
        InvalidState / InvalidPKCE / InvalidNonce: Failed checks
        InvalidIDToken: ID token signature or claim failure
    """
    provider = options.provider
    cookies: List[Cookie] = []
    stage = CallbackStage.CALLBACK_RECEIVED

    try:
        error = params.get("error")
        if error:
            logger.info(
                f"Provider {provider.id} returned an error",
                extra={"provider": provider.id, "provider_error": error},
            )
            raise OAuthCallbackError(
                params.get("error_description") or error,
                provider_error=error,
            )

        state_payload: Dict[str, Any] = {}
        if provider.has_check("state"):
            state_payload = checks.use_state(params.get("state"), cookie_values, cookies, options)
        stage = CallbackStage.STATE_VALIDATED

        code = params.get("code")
        if not code:
            raise OAuthCallbackError("Callback was missing the authorization code")

        code_verifier = None
        if provider.has_check("pkce"):
            code_verifier = checks.use_pkce(cookie_values, cookies, options)

        async with options.http_client() as client:
            try:
                endpoints = await resolve_endpoints(provider, client)
            except (httpx.HTTPError, ValueError) as e:
                raise OAuthCallbackError("Provider discovery failed", cause=e) from e

            tokens = await exchange_code(code, code_verifier, provider, endpoints, options, client)
            stage = CallbackStage.TOKEN_EXCHANGED

            if provider.type == "oidc":
                raw_profile = await _validate_id_token(tokens, provider, endpoints, client, cookie_values, cookies, options)
                stage = CallbackStage.CLAIMS_VALIDATED
            else:
                raw_profile = await fetch_userinfo(tokens, provider, endpoints, client)

        user, account = normalize_profile(provider, raw_profile, tokens)
    except AuthError as e:
        logger.warning(
            f"OAuth callback failed after stage {stage.value}: {e.type}",
            extra={"provider": provider.id, "stage": stage.value, "error": e.type},
        )
        raise

    logger.info("OAuth callback complete", extra={"provider": provider.id})
    return CallbackResult(
        user=user,
        account=account,
        profile=raw_profile,
        tokens=tokens,
        cookies=cookies,
        callback_url=state_payload.get("callback_url"),
    )


async def _validate_id_token(
    tokens: Dict[str, Any],
    provider: Provider,
    endpoints: ProviderEndpoints,
    client: httpx.AsyncClient,
    cookie_values: Dict[str, str],
    cookies: List[Cookie],
    options: InternalOptions,
) -> Dict[str, Any]:
    id_token = tokens.get("id_token")
    if not id_token:
        raise OAuthCallbackError("Token response missing id_token")

    try:
        claims = await verify_id_token(
            id_token, provider, endpoints, client, access_token=tokens.get("access_token")
        )
    except httpx.HTTPError as e:
        raise OAuthCallbackError("Unable to fetch the provider's signing keys", cause=e) from e
    except ValueError as e:
        raise OAuthCallbackError("Provider returned an invalid JWKS", cause=e) from e

    if provider.has_check("nonce"):
        expected_nonce = checks.use_nonce(cookie_values, cookies, options)
        token_nonce = claims.get("nonce")
        if not token_nonce or token_nonce != expected_nonce:
            raise InvalidNonce("ID token nonce did not match the nonce cookie")

    return claims

