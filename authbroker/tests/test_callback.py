"""
OAuth Callback Tests

Tests the callback state machine: provider errors, state validation and
replay, code exchange, ID token verification (signature, iss, aud, exp, iat,
nonce) and userinfo retrieval.
"""

import base64
import time

import httpx
import pytest

from authbroker.auth.callback import handle_oauth_callback
from authbroker.auth.oidc import ProviderEndpoints, verify_id_token
from authbroker.auth.signin import get_authorization_url
from authbroker.errors import (
    InvalidIDToken,
    InvalidNonce,
    InvalidState,
    OAuthCallbackError,
    OAuthProfileParseError,
)
from authbroker.options import build_options

from .conftest import (
    CLIENT_ID,
    CLIENT_SECRET,
    ISSUER,
    FakeIdP,
    apply_cookies,
    create_id_token,
    make_settings,
    oauth_provider,
    oidc_provider,
    query_of,
)


def options_for(provider, idp):
    return build_options(
        make_settings(),
        providers=[provider],
        http_transport=httpx.MockTransport(idp.handler),
    ).with_provider(provider)


async def start(options, idp, callback_url=None):
    """Run the sign-in half: returns (state param, cookie jar)."""
    url, cookies = await get_authorization_url(options, callback_url)
    params = query_of(url)
    idp.nonce = params.get("nonce")
    return params.get("state"), apply_cookies({}, cookies)


class TestProviderError:
    """Test suite for an error returned by the provider"""

    @pytest.mark.asyncio
    async def test_error_param_aborts_without_network(self):
        idp = FakeIdP()
        options = options_for(oidc_provider(), idp)
        state, jar = await start(options, idp)

        with pytest.raises(OAuthCallbackError) as exc_info:
            await handle_oauth_callback({"error": "access_denied", "state": state}, jar, options)

        assert exc_info.value.provider_error == "access_denied"
        assert idp.requests == []


class TestStateValidation:
    """Test suite for state checks on the callback"""

    @pytest.mark.asyncio
    async def test_tampered_state_fails_before_exchange(self):
        idp = FakeIdP()
        options = options_for(oidc_provider(), idp)
        state, jar = await start(options, idp)

        with pytest.raises(InvalidState):
            await handle_oauth_callback({"code": "abc", "state": state[:-2] + "xx"}, jar, options)

        assert idp.token_requests() == []

    @pytest.mark.asyncio
    async def test_state_from_another_sign_in_fails(self):
        idp = FakeIdP()
        options = options_for(oidc_provider(), idp)
        first_state, _ = await start(options, idp)
        _, second_jar = await start(options, idp)

        with pytest.raises(InvalidState):
            await handle_oauth_callback({"code": "abc", "state": first_state}, second_jar, options)

    @pytest.mark.asyncio
    async def test_missing_state_cookie_fails(self):
        idp = FakeIdP()
        options = options_for(oidc_provider(), idp)
        state, jar = await start(options, idp)
        jar.pop(options.cookies.state.name)

        with pytest.raises(InvalidState):
            await handle_oauth_callback({"code": "abc", "state": state}, jar, options)

    @pytest.mark.asyncio
    async def test_replayed_callback_fails(self):
        idp = FakeIdP()
        options = options_for(oidc_provider(), idp)
        state, jar = await start(options, idp)
        params = {"code": "abc", "state": state}

        result = await handle_oauth_callback(params, dict(jar), options)
        apply_cookies(jar, result.cookies)

        with pytest.raises(InvalidState):
            await handle_oauth_callback(params, jar, options)


class TestCodeExchange:
    """Test suite for the token endpoint call"""

    @pytest.mark.asyncio
    async def test_oidc_happy_path(self):
        idp = FakeIdP()
        options = options_for(oidc_provider(), idp)
        state, jar = await start(options, idp, "http://localhost:8080/after")

        result = await handle_oauth_callback({"code": "abc", "state": state}, jar, options)

        assert result.user.email == "alice@example.com"
        assert result.user.id == "idp-user-123"
        assert result.account.provider == "idp"
        assert result.account.provider_account_id == "idp-user-123"
        assert result.account.access_token == "access-token-abc"
        assert result.account.expires_at > time.time()
        assert result.callback_url == "http://localhost:8080/after"
        cleared = {c.name for c in result.cookies if c.options.max_age == 0}
        assert cleared == {
            options.cookies.state.name,
            options.cookies.nonce.name,
            options.cookies.pkce_code_verifier.name,
        }

    @pytest.mark.asyncio
    async def test_token_request_uses_basic_auth_and_verifier(self):
        idp = FakeIdP()
        options = options_for(oidc_provider(), idp)
        state, jar = await start(options, idp)

        await handle_oauth_callback({"code": "abc", "state": state}, jar, options)

        request = idp.token_requests()[0]
        expected = base64.b64encode(f"{CLIENT_ID}:{CLIENT_SECRET}".encode()).decode()
        assert request.headers["authorization"] == f"Basic {expected}"
        assert request.headers["accept"] == "application/json"
        form = query_of(f"?{request.content.decode()}")
        assert form["grant_type"] == "authorization_code"
        assert form["code"] == "abc"
        assert form["redirect_uri"] == "http://localhost:8080/auth/callback/idp"
        assert form["code_verifier"]
        assert "client_secret" not in form

    @pytest.mark.asyncio
    async def test_client_secret_post(self):
        idp = FakeIdP()
        options = options_for(oidc_provider(token_endpoint_auth_method="client_secret_post"), idp)
        state, jar = await start(options, idp)

        await handle_oauth_callback({"code": "abc", "state": state}, jar, options)

        request = idp.token_requests()[0]
        form = query_of(f"?{request.content.decode()}")
        assert "authorization" not in request.headers
        assert form["client_id"] == CLIENT_ID
        assert form["client_secret"] == CLIENT_SECRET

    @pytest.mark.asyncio
    async def test_non_2xx_token_response_fails(self):
        idp = FakeIdP()
        idp.token_status = 400
        options = options_for(oidc_provider(), idp)
        state, jar = await start(options, idp)

        with pytest.raises(OAuthCallbackError) as exc_info:
            await handle_oauth_callback({"code": "abc", "state": state}, jar, options)

        assert exc_info.value.provider_error == "invalid_grant"
        assert len(idp.token_requests()) == 1

    @pytest.mark.asyncio
    async def test_network_failure_fails_once(self):
        idp = FakeIdP()
        idp.token_error = httpx.ConnectError("connection refused")
        options = options_for(oidc_provider(), idp)
        state, jar = await start(options, idp)

        with pytest.raises(OAuthCallbackError):
            await handle_oauth_callback({"code": "abc", "state": state}, jar, options)

        assert len(idp.token_requests()) == 1

    @pytest.mark.asyncio
    async def test_timeout_fails(self):
        idp = FakeIdP()
        idp.token_error = httpx.ReadTimeout("timed out")
        options = options_for(oidc_provider(), idp)
        state, jar = await start(options, idp)

        with pytest.raises(OAuthCallbackError):
            await handle_oauth_callback({"code": "abc", "state": state}, jar, options)

    @pytest.mark.asyncio
    async def test_missing_code_fails(self):
        idp = FakeIdP()
        options = options_for(oidc_provider(), idp)
        state, jar = await start(options, idp)

        with pytest.raises(OAuthCallbackError):
            await handle_oauth_callback({"state": state}, jar, options)


class TestIdTokenValidation:
    """Test suite for OIDC claim validation"""

    async def run(self, **claims):
        idp = FakeIdP()
        options = options_for(oidc_provider(), idp)
        state, jar = await start(options, idp)
        idp.id_token_claims = claims
        return await handle_oauth_callback({"code": "abc", "state": state}, jar, options)

    @pytest.mark.asyncio
    async def test_wrong_issuer(self):
        with pytest.raises(InvalidIDToken) as exc_info:
            await self.run(iss="https://evil.example.com")
        assert exc_info.value.claim == "iss"

    @pytest.mark.asyncio
    async def test_endpoints_without_issuer_are_refused(self):
        idp = FakeIdP()
        endpoints = ProviderEndpoints(
            authorization=f"{ISSUER}/authorize",
            token=f"{ISSUER}/token",
            jwks_uri=f"{ISSUER}/jwks",
        )
        id_token = create_id_token(iss="https://evil.example.com")

        async with httpx.AsyncClient(transport=httpx.MockTransport(idp.handler)) as client:
            with pytest.raises(InvalidIDToken) as exc_info:
                await verify_id_token(id_token, oidc_provider(), endpoints, client)

        assert exc_info.value.claim == "iss"
        assert idp.requests == []

    @pytest.mark.asyncio
    async def test_wrong_audience(self):
        with pytest.raises(InvalidIDToken) as exc_info:
            await self.run(aud="someone-else")
        assert exc_info.value.claim == "aud"

    @pytest.mark.asyncio
    async def test_expired(self):
        with pytest.raises(InvalidIDToken) as exc_info:
            await self.run(exp=int(time.time()) - 3600, iat=int(time.time()) - 7200)
        assert exc_info.value.claim == "exp"

    @pytest.mark.asyncio
    async def test_iat_in_the_future(self):
        with pytest.raises(InvalidIDToken) as exc_info:
            await self.run(iat=int(time.time()) + 3600, exp=int(time.time()) + 7200)
        assert exc_info.value.claim == "iat"

    @pytest.mark.asyncio
    async def test_missing_iat(self):
        with pytest.raises(InvalidIDToken):
            await self.run(iat=None)

    @pytest.mark.asyncio
    async def test_nonce_mismatch(self):
        with pytest.raises(InvalidNonce):
            await self.run(nonce="not-the-cookie-nonce")

    @pytest.mark.asyncio
    async def test_missing_nonce(self):
        with pytest.raises(InvalidNonce):
            await self.run(nonce=None)

    @pytest.mark.asyncio
    async def test_unknown_kid(self):
        idp = FakeIdP()
        options = options_for(oidc_provider(), idp)
        state, jar = await start(options, idp)
        idp.id_token = create_id_token(nonce=idp.nonce, kid="rotated-away")

        with pytest.raises(InvalidIDToken) as exc_info:
            await handle_oauth_callback({"code": "abc", "state": state}, jar, options)
        assert exc_info.value.claim == "kid"

    @pytest.mark.asyncio
    async def test_bad_signature(self):
        idp = FakeIdP()
        options = options_for(oidc_provider(), idp)
        state, jar = await start(options, idp)
        header, payload, signature = create_id_token(nonce=idp.nonce).split(".")
        idp.id_token = ".".join([header, payload, signature[::-1]])

        with pytest.raises(InvalidIDToken):
            await handle_oauth_callback({"code": "abc", "state": state}, jar, options)

    @pytest.mark.asyncio
    async def test_missing_id_token(self):
        idp = FakeIdP()
        idp.token_body = {"access_token": "abc", "token_type": "Bearer"}
        options = options_for(oidc_provider(), idp)
        state, jar = await start(options, idp)

        with pytest.raises(OAuthCallbackError):
            await handle_oauth_callback({"code": "abc", "state": state}, jar, options)


class TestOAuthUserinfo:
    """Test suite for plain OAuth providers (profile from userinfo)"""

    @pytest.mark.asyncio
    async def test_userinfo_profile(self):
        idp = FakeIdP()
        provider = oauth_provider(profile=lambda p, t: {"id": p["id"], "name": p["name"], "email": p["email"]})
        options = options_for(provider, idp)
        state, jar = await start(options, idp)

        result = await handle_oauth_callback({"code": "abc", "state": state}, jar, options)

        assert result.user.id == "42"
        assert result.user.name == "Octo Cat"
        userinfo_request = [r for r in idp.requests if r.url.path == "/userinfo"][0]
        assert userinfo_request.headers["authorization"] == "Bearer access-token-abc"

    @pytest.mark.asyncio
    async def test_custom_userinfo_request(self):
        idp = FakeIdP()

        async def fetch(tokens, provider, client):
            return {"id": "custom-1", "email": "custom@example.com"}

        options = options_for(oauth_provider(userinfo_request=fetch), idp)
        state, jar = await start(options, idp)

        result = await handle_oauth_callback({"code": "abc", "state": state}, jar, options)

        assert result.user.id == "custom-1"
        assert not [r for r in idp.requests if r.url.path == "/userinfo"]

    @pytest.mark.asyncio
    async def test_profile_without_id_fails(self):
        idp = FakeIdP()
        options = options_for(oauth_provider(profile=lambda p, t: {"name": "nobody"}), idp)
        state, jar = await start(options, idp)

        with pytest.raises(OAuthProfileParseError):
            await handle_oauth_callback({"code": "abc", "state": state}, jar, options)
