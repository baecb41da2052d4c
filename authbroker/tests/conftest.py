"""
Shared fixtures for the auth broker tests.

Provides an in-memory storage adapter, a fake identity provider served through
httpx.MockTransport, RSA keys for signing ID tokens, and helpers that drive
the dispatcher like a browser would (keeping a cookie jar between requests).
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import parse_qs, urlsplit

import httpx
import jwt
import pytest
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from authbroker.adapters import Adapter
from authbroker.auth.actions import auth
from authbroker.config import Settings
from authbroker.models import Account, AdapterSession, Cookie, RequestInternal, ResponseInternal, User
from authbroker.options import build_options
from authbroker.providers import Provider


TEST_SECRET = "test-secret-0123456789abcdef0123456789abcdef"
ISSUER = "https://idp.example.com"
CLIENT_ID = "test-client-id"
CLIENT_SECRET = "test-client-secret"
TEST_KID = "test-key-id-2024"


# =============================================================================
# Keys
# =============================================================================

def generate_test_keys():
    """Generate RSA key pair for testing"""
    private_key = rsa.generate_private_key(
        public_exponent=65537,
        key_size=2048,
        backend=default_backend()
    )
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    )
    return private_key, private_pem.decode()


TEST_PRIVATE_KEY_OBJ, TEST_PRIVATE_KEY = generate_test_keys()


def create_mock_jwks(kid: str = TEST_KID) -> Dict[str, Any]:
    jwk = RSAAlgorithm.to_jwk(TEST_PRIVATE_KEY_OBJ.public_key(), as_dict=True)
    jwk["kid"] = kid
    jwk["use"] = "sig"
    jwk["alg"] = "RS256"
    return {"keys": [jwk]}


def create_id_token(nonce: Optional[str] = None, kid: str = TEST_KID, **overrides: Any) -> str:
    """Sign an ID token for the fake provider; overrides replace claims (None removes one)."""
    now = datetime.now(timezone.utc)
    payload = {
        "iss": ISSUER,
        "sub": "idp-user-123",
        "aud": CLIENT_ID,
        "exp": now + timedelta(minutes=60),
        "iat": now,
        "email": "Alice@Example.com",
        "name": "Alice",
        "picture": "https://idp.example.com/alice.png",
    }
    if nonce is not None:
        payload["nonce"] = nonce
    for key, value in overrides.items():
        if value is None:
            payload.pop(key, None)
        else:
            payload[key] = value
    return jwt.encode(payload, TEST_PRIVATE_KEY, algorithm="RS256", headers={"kid": kid, "alg": "RS256"})


# =============================================================================
# Fake identity provider
# =============================================================================

class FakeIdP:
    """
    Fake OAuth/OIDC provider behind httpx.MockTransport.

    The ID token is signed on each token request with the nonce taken from the
    last authorization URL, unless a test sets id_token explicitly.
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.token_status = 200
        self.token_body: Optional[Dict[str, Any]] = None
        self.token_error: Optional[Exception] = None
        self.nonce: Optional[str] = None
        self.id_token: Optional[str] = None
        self.id_token_claims: Dict[str, Any] = {}
        self.userinfo = {"id": 42, "login": "octo", "name": "Octo Cat", "email": "octo@example.com"}

    def token_requests(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path == "/token"]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/.well-known/openid-configuration":
            return httpx.Response(200, json={
                "issuer": ISSUER,
                "authorization_endpoint": f"{ISSUER}/authorize",
                "token_endpoint": f"{ISSUER}/token",
                "userinfo_endpoint": f"{ISSUER}/userinfo",
                "jwks_uri": f"{ISSUER}/jwks",
            })
        if path == "/jwks":
            return httpx.Response(200, json=create_mock_jwks())
        if path == "/userinfo":
            return httpx.Response(200, json=self.userinfo)
        if path == "/token":
            if self.token_error is not None:
                raise self.token_error
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_grant"})
            body = self.token_body or {
                "access_token": "access-token-abc",
                "token_type": "Bearer",
                "expires_in": 3600,
                "scope": "openid profile email",
                "id_token": self.id_token or create_id_token(**{"nonce": self.nonce, **self.id_token_claims}),
            }
            return httpx.Response(200, json=body)
        return httpx.Response(404, json={"error": "not_found"})


def oidc_provider(**overrides: Any) -> Provider:
    values = dict(
        id="idp",
        name="Test IdP",
        type="oidc",
        issuer=ISSUER,
        client_id=CLIENT_ID,
        client_secret=CLIENT_SECRET,
        authorization=f"{ISSUER}/authorize",
        token=f"{ISSUER}/token",
        userinfo=f"{ISSUER}/userinfo",
        jwks_uri=f"{ISSUER}/jwks",
    )
    values.update(overrides)
    return Provider(**values)


def oauth_provider(**overrides: Any) -> Provider:
    values = dict(
        id="octo",
        name="Octo",
        type="oauth",
        client_id=CLIENT_ID,
        client_secret=CLIENT_SECRET,
        authorization=f"{ISSUER}/authorize",
        token=f"{ISSUER}/token",
        userinfo=f"{ISSUER}/userinfo",
    )
    values.update(overrides)
    return Provider(**values)


# =============================================================================
# In-memory adapter
# =============================================================================

class MemoryAdapter(Adapter):
    """Dict-backed adapter for tests."""

    def __init__(self):
        self.users: Dict[str, User] = {}
        self.accounts: Dict[Tuple[str, str], Account] = {}
        self.sessions: Dict[str, AdapterSession] = {}

    async def create_user(self, user: User) -> User:
        created = user.model_copy(update={"id": str(uuid.uuid4())})
        self.users[created.id] = created
        return created

    async def get_user(self, user_id: str) -> Optional[User]:
        return self.users.get(user_id)

    async def get_user_by_email(self, email: str) -> Optional[User]:
        return next((u for u in self.users.values() if u.email == email), None)

    async def get_user_by_account(self, provider: str, provider_account_id: str) -> Optional[User]:
        account = self.accounts.get((provider, provider_account_id))
        return self.users.get(account.user_id) if account else None

    async def link_account(self, account: Account) -> Optional[Account]:
        self.accounts[(account.provider, account.provider_account_id)] = account
        return account

    async def create_session(self, session_token: str, user_id: str, expires: datetime) -> AdapterSession:
        session = AdapterSession(session_token=session_token, user_id=user_id, expires=expires)
        self.sessions[session_token] = session
        return session

    async def get_session_and_user(self, session_token: str):
        session = self.sessions.get(session_token)
        if not session:
            return None
        return session, self.users[session.user_id]

    async def update_session(self, session_token: str, expires: datetime) -> Optional[AdapterSession]:
        session = self.sessions[session_token].model_copy(update={"expires": expires})
        self.sessions[session_token] = session
        return session

    async def delete_session(self, session_token: str) -> Optional[AdapterSession]:
        return self.sessions.pop(session_token, None)


# =============================================================================
# Browser-like helpers
# =============================================================================

def make_settings(**overrides: Any) -> Settings:
    values = dict(
        AUTH_SECRET=TEST_SECRET,
        AUTH_URL="http://localhost:8080",
        AUTH_SESSION_STRATEGY="jwt",
        LOG_LEVEL="DEBUG",
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


def apply_cookies(jar: Dict[str, str], cookies: List[Cookie]) -> Dict[str, str]:
    """Update a cookie jar the way a browser applies Set-Cookie."""
    for cookie in cookies:
        if cookie.options.max_age == 0:
            jar.pop(cookie.name, None)
        else:
            jar[cookie.name] = cookie.value
    return jar


def query_of(url: str) -> Dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


class Browser:
    """Drives auth() with a persistent cookie jar."""

    def __init__(self, options):
        self.options = options
        self.jar: Dict[str, str] = {}

    async def request(
        self,
        action: str,
        method: str = "GET",
        provider_id: Optional[str] = None,
        query: Optional[Dict[str, str]] = None,
        body: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> ResponseInternal:
        response = await auth(
            RequestInternal(
                action=action,
                method=method,
                provider_id=provider_id,
                cookies=dict(self.jar),
                headers=headers or {},
                query=query or {},
                body=body or {},
            ),
            self.options,
        )
        apply_cookies(self.jar, response.cookies)
        return response

    async def csrf_token(self) -> str:
        response = await self.request("csrf")
        return response.body["csrfToken"]

    async def sign_in(self, provider_id: str, callback_url: Optional[str] = None) -> ResponseInternal:
        body = {"csrfToken": await self.csrf_token()}
        if callback_url:
            body["callbackUrl"] = callback_url
        return await self.request("signin", "POST", provider_id, body=body)


@pytest.fixture
def idp():
    return FakeIdP()


@pytest.fixture
def adapter():
    return MemoryAdapter()


@pytest.fixture
def jwt_options(idp):
    return build_options(
        make_settings(),
        providers=[oidc_provider(), oauth_provider()],
        http_transport=httpx.MockTransport(idp.handler),
    )


@pytest.fixture
def db_options(idp, adapter):
    return build_options(
        make_settings(AUTH_SESSION_STRATEGY="database"),
        providers=[oidc_provider(), oauth_provider()],
        adapter=adapter,
        http_transport=httpx.MockTransport(idp.handler),
    )

