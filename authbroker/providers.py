"""
Provider Descriptors
====================

A provider is a plain data record: endpoints, client credentials, the set of
protocol checks it supports, and a pure profile() function mapping the raw
provider profile to the canonical identity fields. There is no per-provider
subclassing; the authorization request builder and the token exchanger
consume every descriptor the same way.

Only a few reference descriptors ship here (GitHub, Google, a generic OIDC
issuer and a credentials provider). Host applications construct their own
Provider records for anything else.
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from .models import User

ProfileMapper = Callable[[Dict[str, Any], Dict[str, Any]], Dict[str, Any]]

VALID_TYPES = ("oauth", "oidc", "credentials")
VALID_CHECKS = ("state", "nonce", "pkce")

DEFAULT_CHECKS = {
    "oauth": ("state", "pkce"),
    "oidc": ("state", "pkce", "nonce"),
    "credentials": (),
}


def default_profile(profile: Dict[str, Any], tokens: Dict[str, Any]) -> Dict[str, Any]:
    """Map standard OIDC claim names onto {id, name, email, image}."""
    return {
        "id": profile.get("sub") or profile.get("id"),
        "name": profile.get("name") or profile.get("nickname") or profile.get("preferred_username"),
        "email": profile.get("email"),
        "image": profile.get("picture"),
    }


@dataclass(frozen=True)
class Provider:
    """
    Descriptor for one identity provider.

    Attributes:
        id: Path segment identifying the provider (e.g. "github")
        name: Human-readable name
        type: "oauth", "oidc" or "credentials"
        client_id / client_secret: Client credentials registered with the provider
        issuer: OIDC issuer, required for oidc providers; endpoints are
            discovered from it when not set, and ID tokens must carry it as iss
        authorization / token / userinfo / jwks_uri: Endpoint URLs
        authorization_params: Extra query parameters for the authorization URL
        checks: Subset of ("state", "nonce", "pkce"); defaults per type
        token_endpoint_auth_method: "client_secret_basic" or "client_secret_post"
        id_token_signing_algs: Algorithms accepted for the ID token signature
        verified_email: The provider only returns verified email addresses,
            which allows linking a new account to an existing user by email
        profile: Maps (raw_profile, tokens) to {id, name, email, image}
        userinfo_request: Optional coroutine (tokens, provider, client) -> raw
            profile, for providers whose profile needs more than one call
        authorize: Credentials providers only; coroutine (credentials) -> User
    """

    id: str
    name: str
    type: str = "oauth"
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    issuer: Optional[str] = None
    authorization: Optional[str] = None
    token: Optional[str] = None
    userinfo: Optional[str] = None
    jwks_uri: Optional[str] = None
    authorization_params: Dict[str, str] = field(default_factory=dict)
    checks: Optional[Tuple[str, ...]] = None
    token_endpoint_auth_method: str = "client_secret_basic"
    id_token_signing_algs: Tuple[str, ...] = ("RS256",)
    verified_email: bool = False
    profile: ProfileMapper = default_profile
    userinfo_request: Optional[Callable[..., Awaitable[Dict[str, Any]]]] = None
    authorize: Optional[Callable[[Dict[str, Any]], Awaitable[Optional[User]]]] = None

    def __post_init__(self):
        if self.type not in VALID_TYPES:
            raise ValueError(f"Provider {self.id}: unknown type '{self.type}'")
        checks = DEFAULT_CHECKS[self.type] if self.checks is None else tuple(self.checks)
        unknown = [c for c in checks if c not in VALID_CHECKS]
        if unknown:
            raise ValueError(f"Provider {self.id}: unknown checks {unknown}")
        object.__setattr__(self, "checks", checks)
        if self.type == "oidc" and not self.issuer:
            raise ValueError(f"Provider {self.id}: an oidc provider must declare its issuer")

    def has_check(self, check: str) -> bool:
        return check in self.checks


# =============================================================================
# Reference descriptors
# =============================================================================

def _github_profile(profile: Dict[str, Any], tokens: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(profile["id"]),
        "name": profile.get("name") or profile.get("login"),
        "email": profile.get("email"),
        "image": profile.get("avatar_url"),
    }


async def _github_userinfo(tokens: Dict[str, Any], provider: Provider, client) -> Dict[str, Any]:
    """Fetch the GitHub user, falling back to /user/emails for a private email."""
    headers = {
        "Authorization": f"Bearer {tokens['access_token']}",
        "Accept": "application/json",
        "User-Agent": "authbroker",
    }
    response = await client.get(provider.userinfo, headers=headers)
    response.raise_for_status()
    profile = response.json()

    if not profile.get("email"):
        emails_response = await client.get(f"{provider.userinfo}/emails", headers=headers)
        if emails_response.is_success:
            emails = emails_response.json()
            if emails:
                primary = next((e for e in emails if e.get("primary")), emails[0])
                profile["email"] = primary.get("email")

    return profile


def github(client_id: str, client_secret: str, **overrides: Any) -> Provider:
    values = dict(
        id="github",
        name="GitHub",
        type="oauth",
        client_id=client_id,
        client_secret=client_secret,
        authorization="https://github.com/login/oauth/authorize",
        authorization_params={"scope": "read:user user:email"},
        token="https://github.com/login/oauth/access_token",
        userinfo="https://api.github.com/user",
        profile=_github_profile,
        userinfo_request=_github_userinfo,
    )
    values.update(overrides)
    return Provider(**values)


def google(client_id: str, client_secret: str, **overrides: Any) -> Provider:
    values = dict(
        id="google",
        name="Google",
        type="oidc",
        client_id=client_id,
        client_secret=client_secret,
        issuer="https://accounts.google.com",
        verified_email=True,
    )
    values.update(overrides)
    return Provider(**values)


def oidc(id: str, name: str, issuer: str, client_id: str, client_secret: Optional[str] = None, **overrides: Any) -> Provider:
    """Generic OpenID Connect provider whose endpoints come from discovery."""
    return Provider(
        id=id,
        name=name,
        type="oidc",
        issuer=issuer,
        client_id=client_id,
        client_secret=client_secret,
        **overrides,
    )


def credentials(authorize: Callable[[Dict[str, Any]], Awaitable[Optional[User]]], id: str = "credentials", name: str = "Credentials") -> Provider:
    return Provider(id=id, name=name, type="credentials", authorize=authorize)
