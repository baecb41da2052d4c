"""
Resolved Options
================

InternalOptions is the single configuration value threaded through every
engine call. It is built once at startup by build_options() from the
environment Settings plus the collaborators the host supplies (providers,
adapter, callbacks, events). Per request, the dispatcher derives a copy bound
to the requested provider with with_provider(); nothing is ever mutated.

Configuration errors (missing secret, database strategy without an adapter,
unknown strategy) are raised here, before any request is served.
"""

import dataclasses
import logging
import secrets
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlsplit

import httpx

from .adapters import Adapter, call_adapter
from .auth.cookies import CookiesOptions, default_cookies
from .config import Settings, providers_from_settings
from .errors import EventError, MissingAdapter, MissingSecret, UnsupportedStrategy
from .models import User
from .providers import Provider

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE = 30 * 24 * 60 * 60  # 30 days
DEFAULT_UPDATE_AGE = 24 * 60 * 60  # 1 day


# =============================================================================
# Callbacks
# =============================================================================

async def default_sign_in(user: User, account: Any, profile: Optional[Dict[str, Any]], **kwargs: Any) -> bool:
    return True


async def default_redirect(url: str, base_url: str) -> str:
    """
    Same-origin redirect policy.

    Relative paths are resolved against base_url, absolute URLs are accepted
    only when they share base_url's origin; anything else falls back to
    base_url.
    """
    if url.startswith("/") and not url.startswith("//"):
        return f"{base_url.rstrip('/')}{url}"

    target = urlsplit(url)
    base = urlsplit(base_url)
    if (target.scheme, target.netloc) == (base.scheme, base.netloc):
        return url
    return base_url


async def default_jwt(token: Dict[str, Any], **kwargs: Any) -> Optional[Dict[str, Any]]:
    return token


async def default_session(session: Dict[str, Any], **kwargs: Any) -> Dict[str, Any]:
    return session


@dataclass(frozen=True)
class Callbacks:
    """User-supplied policy hooks. All of them are coroutines."""

    sign_in: Callable[..., Awaitable[Any]] = default_sign_in
    redirect: Callable[[str, str], Awaitable[str]] = default_redirect
    jwt: Callable[..., Awaitable[Optional[Dict[str, Any]]]] = default_jwt
    session: Callable[..., Awaitable[Dict[str, Any]]] = default_session


@dataclass(frozen=True)
class Events:
    """Fire-and-forget notifications. Failures are logged, never raised."""

    sign_in: Optional[Callable[..., Awaitable[None]]] = None
    sign_out: Optional[Callable[..., Awaitable[None]]] = None
    create_user: Optional[Callable[..., Awaitable[None]]] = None
    link_account: Optional[Callable[..., Awaitable[None]]] = None
    session: Optional[Callable[..., Awaitable[None]]] = None

    async def emit(self, name: str, **message: Any) -> None:
        handler = getattr(self, name)
        if handler is None:
            return
        try:
            await handler(**message)
        except Exception as e:
            error = EventError(f"Event handler {name} failed", cause=e)
            logger.error(f"{error.type}: {error}", exc_info=True, extra={"event": name})


@dataclass(frozen=True)
class Pages:
    """Custom page paths, relative to the base URL. None uses the built-in route."""

    sign_in: Optional[str] = None
    sign_out: Optional[str] = None
    error: Optional[str] = None
    new_user: Optional[str] = None


@dataclass(frozen=True)
class SessionOptions:
    strategy: str = "jwt"
    max_age: int = DEFAULT_MAX_AGE
    update_age: int = DEFAULT_UPDATE_AGE
    generate_session_token: Callable[[], str] = lambda: secrets.token_hex(32)


# =============================================================================
# InternalOptions
# =============================================================================

@dataclass(frozen=True)
class InternalOptions:
    """Immutable, fully resolved configuration for one deployment."""

    url: str
    secret: Tuple[str, ...]
    cookies: CookiesOptions
    session: SessionOptions = field(default_factory=SessionOptions)
    base_path: str = "/auth"
    providers: Tuple[Provider, ...] = ()
    provider: Optional[Provider] = None
    callbacks: Callbacks = field(default_factory=Callbacks)
    events: Events = field(default_factory=Events)
    pages: Pages = field(default_factory=Pages)
    adapter: Optional[Adapter] = None
    jwt_max_age: int = DEFAULT_MAX_AGE
    skip_csrf_check: bool = False
    http_timeout: float = 10.0
    adapter_timeout: Optional[float] = 10.0
    http_transport: Optional[httpx.AsyncBaseTransport] = None

    @property
    def base_url(self) -> str:
        """Origin of the deployment, e.g. https://app.example.com."""
        parts = urlsplit(self.url)
        return f"{parts.scheme}://{parts.netloc}"

    def action_url(self, action: str, provider_id: Optional[str] = None) -> str:
        path = f"{self.base_path}/{action}"
        if provider_id:
            path = f"{path}/{provider_id}"
        return f"{self.base_url}{path}"

    def redirect_uri(self, provider: Provider) -> str:
        return self.action_url("callback", provider.id)

    def get_provider(self, provider_id: Optional[str]) -> Optional[Provider]:
        return next((p for p in self.providers if p.id == provider_id), None)

    def with_provider(self, provider: Optional[Provider]) -> "InternalOptions":
        return dataclasses.replace(self, provider=provider)

    def http_client(self) -> httpx.AsyncClient:
        """Fresh client for one outbound call sequence; never shared across requests."""
        return httpx.AsyncClient(timeout=self.http_timeout, transport=self.http_transport)

    async def adapter_call(self, method: str, *args: Any) -> Any:
        """Call an adapter method under the configured adapter timeout."""
        return await call_adapter(self.adapter, method, *args, timeout=self.adapter_timeout)


def build_options(
    settings: Settings,
    providers: Optional[List[Provider]] = None,
    adapter: Optional[Adapter] = None,
    callbacks: Optional[Callbacks] = None,
    events: Optional[Events] = None,
    http_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> InternalOptions:
    """
    Resolve Settings and host collaborators into InternalOptions.

    Args:
        settings: Environment configuration
        providers: Provider descriptors; defaults to the ones configured by env
        adapter: Storage adapter (required for the database strategy)
        callbacks: Policy callbacks; defaults are same-origin redirect etc.
        events: Event hooks
        http_transport: Optional httpx transport for outbound calls

    Returns:
        InternalOptions ready to serve requests

    Raises:
        MissingSecret: If no secret is configured
        UnsupportedStrategy: If the session strategy is unknown
        MissingAdapter: If the database strategy is used without an adapter
    """
    secret = tuple(settings.secrets_list)
    if not secret:
        raise MissingSecret("AUTH_SECRET must be set before serving requests")

    strategy = settings.AUTH_SESSION_STRATEGY
    if strategy is None:
        strategy = "database" if adapter is not None else "jwt"
    if strategy not in ("jwt", "database"):
        raise UnsupportedStrategy(f"Unsupported session strategy: {strategy}")
    if strategy == "database" and adapter is None:
        raise MissingAdapter("The database session strategy requires an adapter")

    if providers is None:
        providers = providers_from_settings(settings)

    ids = [p.id for p in providers]
    if len(ids) != len(set(ids)):
        logger.warning("Duplicate provider ids configured", extra={"providers": ids})

    if strategy == "database" and any(p.type == "credentials" for p in providers):
        raise UnsupportedStrategy("Credentials providers require the jwt session strategy")

    use_secure_cookies = settings.AUTH_USE_SECURE_COOKIES
    if use_secure_cookies is None:
        use_secure_cookies = settings.AUTH_URL.startswith("https://")

    options = InternalOptions(
        url=settings.AUTH_URL,
        secret=secret,
        cookies=default_cookies(use_secure_cookies),
        session=SessionOptions(
            strategy=strategy,
            max_age=settings.AUTH_SESSION_MAX_AGE,
            update_age=settings.AUTH_SESSION_UPDATE_AGE,
        ),
        base_path=settings.AUTH_BASE_PATH.rstrip("/"),
        providers=tuple(providers),
        callbacks=callbacks or Callbacks(),
        events=events or Events(),
        pages=Pages(
            sign_in=settings.AUTH_PAGES_SIGNIN,
            sign_out=settings.AUTH_PAGES_SIGNOUT,
            error=settings.AUTH_PAGES_ERROR,
            new_user=settings.AUTH_PAGES_NEW_USER,
        ),
        adapter=adapter,
        jwt_max_age=settings.AUTH_SESSION_MAX_AGE,
        skip_csrf_check=settings.AUTH_SKIP_CSRF_CHECK,
        http_timeout=settings.AUTH_HTTP_TIMEOUT_SECONDS,
        adapter_timeout=settings.AUTH_ADAPTER_TIMEOUT_SECONDS,
        http_transport=http_transport,
    )

    logger.info(
        "Auth options resolved",
        extra={
            "session_strategy": strategy,
            "providers": ids,
            "secure_cookies": use_secure_cookies,
            "secret_count": len(secret),
        },
    )
    return options
