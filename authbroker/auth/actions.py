"""
Action Dispatcher
=================

Routes a framework-independent RequestInternal to the handler for its
(method, action, provider) and assembles a ResponseInternal: status, cookies,
headers, redirect and body. The HTTP boundary renders that response without
knowing which action produced it.

Supported actions:
    GET  providers, session, csrf, signin, signout, callback, error
    POST signin, signout, callback, session

CSRF is enforced before POST signin, signout, session and the credentials
callback, unless skip_csrf_check is set. auth() is the error boundary: engine
errors become a redirect to the sign-in or error page with a coarse error
code, never the internal message.
"""

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from ..errors import (
    AccessDenied,
    AuthError,
    CredentialsSignin,
    InvalidProvider,
    InvalidSession,
    UnknownAction,
    is_client_error,
)
from ..models import Account, Cookie, RequestInternal, ResponseInternal, User
from ..options import InternalOptions
from .callback import handle_oauth_callback
from .callback_url import create_callback_url
from .cookies import SessionStore, clear
from .csrf import create_csrf_token, validate_csrf
from .identity import handle_login
from .session import get_session, issue_session, sign_out
from .signin import get_authorization_url

logger = logging.getLogger(__name__)

RETURN_REDIRECT_HEADER = "x-auth-return-redirect"

GET_ACTIONS = frozenset({"providers", "session", "csrf", "signin", "signout", "callback", "error"})
POST_ACTIONS = frozenset({"signin", "signout", "callback", "session"})

# Form fields consumed by the engine itself, never forwarded to authorize().
RESERVED_FIELDS = frozenset({"csrfToken", "callbackUrl", "json"})


# =============================================================================
# Helpers
# =============================================================================

def page_url(options: InternalOptions, page: Optional[str], fallback_action: str) -> str:
    """Absolute URL of a custom page, or of the built-in action."""
    if not page:
        return options.action_url(fallback_action)
    if page.startswith("/"):
        return f"{options.base_url}{page}"
    return page


def _with_params(url: str, params: Dict[str, str]) -> str:
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{urlencode(params)}"


def _text_field(value: Any) -> Optional[str]:
    """Body fields read by the engine must be strings; JSON numbers, lists and objects are ignored."""
    return value if isinstance(value, str) else None


def _header(request: RequestInternal, name: str) -> Optional[str]:
    for key, value in request.headers.items():
        if key.lower() == name:
            return value
    return None


def _finalize(response: ResponseInternal, request: RequestInternal) -> ResponseInternal:
    """Turn a redirect into {"url": ...} JSON when the client asks for it."""
    if response.redirect and _header(request, RETURN_REDIRECT_HEADER):
        return response.model_copy(
            update={"status": 200, "body": {"url": response.redirect}, "redirect": None}
        )
    return response


def _current_session_token(session_store: SessionStore) -> Optional[str]:
    try:
        return session_store.value or None
    except InvalidSession as e:
        logger.debug(f"Ignoring incomplete session cookie: {e}")
        return None


def _providers_body(options: InternalOptions) -> Dict[str, Any]:
    return {
        p.id: {
            "id": p.id,
            "name": p.name,
            "type": p.type,
            "signinUrl": options.action_url("signin", p.id),
            "callbackUrl": options.redirect_uri(p),
        }
        for p in options.providers
    }


async def _authorize_sign_in(
    user: User,
    account: Optional[Account],
    profile: Optional[Dict[str, Any]],
    credentials: Optional[Dict[str, Any]],
    options: InternalOptions,
) -> Optional[str]:
    """
    Run the sign_in callback.

    Returns:
        A redirect URL if the callback returned one, else None

    Raises:
        AccessDenied: If the callback refused the sign-in
    """
    allowed = await options.callbacks.sign_in(
        user=user, account=account, profile=profile, credentials=credentials
    )
    if isinstance(allowed, str):
        return allowed
    if not allowed:
        logger.info("sign_in callback refused the user", extra={"user_id": user.id})
        raise AccessDenied("The sign_in callback returned false")
    return None


# =============================================================================
# Callback handlers
# =============================================================================

async def _oauth_callback(
    request: RequestInternal,
    params: Dict[str, Any],
    callback_url: str,
    session_store: SessionStore,
    cookies: List[Cookie],
    options: InternalOptions,
) -> ResponseInternal:
    result = await handle_oauth_callback(
        {k: str(v) for k, v in params.items()}, request.cookies, options
    )
    cookies.extend(result.cookies)

    policy_user = result.user
    if options.adapter is not None:
        linked = await options.adapter_call(
            "get_user_by_account", result.account.provider, result.account.provider_account_id
        )
        policy_user = linked or result.user

    override = await _authorize_sign_in(policy_user, result.account, result.profile, None, options)
    if override:
        return ResponseInternal(redirect=override, cookies=cookies)

    user, account, is_new_user = await handle_login(
        _current_session_token(session_store), result.user, result.account, options
    )
    cookies.extend(
        await issue_session(user, account, result.profile, is_new_user, session_store, options)
    )
    await options.events.emit(
        "sign_in", user=user, account=account, profile=result.profile, is_new_user=is_new_user
    )

    destination = result.callback_url or callback_url
    if is_new_user and options.pages.new_user:
        new_user_page = page_url(options, options.pages.new_user, "signin")
        return ResponseInternal(
            redirect=_with_params(new_user_page, {"callbackUrl": destination}),
            cookies=cookies,
        )
    return ResponseInternal(redirect=destination, cookies=cookies)


async def _credentials_callback(
    request: RequestInternal,
    callback_url: str,
    session_store: SessionStore,
    cookies: List[Cookie],
    options: InternalOptions,
) -> ResponseInternal:
    provider = options.provider
    credentials = {k: v for k, v in request.body.items() if k not in RESERVED_FIELDS}

    try:
        user = await provider.authorize(credentials)
    except AuthError:
        raise
    except Exception as e:
        logger.error(f"authorize() raised for {provider.id}: {e}", exc_info=True)
        raise CredentialsSignin("authorize() raised an exception", cause=e) from e

    if not user:
        raise CredentialsSignin("authorize() returned no user")

    account = Account(provider=provider.id, type=provider.type, provider_account_id=user.id)

    override = await _authorize_sign_in(user, account, None, credentials, options)
    if override:
        return ResponseInternal(redirect=override, cookies=cookies)

    cookies.extend(await issue_session(user, account, None, False, session_store, options))
    await options.events.emit("sign_in", user=user, account=account, profile=None, is_new_user=False)
    return ResponseInternal(redirect=callback_url, cookies=cookies)


# =============================================================================
# Dispatcher
# =============================================================================

def _require_provider(options: InternalOptions, provider_id: Optional[str]) -> InternalOptions:
    provider = options.get_provider(provider_id)
    if provider is None:
        raise InvalidProvider(f"Unknown provider: {provider_id}")
    return options.with_provider(provider)


async def handle_auth(request: RequestInternal, options: InternalOptions) -> ResponseInternal:
    """
    Dispatch one auth request.

    Args:
        request: Framework-independent request
        options: Resolved options

    Returns:
        ResponseInternal for the boundary to render

    Raises:
        AuthError: Any engine failure; see auth() for the error boundary
    """
    action = request.action
    is_post = request.method == "POST"

    allowed = POST_ACTIONS if is_post else GET_ACTIONS
    if action not in allowed:
        raise UnknownAction(f"Unsupported action: {request.method} {action}")

    cookies: List[Cookie] = []

    csrf = create_csrf_token(
        options,
        request.cookies.get(options.cookies.csrf_token.name),
        is_post,
        _text_field(request.body.get("csrfToken")),
    )
    if csrf.cookie:
        cookies.append(
            Cookie(
                name=options.cookies.csrf_token.name,
                value=csrf.cookie,
                options=options.cookies.csrf_token.options,
            )
        )

    def enforce_csrf() -> None:
        if not options.skip_csrf_check:
            validate_csrf(action, csrf.verified)

    callback_param = _text_field(request.body.get("callbackUrl") if is_post else request.query.get("callbackUrl"))
    callback_url, callback_cookie = await create_callback_url(
        options, callback_param, request.cookies.get(options.cookies.callback_url.name)
    )
    if callback_cookie:
        cookies.append(
            Cookie(
                name=options.cookies.callback_url.name,
                value=callback_cookie,
                options=options.cookies.callback_url.options,
            )
        )

    session_store = SessionStore(options.cookies.session_token, request.cookies)

    if not is_post:
        if action == "providers":
            return ResponseInternal(body=_providers_body(options), cookies=cookies)

        if action == "session":
            body, session_cookies = await get_session(session_store, options)
            cookies.extend(session_cookies)
            return ResponseInternal(body=body, cookies=cookies)

        if action == "csrf":
            return ResponseInternal(body={"csrfToken": csrf.token}, cookies=cookies)

        if action == "signin":
            if options.pages.sign_in:
                target = page_url(options, options.pages.sign_in, "signin")
                return ResponseInternal(
                    redirect=_with_params(target, {"callbackUrl": callback_url}), cookies=cookies
                )
            body = {
                "csrfToken": csrf.token,
                "callbackUrl": callback_url,
                "providers": list(_providers_body(options).values()),
            }
            if request.query.get("error"):
                body["error"] = request.query["error"]
            return ResponseInternal(body=body, cookies=cookies)

        if action == "signout":
            if options.pages.sign_out:
                return ResponseInternal(
                    redirect=page_url(options, options.pages.sign_out, "signout"), cookies=cookies
                )
            return ResponseInternal(body={"csrfToken": csrf.token}, cookies=cookies)

        if action == "callback":
            options = _require_provider(options, request.provider_id)
            if options.provider.type == "credentials":
                raise InvalidProvider("Credentials sign-in must be POSTed to the callback")
            return await _oauth_callback(request, request.query, callback_url, session_store, cookies, options)

        # error
        if options.pages.error:
            target = page_url(options, options.pages.error, "error")
            return ResponseInternal(redirect=_with_params(target, dict(request.query)), cookies=cookies)
        return ResponseInternal(body={"error": request.query.get("error", "Default")}, cookies=cookies)

    if action == "signin":
        enforce_csrf()
        options = _require_provider(options, request.provider_id)
        if options.provider.type == "credentials":
            raise InvalidProvider("Credentials providers sign in through the callback action")
        params = {k: v for k, v in request.query.items() if k != "callbackUrl"}
        url, check_cookies = await get_authorization_url(options, callback_url, params)
        cookies.extend(check_cookies)
        return ResponseInternal(redirect=url, cookies=cookies)

    if action == "signout":
        enforce_csrf()
        result = await sign_out(session_store, options)
        cookies.extend(result.cookies)
        return ResponseInternal(redirect=callback_url, cookies=cookies)

    if action == "callback":
        options = _require_provider(options, request.provider_id)
        if options.provider.type == "credentials":
            enforce_csrf()
            return await _credentials_callback(request, callback_url, session_store, cookies, options)
        return await _oauth_callback(request, request.body, callback_url, session_store, cookies, options)

    # session update
    enforce_csrf()
    body, session_cookies = await get_session(
        session_store, options, is_update=True, new_data=request.body.get("data")
    )
    cookies.extend(session_cookies)
    return ResponseInternal(body=body, cookies=cookies)


async def auth(request: RequestInternal, options: InternalOptions) -> ResponseInternal:
    """
    Dispatch a request and convert engine errors into error responses.

    Client-safe sign-in errors redirect to the sign-in page, everything else
    to the error page; codes outside the client-safe set are reported as
    "Configuration". A failed callback also clears the check cookies.
    """
    try:
        return _finalize(await handle_auth(request, options), request)
    except UnknownAction as e:
        logger.warning(str(e))
        return ResponseInternal(status=400, body={"error": e.type})
    except AuthError as e:
        client_safe = is_client_error(e)
        log = logger.warning if client_safe else logger.error
        log(
            f"{e.type}: {e}",
            extra={"action": request.action, "provider": request.provider_id, "error": e.type},
        )

        if request.method == "POST" and request.action == "session":
            return ResponseInternal(status=400)

        cookies: List[Cookie] = []
        if request.action == "callback":
            cookies = [
                clear(options.cookies.state),
                clear(options.cookies.nonce),
                clear(options.cookies.pkce_code_verifier),
            ]

        params = {"error": e.type if client_safe else "Configuration"}
        if client_safe and e.kind == "signIn":
            target = page_url(options, options.pages.sign_in, "signin")
            if isinstance(e, CredentialsSignin):
                params["code"] = e.code
        else:
            target = page_url(options, options.pages.error, "error")

        return _finalize(
            ResponseInternal(redirect=_with_params(target, params), cookies=cookies),
            request,
        )
