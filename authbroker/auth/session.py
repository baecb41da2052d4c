"""
Session Issuer
==============

Creates, reads, refreshes and revokes login sessions for both strategies:

- jwt: the session is a signed token (see tokens.py) stored in the session
  cookie. Nothing is persisted, so its integrity comes entirely from the
  signature. Sign-out only clears the cookie.
- database: the cookie holds an opaque random token. The authoritative
  record lives in the storage adapter and is looked up on every request.
  Its expiry rolls forward once update_age has passed since the last
  extension.

Host routes authenticate a request with authenticate(), which reads the
session cookie or a Bearer header without refreshing anything.

Signing/verification is HMAC and runs inline; adapter calls go through
InternalOptions.adapter_call() and its timeout.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from ..errors import AuthError, InvalidSession, SessionExpired, SignOutError
from ..models import Account, AdapterSession, Cookie, Session, SessionUser, User
from ..options import InternalOptions
from . import tokens
from .cookies import SessionStore, clear

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SignOutResult:
    """Outcome of a sign-out. The cookies are always applied, even with an error."""

    cookies: List[Cookie] = field(default_factory=list)
    error: Optional[SignOutError] = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def session_needs_refresh(expires: datetime, options: InternalOptions, now: Optional[datetime] = None) -> bool:
    """
    True once update_age has elapsed since the expiry was last set.

    The expiry was last set to (then + max_age), so the record is due when
    expires - max_age + update_age <= now.
    """
    now = now or _now()
    due = _as_utc(expires) - timedelta(seconds=options.session.max_age) + timedelta(seconds=options.session.update_age)
    return due <= now


def _session_body(name: Optional[str], email: Optional[str], image: Optional[str], expires: datetime) -> Dict[str, Any]:
    return Session(
        user=SessionUser(name=name, email=email, image=image),
        expires=expires.isoformat(),
    ).model_dump()


# =============================================================================
# Issue
# =============================================================================

async def issue_session(
    user: User,
    account: Optional[Account],
    profile: Optional[Dict[str, Any]],
    is_new_user: bool,
    session_store: SessionStore,
    options: InternalOptions,
) -> List[Cookie]:
    """
    Issue a session for a user that just signed in.

    Args:
        user: Reconciled user
        account: The account used to sign in
        profile: Raw provider profile (None for credentials)
        is_new_user: Whether the user was created by this sign-in
        session_store: Session cookie store for the request
        options: Resolved options

    Returns:
        Cookies carrying the new session (chunked if needed)

    Raises:
        AdapterError: If the database session cannot be stored
    """
    if options.session.strategy == "jwt":
        default_token = {
            "name": user.name,
            "email": user.email,
            "picture": user.image,
            "sub": user.id,
        }
        token = await options.callbacks.jwt(
            token=default_token,
            user=user,
            account=account,
            profile=profile,
            is_new_user=is_new_user,
            trigger="signUp" if is_new_user else "signIn",
        )
        if token is None:
            logger.info("jwt callback returned no token; session not issued")
            return session_store.clean()

        expires = _now() + timedelta(seconds=options.jwt_max_age)
        encoded = tokens.encode(
            token, options.secret, salt=options.cookies.session_token.name, max_age=options.jwt_max_age
        )
        logger.info("Issued jwt session", extra={"user_id": user.id})
        return session_store.chunk(encoded, expires=expires)

    session_token = options.session.generate_session_token()
    expires = _now() + timedelta(seconds=options.session.max_age)
    await options.adapter_call("create_session", session_token, user.id, expires)
    logger.info("Issued database session", extra={"user_id": user.id})
    return session_store.chunk(session_token, expires=expires)


# =============================================================================
# Read / refresh
# =============================================================================

async def load_database_session(session_token: str, options: InternalOptions) -> Tuple[AdapterSession, User]:
    """
    Look up a database session and enforce its expiry.

    Raises:
        SessionExpired: If the record is missing or expired (expired records
            are deleted)
        AdapterError: If a storage call fails
    """
    found = await options.adapter_call("get_session_and_user", session_token)
    if not found:
        raise SessionExpired("No session record for this token")

    record, user = found
    if _as_utc(record.expires) <= _now():
        await options.adapter_call("delete_session", session_token)
        raise SessionExpired("Session record has expired")
    return record, user


async def get_session(
    session_store: SessionStore,
    options: InternalOptions,
    is_update: bool = False,
    new_data: Optional[Dict[str, Any]] = None,
) -> Tuple[Optional[Dict[str, Any]], List[Cookie]]:
    """
    Resolve the current session for the session action.

    An invalid or expired session yields no body and clears the cookie.

    Args:
        session_store: Session cookie store for the request
        options: Resolved options
        is_update: The client asked to update the session (POST)
        new_data: Client-supplied data passed to the callbacks on update

    Returns:
        (session body or None, cookies to set)

    Raises:
        AdapterError: If a storage call fails
    """
    try:
        session_token = session_store.value
        if not session_token:
            return None, []

        if options.session.strategy == "jwt":
            return await _get_jwt_session(session_token, session_store, options, is_update, new_data)
        return await _get_database_session(session_token, session_store, options, is_update, new_data)
    except (InvalidSession, SessionExpired) as e:
        logger.info(f"Session rejected: {e.type}", extra={"error": e.type})
        return None, session_store.clean()


async def _get_jwt_session(
    session_token: str,
    session_store: SessionStore,
    options: InternalOptions,
    is_update: bool,
    new_data: Optional[Dict[str, Any]],
) -> Tuple[Optional[Dict[str, Any]], List[Cookie]]:
    payload = tokens.decode(session_token, options.secret, salt=options.cookies.session_token.name)

    token = await options.callbacks.jwt(
        token=payload,
        session=new_data if is_update else None,
        trigger="update" if is_update else None,
    )
    if token is None:
        return None, session_store.clean()

    expires = _now() + timedelta(seconds=options.jwt_max_age)
    session = _session_body(token.get("name"), token.get("email"), token.get("picture"), expires)
    body = await options.callbacks.session(session=session, token=token)

    encoded = tokens.encode(
        token, options.secret, salt=options.cookies.session_token.name, max_age=options.jwt_max_age
    )
    await options.events.emit("session", session=body, token=token)
    return body, session_store.chunk(encoded, expires=expires)


async def _get_database_session(
    session_token: str,
    session_store: SessionStore,
    options: InternalOptions,
    is_update: bool,
    new_data: Optional[Dict[str, Any]],
) -> Tuple[Optional[Dict[str, Any]], List[Cookie]]:
    record, user = await load_database_session(session_token, options)

    expires = _as_utc(record.expires)
    if session_needs_refresh(expires, options):
        expires = _now() + timedelta(seconds=options.session.max_age)
        await options.adapter_call("update_session", session_token, expires)
        logger.debug("Extended database session", extra={"user_id": user.id})

    session = _session_body(user.name, user.email, user.image, expires)
    body = await options.callbacks.session(
        session=session,
        user=user,
        new_session=new_data if is_update else None,
        trigger="update" if is_update else None,
    )
    await options.events.emit("session", session=body)
    return body, session_store.chunk(session_token, expires=expires)


# =============================================================================
# Sign-out
# =============================================================================

async def sign_out(session_store: SessionStore, options: InternalOptions) -> SignOutResult:
    """
    Revoke the current session.

    For jwt the token is decoded only to pass it to the sign_out event. For
    database the record is deleted. Either way the session cookie is cleared;
    a decode or delete failure is returned, not raised.
    """
    error = None
    try:
        session_token = session_store.value
        if session_token:
            if options.session.strategy == "jwt":
                payload = tokens.decode(
                    session_token, options.secret, salt=options.cookies.session_token.name
                )
                await options.events.emit("sign_out", token=payload)
            else:
                deleted = await options.adapter_call("delete_session", session_token)
                await options.events.emit("sign_out", session=deleted)
    except AuthError as e:
        error = SignOutError(f"Sign-out could not revoke the session: {e.type}", cause=e)
        logger.error(f"{error.type}: {error}", extra={"error": e.type})

    cookies = session_store.clean() or [clear(options.cookies.session_token)]
    return SignOutResult(cookies=cookies, error=error)


# =============================================================================
# Request authentication
# =============================================================================

def _bearer_token(headers: Dict[str, str]) -> Optional[str]:
    authorization = next((v for k, v in headers.items() if k.lower() == "authorization"), None)
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


def read_session_token(cookies: Dict[str, str], headers: Dict[str, str], options: InternalOptions) -> Optional[str]:
    """
    Raw session value from the (possibly chunked) session cookie, falling
    back to an "Authorization: Bearer <token>" header.
    """
    try:
        value = SessionStore(options.cookies.session_token, cookies).value
    except InvalidSession as e:
        logger.debug(f"Ignoring incomplete session cookie: {e}")
        value = ""
    return value or _bearer_token(headers)


def get_token(cookies: Dict[str, str], headers: Dict[str, str], options: InternalOptions) -> Optional[Dict[str, Any]]:
    """
    Decode the jwt session carried by a request.

    Returns:
        The session token claims, or None when the request has no valid token
    """
    raw = read_session_token(cookies, headers, options)
    if not raw:
        return None
    try:
        return tokens.decode(raw, options.secret, salt=options.cookies.session_token.name)
    except InvalidSession as e:
        logger.info(f"Session token rejected: {e}")
        return None


async def authenticate(
    cookies: Dict[str, str], headers: Dict[str, str], options: InternalOptions
) -> Optional[Dict[str, Any]]:
    """
    Resolve the signed-in user for a request outside the auth actions.

    Nothing is refreshed or re-issued here; the session action owns that.

    Returns:
        jwt: the decoded token claims. database: {sub, name, email, picture,
        expires} from the stored user. None when there is no valid session.

    Raises:
        AdapterError: If a storage call fails
    """
    if options.session.strategy == "jwt":
        return get_token(cookies, headers, options)

    raw = read_session_token(cookies, headers, options)
    if not raw:
        return None
    try:
        record, user = await load_database_session(raw, options)
    except SessionExpired as e:
        logger.info(f"Session rejected: {e.type}")
        return None
    return {
        "sub": user.id,
        "name": user.name,
        "email": user.email,
        "picture": user.image,
        "expires": _as_utc(record.expires).isoformat(),
    }
