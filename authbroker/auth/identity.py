"""
Identity Normalizer
===================

Turns a provider's raw profile into the canonical User/Account pair, then
reconciles it with storage: find the user by linked account, link a new
account to the signed-in user, or create a user.

An email address that already belongs to an existing user is never merged
into a new account silently. Unless the provider guarantees verified email
addresses (Provider.verified_email), the login fails with AccountNotLinked.
"""

import logging
import time
from typing import Any, Dict, Optional, Tuple

from ..errors import AccountNotLinked, InvalidSession, OAuthProfileParseError
from ..models import Account, User
from ..options import InternalOptions
from ..providers import Provider
from . import tokens as token_codec

logger = logging.getLogger(__name__)


def _expires_at(tokens: Dict[str, Any]) -> Optional[int]:
    if tokens.get("expires_at"):
        return int(tokens["expires_at"])
    if tokens.get("expires_in"):
        return int(time.time()) + int(tokens["expires_in"])
    return None


def normalize_profile(provider: Provider, raw_profile: Dict[str, Any], tokens: Dict[str, Any]) -> Tuple[User, Account]:
    """
    Apply the provider's profile() mapping.

    Args:
        provider: Provider descriptor
        raw_profile: Userinfo response or ID token claims
        tokens: Token endpoint response

    Returns:
        (User, Account) keyed by the provider's account id

    Raises:
        OAuthProfileParseError: If profile() fails or yields no id
    """
    try:
        profile = provider.profile(raw_profile, tokens)
    except Exception as e:
        logger.error(f"profile() mapping failed for {provider.id}: {e}")
        raise OAuthProfileParseError(f"Could not map the {provider.id} profile", cause=e) from e

    if not profile or profile.get("id") in (None, ""):
        raise OAuthProfileParseError(f"The {provider.id} profile did not contain an id")

    account_id = str(profile["id"])
    email = profile.get("email")

    user = User(
        id=account_id,
        name=profile.get("name"),
        email=email.lower() if email else None,
        image=profile.get("image"),
    )
    account = Account(
        provider=provider.id,
        type=provider.type,
        provider_account_id=account_id,
        access_token=tokens.get("access_token"),
        refresh_token=tokens.get("refresh_token"),
        id_token=tokens.get("id_token"),
        expires_at=_expires_at(tokens),
        token_type=tokens.get("token_type"),
        scope=tokens.get("scope"),
    )
    return user, account


async def _signed_in_user(session_token: Optional[str], options: InternalOptions) -> Optional[User]:
    """The user behind the request's existing session, if it is still valid."""
    if not session_token:
        return None

    if options.session.strategy == "jwt":
        try:
            claims = token_codec.decode(
                session_token, options.secret, salt=options.cookies.session_token.name
            )
        except InvalidSession as e:
            logger.debug(f"Ignoring unreadable session during login: {e}")
            return None
        if not claims.get("sub"):
            return None
        return await options.adapter_call("get_user", claims["sub"])

    found = await options.adapter_call("get_session_and_user", session_token)
    if not found:
        return None
    return found[1]


async def handle_login(
    session_token: Optional[str],
    user: User,
    account: Account,
    options: InternalOptions,
) -> Tuple[User, Account, bool]:
    """
    Reconcile a freshly authenticated identity with storage.

    Rules, in order:
    1. Account already linked: sign in as its user. If someone else is
       signed in, fail with AccountNotLinked.
    2. Someone is signed in: link the new account to them.
    3. Email matches an existing user: link only if the provider verifies
       emails, otherwise fail with AccountNotLinked.
    4. Otherwise create the user and link the account.

    Without an adapter the normalized profile is the user.

    Args:
        session_token: Current session token, if the browser has one
        user: Normalized user from the provider
        account: Normalized account from the provider
        options: Options bound to the provider

    Returns:
        (user, account, is_new_user)

    Raises:
        AccountNotLinked: If linking would merge identities unsafely
        AdapterError: If a storage call fails
    """
    if options.adapter is None:
        return user, account, False

    provider = options.provider
    signed_in = await _signed_in_user(session_token, options)

    linked_user = await options.adapter_call(
        "get_user_by_account", account.provider, account.provider_account_id
    )

    if linked_user:
        if signed_in and signed_in.id != linked_user.id:
            logger.warning(
                "Account is linked to a different user than the one signed in",
                extra={"provider": account.provider},
            )
            raise AccountNotLinked("The account is already associated with another user")
        return linked_user, account.model_copy(update={"user_id": linked_user.id}), False

    if signed_in:
        linked = account.model_copy(update={"user_id": signed_in.id})
        await options.adapter_call("link_account", linked)
        await options.events.emit("link_account", user=signed_in, account=linked, profile=user)
        logger.info("Linked account to signed-in user", extra={"provider": account.provider})
        return signed_in, linked, False

    existing = None
    if user.email:
        existing = await options.adapter_call("get_user_by_email", user.email)

    if existing:
        if not provider.verified_email:
            logger.warning(
                "Email belongs to an existing user and the provider does not verify emails",
                extra={"provider": account.provider},
            )
            raise AccountNotLinked(
                "Another account already exists with the same email address"
            )
        target, is_new_user = existing, False
    else:
        target = await options.adapter_call("create_user", user.model_copy(update={"email_verified": None}))
        await options.events.emit("create_user", user=target)
        is_new_user = True

    linked = account.model_copy(update={"user_id": target.id})
    await options.adapter_call("link_account", linked)
    await options.events.emit("link_account", user=target, account=linked, profile=user)

    logger.info(
        "Login reconciled",
        extra={"provider": account.provider, "new_user": is_new_user},
    )
    return target, linked, is_new_user
