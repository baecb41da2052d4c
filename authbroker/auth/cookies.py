"""
Cookie Codec
============

Default cookie names and options, signed (sealed) cookies for the
single-use OAuth check values, and the chunked session cookie store.

Cookie names follow the authjs.* convention. When secure cookies are on,
names get the __Secure- prefix (the CSRF cookie gets the stricter __Host-
prefix) so browsers refuse them over plain HTTP.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from ..errors import InvalidCheck, InvalidSession
from ..models import Cookie, CookieOption, CookieOptions
from . import tokens

logger = logging.getLogger(__name__)

CHECK_COOKIE_TTL = 60 * 15  # 15 minutes

ALLOWED_COOKIE_SIZE = 4096
ESTIMATED_EMPTY_COOKIE_SIZE = 160
CHUNK_SIZE = ALLOWED_COOKIE_SIZE - ESTIMATED_EMPTY_COOKIE_SIZE


@dataclass(frozen=True)
class CookiesOptions:
    session_token: CookieOption
    callback_url: CookieOption
    csrf_token: CookieOption
    pkce_code_verifier: CookieOption
    state: CookieOption
    nonce: CookieOption


def default_cookies(use_secure_cookies: bool) -> CookiesOptions:
    """
    Build the default cookie set.

    Args:
        use_secure_cookies: Mark cookies secure and add the secure name prefixes

    Returns:
        CookiesOptions with every cookie the engine reads or writes
    """
    prefix = "__Secure-" if use_secure_cookies else ""

    def option(name: str, max_age: Optional[int] = None) -> CookieOption:
        return CookieOption(
            name=name,
            options=CookieOptions(
                http_only=True,
                same_site="lax",
                path="/",
                secure=use_secure_cookies,
                max_age=max_age,
            ),
        )

    return CookiesOptions(
        session_token=option(f"{prefix}authjs.session-token"),
        callback_url=option(f"{prefix}authjs.callback-url"),
        csrf_token=option(f"{'__Host-' if use_secure_cookies else ''}authjs.csrf-token"),
        pkce_code_verifier=option(f"{prefix}authjs.pkce.code_verifier", CHECK_COOKIE_TTL),
        state=option(f"{prefix}authjs.state", CHECK_COOKIE_TTL),
        nonce=option(f"{prefix}authjs.nonce", CHECK_COOKIE_TTL),
    )


# =============================================================================
# Sealed cookies
# =============================================================================

def seal(cookie: CookieOption, value: str, secret, ttl: int = CHECK_COOKIE_TTL) -> Cookie:
    """
    Seal a value into a short-lived signed cookie.

    The cookie name is the signing salt, so a value sealed for one cookie
    cannot be replayed as another.
    """
    expires = datetime.now(timezone.utc) + timedelta(seconds=ttl)
    logger.debug(f"Sealing cookie {cookie.name}", extra={"cookie": cookie.name, "ttl": ttl})

    encoded = tokens.encode({"value": value}, secret, salt=cookie.name, max_age=ttl)
    options = cookie.options.model_copy(update={"expires": expires})
    return Cookie(name=cookie.name, value=encoded, options=options)


def unseal(cookie: CookieOption, value: Optional[str], secret) -> str:
    """
    Open a sealed cookie value.

    Raises:
        InvalidCheck: If the cookie is missing, expired or its signature fails
    """
    if not value:
        raise InvalidCheck(f"{cookie.name} cookie was missing")
    try:
        payload = tokens.decode(value, secret, salt=cookie.name)
    except InvalidSession as e:
        raise InvalidCheck(f"{cookie.name} value could not be parsed", cause=e) from e

    sealed = payload.get("value")
    if not sealed:
        raise InvalidCheck(f"{cookie.name} value was empty")
    return sealed


def clear(cookie: CookieOption) -> Cookie:
    """Cookie that deletes `cookie` on the client."""
    options = cookie.options.model_copy(update={"max_age": 0, "expires": None})
    return Cookie(name=cookie.name, value="", options=options)


# =============================================================================
# Chunked session cookie
# =============================================================================

class SessionStore:
    """
    Reads and writes the session cookie, splitting values that exceed the
    browser cookie size limit into numbered parts (name.0, name.1, ...).
    """

    def __init__(self, option: CookieOption, cookies: Optional[Dict[str, str]]):
        self._option = option
        self._chunks: Dict[str, str] = {}
        self._pattern = re.compile(rf"^{re.escape(option.name)}(?:\.(\d+))?$")

        for name, value in (cookies or {}).items():
            if value and self._pattern.match(name):
                self._chunks[name] = value

    @property
    def value(self) -> str:
        """
        The session value reassembled from its parts, or "" when absent.

        Raises:
            InvalidSession: If the parts are numbered but one is missing
        """
        numbered = {}
        for name, chunk in self._chunks.items():
            index = self._pattern.match(name).group(1)
            if index is not None:
                numbered[int(index)] = chunk

        if not numbered:
            return self._chunks.get(self._option.name, "")

        expected = list(range(len(numbered)))
        if sorted(numbered) != expected:
            raise InvalidSession(
                f"Session cookie parts are incomplete: found {sorted(numbered)}"
            )
        return "".join(numbered[i] for i in expected)

    def _chunk(self, cookie: Cookie) -> List[Cookie]:
        chunk_count = max(1, -(-len(cookie.value) // CHUNK_SIZE))

        if chunk_count == 1:
            self._chunks[cookie.name] = cookie.value
            return [cookie]

        cookies = []
        for i in range(chunk_count):
            name = f"{cookie.name}.{i}"
            value = cookie.value[i * CHUNK_SIZE:(i + 1) * CHUNK_SIZE]
            cookies.append(Cookie(name=name, value=value, options=cookie.options))
            self._chunks[name] = value

        logger.debug(
            "Chunking session cookie",
            extra={
                "allowed_size": ALLOWED_COOKIE_SIZE,
                "value_size": len(cookie.value),
                "chunks": chunk_count,
            },
        )
        return cookies

    def _clean(self) -> Dict[str, Cookie]:
        cleaned = {}
        for name in list(self._chunks):
            del self._chunks[name]
            options = self._option.options.model_copy(update={"max_age": 0, "expires": None})
            cleaned[name] = Cookie(name=name, value="", options=options)
        return cleaned

    def chunk(self, value: str, **options) -> List[Cookie]:
        """
        Cookies that store `value`, chunked as needed.

        Parts left over from a previous, longer value are cleared in the same
        response.
        """
        cookies = self._clean()

        cookie = Cookie(
            name=self._option.name,
            value=value,
            options=self._option.options.model_copy(update=options),
        )
        for part in self._chunk(cookie):
            cookies[part.name] = part

        return list(cookies.values())

    def clean(self) -> List[Cookie]:
        """Cookies that delete every stored part."""
        return list(self._clean().values())
