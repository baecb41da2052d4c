"""
Error Taxonomy
==============

Every failure raised by the authentication engine derives from AuthError.

Each error class carries two class-level attributes:
    - type: the coarse, client-safe error code placed in the error page URL
    - kind: which page handles it ("signIn" errors can be shown on the
      sign-in page, everything else goes to the error page)

Only the codes listed in CLIENT_ERRORS are ever exposed to the browser;
anything else is reported as "Configuration" so that no internal detail
leaks out of the service.
"""

from typing import Optional


class AuthError(Exception):
    """Base class for all authentication engine errors."""

    type = "AuthError"
    kind = "error"

    def __init__(self, message: str = "", cause: Optional[BaseException] = None):
        super().__init__(message or self.type)
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause


class SignInError(AuthError):
    """A sign-in attempt failed in a way the sign-in page can display."""

    kind = "signIn"


# =============================================================================
# CSRF / OAuth checks
# =============================================================================

class MissingCSRF(SignInError):
    """A state-changing action arrived without a verified CSRF token."""

    type = "MissingCSRF"


class InvalidCheck(AuthError):
    """A state, nonce or PKCE verifier cookie was missing or did not match."""

    type = "InvalidCheck"


class InvalidState(InvalidCheck):
    type = "InvalidState"


class InvalidNonce(InvalidCheck):
    type = "InvalidNonce"


class InvalidPKCE(InvalidCheck):
    type = "InvalidPKCE"


# =============================================================================
# Provider / callback errors
# =============================================================================

class OAuthSignInError(SignInError):
    """Building the authorization request for a provider failed."""

    type = "OAuthSignInError"


class OAuthCallbackError(SignInError):
    """The provider returned an error, or the code exchange failed."""

    type = "OAuthCallbackError"

    def __init__(
        self,
        message: str = "",
        cause: Optional[BaseException] = None,
        provider_error: Optional[str] = None,
    ):
        super().__init__(message, cause)
        self.provider_error = provider_error


class InvalidIDToken(OAuthCallbackError):
    """An OIDC ID token failed signature or claim validation."""

    type = "InvalidIDToken"

    def __init__(self, message: str = "", claim: Optional[str] = None, cause: Optional[BaseException] = None):
        super().__init__(message, cause)
        self.claim = claim


class OAuthProfileParseError(AuthError):
    type = "OAuthProfileParseError"


class AccountNotLinked(SignInError):
    """The identity belongs to a user that this account is not linked to."""

    type = "AccountNotLinked"


class AccessDenied(AuthError):
    """The sign_in callback refused the user."""

    type = "AccessDenied"


class CredentialsSignin(SignInError):
    """The credentials provider's authorize() returned no user."""

    type = "CredentialsSignin"
    code = "credentials"


# =============================================================================
# Session / storage errors
# =============================================================================

class InvalidSession(AuthError):
    """A session token failed signature verification or could not be read."""

    type = "InvalidSession"


class SessionExpired(AuthError):
    type = "SessionExpired"


class AdapterError(AuthError):
    """A storage adapter call failed or timed out."""

    type = "AdapterError"


class EventError(AuthError):
    type = "EventError"


class SignOutError(AuthError):
    type = "SignOutError"


# =============================================================================
# Routing / configuration errors
# =============================================================================

class UnknownAction(AuthError):
    type = "UnknownAction"


class InvalidProvider(AuthError):
    type = "InvalidProvider"


class ConfigurationError(AuthError):
    """Fatal misconfiguration; raised at startup, before any request is served."""

    type = "Configuration"


class MissingSecret(ConfigurationError):
    pass


class MissingAdapter(ConfigurationError):
    pass


class UnsupportedStrategy(ConfigurationError):
    pass


CLIENT_ERRORS = frozenset({
    "MissingCSRF",
    "InvalidState",
    "InvalidNonce",
    "InvalidPKCE",
    "OAuthCallbackError",
    "InvalidIDToken",
    "AccountNotLinked",
    "AccessDenied",
    "CredentialsSignin",
})


def is_client_error(error: BaseException) -> bool:
    """Return True if the error's code may be shown to the client."""
    return isinstance(error, AuthError) and error.type in CLIENT_ERRORS
