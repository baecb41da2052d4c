"""
Data Models Module

This module defines the Pydantic models exchanged between the engine
components and the host boundary.

Models are organized by functional area:
- Cookie models (cookie options and cookies produced by the engine)
- Request/response models (the framework-independent request and response)
- Identity models (users, linked accounts, stored sessions)
- Session models (the session view returned to clients)
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# Cookie Models
# ============================================================================

class CookieOptions(BaseModel):
    """Attributes applied to a cookie when the boundary writes it."""
    http_only: bool = Field(default=True, description="Hide the cookie from JavaScript")
    secure: bool = Field(default=False, description="Only send the cookie over HTTPS")
    same_site: Literal["lax", "strict", "none"] = Field(default="lax", description="SameSite policy")
    path: str = Field(default="/", description="Cookie path")
    max_age: Optional[int] = Field(None, description="Lifetime in seconds; 0 deletes the cookie")
    expires: Optional[datetime] = Field(None, description="Absolute expiry")
    domain: Optional[str] = Field(None, description="Cookie domain")


class CookieOption(BaseModel):
    """A configured cookie: its name and default options."""
    name: str
    options: CookieOptions = Field(default_factory=CookieOptions)


class Cookie(BaseModel):
    """A cookie to be set (or cleared) on the outbound response."""
    name: str
    value: str
    options: CookieOptions = Field(default_factory=CookieOptions)


# ============================================================================
# Request / Response Models
# ============================================================================

class RequestInternal(BaseModel):
    """Framework-independent view of an inbound auth request."""
    action: str = Field(..., description="Auth action (signin, callback, signout, session, csrf, providers, error)")
    method: Literal["GET", "POST"] = Field(default="GET")
    provider_id: Optional[str] = Field(None, description="Provider id from the path, if any")
    cookies: Dict[str, str] = Field(default_factory=dict)
    headers: Dict[str, str] = Field(default_factory=dict)
    query: Dict[str, str] = Field(default_factory=dict)
    body: Dict[str, Any] = Field(default_factory=dict)


class ResponseInternal(BaseModel):
    """Uniform response shape rendered by the boundary layer."""
    status: int = Field(default=200)
    redirect: Optional[str] = Field(None, description="Absolute redirect target")
    cookies: List[Cookie] = Field(default_factory=list)
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[Any] = Field(None, description="JSON-serializable body")


# ============================================================================
# Identity Models
# ============================================================================

class User(BaseModel):
    """Canonical identity produced by a provider's profile() mapping."""
    id: str = Field(..., description="Unique user identifier")
    name: Optional[str] = Field(None, description="Display name")
    email: Optional[str] = Field(None, description="Email address")
    image: Optional[str] = Field(None, description="Avatar URL")
    email_verified: Optional[datetime] = Field(None, description="When the email was verified")


class Account(BaseModel):
    """A provider account linked to a user, keyed by (provider, provider_account_id)."""
    provider: str
    type: str = Field(..., description="Provider type (oauth, oidc, credentials)")
    provider_account_id: str
    user_id: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None
    expires_at: Optional[int] = Field(None, description="Access token expiry, seconds since epoch")
    token_type: Optional[str] = None
    scope: Optional[str] = None


class AdapterSession(BaseModel):
    """A server-side session record owned by the storage adapter."""
    session_token: str
    user_id: str
    expires: datetime


# ============================================================================
# Session Models
# ============================================================================

class SessionUser(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    image: Optional[str] = None


class Session(BaseModel):
    """Session view returned by the session action."""
    model_config = ConfigDict(extra="allow")

    user: SessionUser = Field(default_factory=SessionUser)
    expires: str = Field(..., description="ISO-8601 expiry")
