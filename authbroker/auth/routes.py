"""
Authentication routes.

This module adapts Starlette requests to the engine's RequestInternal and
renders the ResponseInternal it gets back. It holds no auth logic of its own:
every path under the base path goes through actions.auth().

get_current_user and get_optional_user are dependencies for the host
application's own routes.
"""

import json
import logging
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl

from fastapi import APIRouter, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, RedirectResponse, Response

from ..models import RequestInternal, ResponseInternal
from ..options import InternalOptions
from .actions import auth
from .session import authenticate

logger = logging.getLogger(__name__)


# =============================================================================
# Router Setup
# =============================================================================

auth_router = APIRouter(
    tags=["authentication"],
)


# =============================================================================
# Request / Response Adaptation
# =============================================================================

async def _read_body(request: Request) -> Dict[str, Any]:
    """
    Parse a JSON or form-urlencoded body.

    Raises:
        HTTPException: 400 if a JSON body does not parse into an object, or a
            form body is not valid UTF-8
    """
    if request.method != "POST":
        return {}

    raw = await request.body()
    if not raw:
        return {}

    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            data = json.loads(raw)
        except ValueError:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON body")
        if not isinstance(data, dict):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="JSON body must be an object")
        return data

    try:
        text = raw.decode("utf-8", errors="strict")
    except UnicodeDecodeError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid form body")
    return dict(parse_qsl(text, keep_blank_values=True))


async def to_internal(request: Request, action: str, provider_id: Optional[str]) -> RequestInternal:
    return RequestInternal(
        action=action,
        method=request.method,
        provider_id=provider_id,
        cookies=dict(request.cookies),
        headers={k.lower(): v for k, v in request.headers.items()},
        query=dict(request.query_params),
        body=await _read_body(request),
    )


def render(internal: ResponseInternal) -> Response:
    """Render a ResponseInternal as a redirect, a JSON body or an empty response."""
    if internal.redirect:
        response: Response = RedirectResponse(url=internal.redirect, status_code=status.HTTP_302_FOUND)
    elif internal.body is None and internal.status >= 400:
        response = Response(status_code=internal.status)
    else:
        response = JSONResponse(content=jsonable_encoder(internal.body), status_code=internal.status)

    for name, value in internal.headers.items():
        response.headers[name] = value

    for cookie in internal.cookies:
        opts = cookie.options
        response.set_cookie(
            key=cookie.name,
            value=cookie.value,
            max_age=opts.max_age,
            expires=opts.expires,
            path=opts.path,
            domain=opts.domain,
            secure=opts.secure,
            httponly=opts.http_only,
            samesite=opts.same_site,
        )
    return response


# =============================================================================
# Action Endpoints
# =============================================================================

@auth_router.api_route("/{action}", methods=["GET", "POST"])
@auth_router.api_route("/{action}/{provider_id}", methods=["GET", "POST"])
async def auth_action(request: Request, action: str, provider_id: Optional[str] = None) -> Response:
    """
    Handle any auth action.

    Path Parameters:
        action: signin, callback, signout, session, csrf, providers or error
        provider_id: Provider id for signin and callback

    Returns:
        Redirect, JSON body or empty response as decided by the engine
    """
    options: InternalOptions = request.app.state.auth_options
    internal = await to_internal(request, action, provider_id)

    logger.debug(
        f"{request.method} {action}",
        extra={"action": action, "provider": provider_id},
    )
    return render(await auth(internal, options))


# =============================================================================
# FastAPI Dependencies
# =============================================================================

async def get_optional_user(request: Request) -> Optional[Dict[str, Any]]:
    """
    FastAPI dependency for optional authentication.

    Returns the session claims when the request carries a valid session
    cookie or Bearer token, None otherwise.

    Usage:
        @app.get("/optional-auth")
        async def route(user: Optional[dict] = Depends(get_optional_user)):
            ...
    """
    options: InternalOptions = request.app.state.auth_options
    return await authenticate(dict(request.cookies), dict(request.headers), options)


async def get_current_user(request: Request) -> Dict[str, Any]:
    """
    FastAPI dependency that requires a signed-in user.

    Usage:
        @app.get("/protected")
        async def protected_route(user: dict = Depends(get_current_user)):
            return {"user_email": user.get("email")}

    Raises:
        HTTPException: 401 if the request has no valid session
    """
    user = await get_optional_user(request)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user
