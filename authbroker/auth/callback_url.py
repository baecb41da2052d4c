"""Resolve where the user lands after signing in or out."""

import logging
from typing import Optional, Tuple

from ..options import InternalOptions

logger = logging.getLogger(__name__)


async def create_callback_url(
    options: InternalOptions,
    param_value: Optional[str] = None,
    cookie_value: Optional[str] = None,
) -> Tuple[str, Optional[str]]:
    """
    Resolve the post-auth callback URL through the redirect policy.

    A callbackUrl from the request (body on POST, query on GET) wins over the
    one remembered in the callback-url cookie; with neither, the base URL is
    used. Whatever is chosen is passed through callbacks.redirect, which is
    responsible for rejecting cross-origin targets.

    Args:
        options: Resolved options
        param_value: callbackUrl from the request, if any
        cookie_value: Value of the callback-url cookie, if any

    Returns:
        (callback_url, cookie_value_to_set). The second item is None when the
        cookie already holds the resolved URL.
    """
    base_url = options.base_url
    callback_url = base_url

    if param_value:
        callback_url = await options.callbacks.redirect(param_value, base_url)
    elif cookie_value:
        callback_url = await options.callbacks.redirect(cookie_value, base_url)

    logger.debug("Callback URL resolved", extra={"callback_url": callback_url})

    return callback_url, (callback_url if callback_url != cookie_value else None)
