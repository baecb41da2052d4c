"""
Storage Adapter Interface
=========================

The engine never talks to a database directly. Persistent users, linked
accounts and server-side sessions are reached through an Adapter supplied by
the host application. This module defines that interface and the wrapper the
engine uses to call it.

Every adapter call made by the engine goes through call_adapter(), which:
    - applies the configured timeout (a single attempt, never retried)
    - logs the method name at debug level
    - converts any failure into AdapterError
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional, Tuple

from .errors import AdapterError
from .models import Account, AdapterSession, User

logger = logging.getLogger(__name__)


class Adapter(ABC):
    """Abstract storage adapter. All methods are coroutines."""

    # Users

    @abstractmethod
    async def create_user(self, user: User) -> User:
        ...

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[User]:
        ...

    @abstractmethod
    async def get_user_by_email(self, email: str) -> Optional[User]:
        ...

    @abstractmethod
    async def get_user_by_account(self, provider: str, provider_account_id: str) -> Optional[User]:
        ...

    # Accounts

    @abstractmethod
    async def link_account(self, account: Account) -> Optional[Account]:
        ...

    # Sessions

    @abstractmethod
    async def create_session(self, session_token: str, user_id: str, expires: datetime) -> AdapterSession:
        ...

    @abstractmethod
    async def get_session_and_user(self, session_token: str) -> Optional[Tuple[AdapterSession, User]]:
        ...

    @abstractmethod
    async def update_session(self, session_token: str, expires: datetime) -> Optional[AdapterSession]:
        ...

    @abstractmethod
    async def delete_session(self, session_token: str) -> Optional[AdapterSession]:
        ...


async def call_adapter(adapter: Adapter, method: str, *args: Any, timeout: Optional[float] = None) -> Any:
    """
    Invoke an adapter method with a timeout boundary.

    Args:
        adapter: The configured storage adapter
        method: Name of the adapter coroutine to call
        *args: Positional arguments for the call
        timeout: Seconds to wait before giving up (None waits forever)

    Returns:
        Whatever the adapter method returns

    Raises:
        AdapterError: If the call raises or does not finish in time
    """
    logger.debug(f"adapter_{method}", extra={"adapter_method": method})
    try:
        return await asyncio.wait_for(getattr(adapter, method)(*args), timeout=timeout)
    except asyncio.TimeoutError as e:
        logger.error(f"Adapter call {method} timed out after {timeout}s")
        raise AdapterError(f"Adapter method {method} timed out", cause=e) from e
    except AdapterError:
        raise
    except Exception as e:
        logger.error(f"Adapter call {method} failed: {e}", exc_info=True)
        raise AdapterError(f"Adapter method {method} failed", cause=e) from e
