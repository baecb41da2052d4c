"""
Identity Normalizer Tests

Tests profile mapping and reconciliation of a provider identity with stored
users and accounts, including the email-collision boundary.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from authbroker.auth import tokens
from authbroker.auth.identity import handle_login, normalize_profile
from authbroker.errors import AccountNotLinked, AdapterError, OAuthProfileParseError
from authbroker.models import Account, User
from authbroker.options import Events, build_options

from .conftest import MemoryAdapter, make_settings, oauth_provider, oidc_provider


def options_for(provider, adapter, strategy="database", events=None):
    return build_options(
        make_settings(AUTH_SESSION_STRATEGY=strategy),
        providers=[provider],
        adapter=adapter,
        events=events,
    ).with_provider(provider)


def identity(provider_id="octo", account_id="42", email="octo@example.com"):
    user = User(id=account_id, name="Octo", email=email)
    account = Account(provider=provider_id, type="oauth", provider_account_id=account_id)
    return user, account


class TestNormalizeProfile:
    """Test suite for normalize_profile"""

    def test_default_profile_maps_oidc_claims(self):
        user, account = normalize_profile(
            oidc_provider(),
            {"sub": "abc", "name": "Alice", "email": "ALICE@example.com", "picture": "https://img"},
            {"access_token": "at", "id_token": "it", "expires_at": 1700000000, "token_type": "Bearer"},
        )

        assert user == User(id="abc", name="Alice", email="alice@example.com", image="https://img")
        assert account.provider == "idp"
        assert account.type == "oidc"
        assert account.provider_account_id == "abc"
        assert account.expires_at == 1700000000
        assert account.id_token == "it"

    def test_numeric_id_becomes_string(self):
        user, account = normalize_profile(oauth_provider(), {"id": 7}, {})

        assert user.id == "7"
        assert account.provider_account_id == "7"

    def test_profile_raising_is_parse_error(self):
        def broken(profile, tokens):
            raise KeyError("login")

        with pytest.raises(OAuthProfileParseError):
            normalize_profile(oauth_provider(profile=broken), {}, {})


class TestHandleLogin:
    """Test suite for handle_login"""

    @pytest.mark.asyncio
    async def test_new_user_is_created_and_linked(self):
        adapter = MemoryAdapter()
        created = AsyncMock()
        linked = AsyncMock()
        options = options_for(oauth_provider(), adapter, events=Events(create_user=created, link_account=linked))
        user, account = identity()

        result_user, result_account, is_new = await handle_login(None, user, account, options)

        assert is_new is True
        assert result_user.id in adapter.users
        assert result_account.user_id == result_user.id
        assert adapter.accounts[("octo", "42")].user_id == result_user.id
        created.assert_awaited_once()
        linked.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_linked_account_signs_in_existing_user(self):
        adapter = MemoryAdapter()
        options = options_for(oauth_provider(), adapter)
        user, account = identity()
        first_user, _, _ = await handle_login(None, user, account, options)

        again_user, _, is_new = await handle_login(None, user, account, options)

        assert again_user.id == first_user.id
        assert is_new is False
        assert len(adapter.users) == 1

    @pytest.mark.asyncio
    async def test_email_collision_without_verified_email_is_refused(self):
        adapter = MemoryAdapter()
        existing = await adapter.create_user(User(id="x", email="octo@example.com"))
        options = options_for(oauth_provider(), adapter)
        user, account = identity()

        with pytest.raises(AccountNotLinked):
            await handle_login(None, user, account, options)

        assert adapter.accounts == {}
        assert list(adapter.users) == [existing.id]

    @pytest.mark.asyncio
    async def test_email_collision_with_verified_email_links(self):
        adapter = MemoryAdapter()
        existing = await adapter.create_user(User(id="x", email="octo@example.com"))
        options = options_for(oauth_provider(verified_email=True), adapter)
        user, account = identity()

        result_user, result_account, is_new = await handle_login(None, user, account, options)

        assert result_user.id == existing.id
        assert result_account.user_id == existing.id
        assert is_new is False

    @pytest.mark.asyncio
    async def test_signed_in_user_gets_new_account_linked(self):
        adapter = MemoryAdapter()
        options = options_for(oauth_provider(), adapter)
        me = await adapter.create_user(User(id="x", email="me@example.com"))
        await adapter.create_session("session-1", me.id, datetime.now(timezone.utc) + timedelta(days=1))
        user, account = identity(email="different@example.com")

        result_user, result_account, is_new = await handle_login("session-1", user, account, options)

        assert result_user.id == me.id
        assert adapter.accounts[("octo", "42")].user_id == me.id
        assert is_new is False

    @pytest.mark.asyncio
    async def test_account_linked_to_someone_else_is_refused(self):
        adapter = MemoryAdapter()
        options = options_for(oauth_provider(), adapter, strategy="jwt")
        user, account = identity()
        owner, _, _ = await handle_login(None, user, account, options)
        other = await adapter.create_user(User(id="y", email="other@example.com"))
        other_session = tokens.encode(
            {"sub": other.id}, options.secret, salt=options.cookies.session_token.name
        )

        with pytest.raises(AccountNotLinked):
            await handle_login(other_session, user, account, options)

        assert adapter.accounts[("octo", "42")].user_id == owner.id

    @pytest.mark.asyncio
    async def test_unreadable_session_is_ignored(self):
        adapter = MemoryAdapter()
        options = options_for(oauth_provider(), adapter, strategy="jwt")
        user, account = identity()

        _, _, is_new = await handle_login("garbage", user, account, options)

        assert is_new is True

    @pytest.mark.asyncio
    async def test_without_adapter_profile_is_the_user(self):
        provider = oauth_provider()
        options = build_options(make_settings(), providers=[provider]).with_provider(provider)
        user, account = identity()

        result_user, result_account, is_new = await handle_login(None, user, account, options)

        assert result_user == user
        assert result_account == account
        assert is_new is False

    @pytest.mark.asyncio
    async def test_adapter_failure_surfaces_as_adapter_error(self):
        adapter = MemoryAdapter()
        adapter.get_user_by_account = AsyncMock(side_effect=RuntimeError("db down"))
        options = options_for(oauth_provider(), adapter)
        user, account = identity()

        with pytest.raises(AdapterError):
            await handle_login(None, user, account, options)

    @pytest.mark.asyncio
    async def test_failing_event_does_not_break_login(self):
        adapter = MemoryAdapter()
        options = options_for(
            oauth_provider(), adapter, events=Events(create_user=AsyncMock(side_effect=RuntimeError("boom")))
        )
        user, account = identity()

        _, _, is_new = await handle_login(None, user, account, options)

        assert is_new is True
        assert ("octo", "42") in adapter.accounts
