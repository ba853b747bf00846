"""
Tests for identity upsert: one IntegrationAccount per (user, platform, identity key).
"""
import pytest

from src.config import Platform
from src.infrastructure.accounts_repo import AccountsRepository
from src.infrastructure.providers.base import TokenSet
from src.services.account_service import AccountService


async def _all_accounts(session_factory, user_id, platform="youtube"):
    async with session_factory() as session:
        return await AccountsRepository(session).find(user_id, platform)


class TestAccountUpsert:

    @pytest.mark.asyncio
    async def test_repeated_callbacks_collapse_into_one_account(self, session_factory, cipher, user):
        svc = AccountService(session_factory, cipher)

        first = await svc.upsert(user.id, Platform.YOUTUBE, "UC1", TokenSet("tok-1", "ref-1", 3600), {"title": "Old", "channelId": "UC1"})
        second = await svc.upsert(user.id, Platform.YOUTUBE, "UC1", TokenSet("tok-2", None, 3600), {"title": "New"})

        rows = await _all_accounts(session_factory, user.id)
        assert len(rows) == 1
        assert first.id == second.id
        assert cipher.decrypt(second.access_token_enc) == "tok-2"
        # providers only send a refresh token when they rotate it
        assert cipher.decrypt(second.refresh_token_enc) == "ref-1"
        assert second.meta == {"title": "New", "channelId": "UC1"}

    @pytest.mark.asyncio
    async def test_distinct_identity_keys_stay_distinct(self, session_factory, cipher, user):
        svc = AccountService(session_factory, cipher)

        a = await svc.upsert(user.id, Platform.YOUTUBE, "UC1", TokenSet("tok-a"), {})
        b = await svc.upsert(user.id, Platform.YOUTUBE, "UC2", TokenSet("tok-b"), {})

        rows = await _all_accounts(session_factory, user.id)
        assert len(rows) == 2
        assert a.id != b.id
        assert {r.identity_key for r in rows} == {"UC1", "UC2"}

    @pytest.mark.asyncio
    async def test_same_identity_on_other_platform_is_separate(self, session_factory, cipher, user):
        svc = AccountService(session_factory, cipher)
        a = await svc.upsert(user.id, Platform.INSTAGRAM, "123", TokenSet("tok-a"), {})
        b = await svc.upsert(user.id, Platform.FACEBOOK, "123", TokenSet("tok-b"), {})
        assert a.id != b.id

    @pytest.mark.asyncio
    async def test_missing_identity_updates_the_only_existing_account(self, session_factory, cipher, user):
        svc = AccountService(session_factory, cipher)
        existing = await svc.upsert(user.id, Platform.YOUTUBE, "UC1", TokenSet("tok-1"), {"title": "Mine"})

        again = await svc.upsert(user.id, Platform.YOUTUBE, None, TokenSet("tok-2"), {})

        assert again.id == existing.id
        assert again.identity_key == "UC1"
        assert cipher.decrypt(again.access_token_enc) == "tok-2"
        assert len(await _all_accounts(session_factory, user.id)) == 1

    @pytest.mark.asyncio
    async def test_missing_identity_with_several_accounts_inserts(self, session_factory, cipher, user):
        svc = AccountService(session_factory, cipher)
        await svc.upsert(user.id, Platform.YOUTUBE, "UC1", TokenSet("tok-1"), {})
        await svc.upsert(user.id, Platform.YOUTUBE, "UC2", TokenSet("tok-2"), {})

        unresolved = await svc.upsert(user.id, Platform.YOUTUBE, None, TokenSet("tok-3"), {})

        assert unresolved.identity_key is None
        assert len(await _all_accounts(session_factory, user.id)) == 3

    @pytest.mark.asyncio
    async def test_resolved_identity_adopts_unresolved_account(self, session_factory, cipher, user):
        svc = AccountService(session_factory, cipher)
        orphan = await svc.upsert(user.id, Platform.YOUTUBE, None, TokenSet("tok-1"), {"note": "kept"})
        await svc.upsert(user.id, Platform.YOUTUBE, None, TokenSet("tok-1b"), {})

        resolved = await svc.upsert(user.id, Platform.YOUTUBE, "UC1", TokenSet("tok-2"), {"channelId": "UC1"})

        assert resolved.id == orphan.id
        assert resolved.identity_key == "UC1"
        assert resolved.meta == {"note": "kept", "channelId": "UC1"}
        assert len(await _all_accounts(session_factory, user.id)) == 1

    @pytest.mark.asyncio
    async def test_expiry_is_computed_from_expires_in(self, session_factory, cipher, user):
        from datetime import datetime

        svc = AccountService(session_factory, cipher, clock=lambda: datetime(2024, 1, 1, 12, 0, 0))
        account = await svc.upsert(user.id, Platform.TWITCH, "42", TokenSet("tok", expires_in=600), {})
        assert account.token_expires_at == datetime(2024, 1, 1, 12, 10, 0)

        long_lived = await svc.upsert(user.id, Platform.TWITCH, "43", TokenSet("tok"), {})
        assert long_lived.token_expires_at is None

    @pytest.mark.asyncio
    async def test_demo_and_real_accounts_never_adopt_each_other(self, session_factory, cipher, user):
        svc = AccountService(session_factory, cipher)
        orphan = await svc.upsert(user.id, Platform.YOUTUBE, None, TokenSet("real-token"), {})

        demo = await svc.upsert(user.id, Platform.YOUTUBE, "demo-abc", TokenSet("demo_x"), {"demo": True})
        unresolved = await svc.upsert(user.id, Platform.TWITCH, None, TokenSet("real-twitch"), {})
        await svc.upsert(user.id, Platform.TWITCH, "demo-def", TokenSet("demo_y"), {"demo": True})
        twitch_again = await svc.upsert(user.id, Platform.TWITCH, None, TokenSet("real-twitch-2"), {})

        assert demo.id != orphan.id
        assert len(await _all_accounts(session_factory, user.id)) == 2
        assert twitch_again.id == unresolved.id
        assert len(await _all_accounts(session_factory, user.id, "twitch")) == 2

        only_demo = await svc.upsert(user.id, Platform.FACEBOOK, "demo-fb", TokenSet("demo_z"), {"demo": True})
        real_fb = await svc.upsert(user.id, Platform.FACEBOOK, None, TokenSet("real-fb"), {})
        assert real_fb.id != only_demo.id
        fb_rows = {r.id: r for r in await _all_accounts(session_factory, user.id, "facebook")}
        assert cipher.decrypt(fb_rows[only_demo.id].access_token_enc) == "demo_z"
