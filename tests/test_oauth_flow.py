"""
End-to-end authorization handshake against scripted provider APIs.
"""
from datetime import datetime
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from src.config import Platform
from src.infrastructure.accounts_repo import AccountsRepository
from src.infrastructure.providers import meta_graph, tiktok, youtube
from src.services.integration_broker import IntegrationBroker
from src.services.oauth_service import Stage

NOW = datetime(2024, 5, 1, 12, 0, 0)
GRAPH = meta_graph.GRAPH_URL


class StateClock:
    def __init__(self, now: float = 1_714_564_800.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _state_from(url: str) -> str:
    return parse_qs(urlparse(url).query)["state"][0]


def _broker(settings, session_factory, fake_api, state_clock=None):
    return IntegrationBroker(
        settings, session_factory, transport=fake_api.transport,
        clock=lambda: NOW, state_clock=state_clock or StateClock(),
    )


async def _accounts(session_factory, user, platform):
    async with session_factory() as session:
        return await AccountsRepository(session).find(user.id, platform)


def script_youtube(fake_api, exchange_status=200, channel=True):
    fake_api.add("POST", youtube.TOKEN_URL, (
        {"access_token": "yt-access", "refresh_token": "yt-refresh", "expires_in": 3599, "scope": "a b"}
        if exchange_status == 200 else {"error": "invalid_grant"}
    ), status=exchange_status)
    fake_api.add("GET", f"{youtube.DATA_API}/channels", {"items": [{
        "id": "UC1",
        "snippet": {"title": "My Channel", "customUrl": "@mine", "thumbnails": {}},
        "statistics": {"subscriberCount": "10", "videoCount": "2"},
    }]} if channel else {"items": []})


class TestYouTubeHandshake:

    @pytest.mark.asyncio
    async def test_full_flow_persists_account(self, settings, session_factory, cipher, fake_api, user):
        script_youtube(fake_api)
        broker = _broker(settings, session_factory, fake_api)

        state = _state_from(broker.authorization_url(user.id, Platform.YOUTUBE))
        outcome = await broker.handle_callback(Platform.YOUTUBE, "auth-code", state)

        assert outcome.stage is Stage.PERSISTED
        assert outcome.stages == [
            Stage.STARTED, Stage.CODE_RECEIVED, Stage.EXCHANGED, Stage.IDENTITY_RESOLVED, Stage.PERSISTED,
        ]
        assert outcome.error_code is None
        assert outcome.user_id == user.id
        assert outcome.identity_key == "UC1"

        [account] = await _accounts(session_factory, user, "youtube")
        assert account.id == outcome.account_id
        assert cipher.decrypt(account.access_token_enc) == "yt-access"
        assert cipher.decrypt(account.refresh_token_enc) == "yt-refresh"
        assert account.meta["channelId"] == "UC1"
        assert account.meta["title"] == "My Channel"
        # never stored in clear
        assert account.access_token_enc != "yt-access"

        sent = parse_qs(fake_api.calls_to(youtube.TOKEN_URL)[0].content.decode())
        assert sent["code"] == ["auth-code"]
        assert sent["redirect_uri"] == [settings.provider(Platform.YOUTUBE).redirect_uri]
        assert broker.callback_redirect(outcome) == "http://client.test/integrations/success?connected=youtube"

    @pytest.mark.asyncio
    async def test_repeated_callback_keeps_one_account(self, settings, session_factory, fake_api, user):
        script_youtube(fake_api)
        broker = _broker(settings, session_factory, fake_api)

        first = await broker.handle_callback(Platform.YOUTUBE, "c1", _state_from(broker.authorization_url(user.id, Platform.YOUTUBE)))
        second = await broker.handle_callback(Platform.YOUTUBE, "c2", _state_from(broker.authorization_url(user.id, Platform.YOUTUBE)))

        assert first.account_id == second.account_id
        assert len(await _accounts(session_factory, user, "youtube")) == 1

    @pytest.mark.asyncio
    async def test_state_older_than_its_ttl_is_expired(self, settings, session_factory, fake_api, user):
        script_youtube(fake_api)
        clock = StateClock()
        broker = _broker(settings, session_factory, fake_api, state_clock=clock)
        state = _state_from(broker.authorization_url(user.id, Platform.YOUTUBE))

        clock.now += settings.provider(Platform.YOUTUBE).state_ttl + 60
        outcome = await broker.handle_callback(Platform.YOUTUBE, "code", state)

        assert outcome.stage is Stage.STATE_EXPIRED
        assert outcome.error_code == "state_expired"
        assert not outcome.connected
        assert fake_api.calls == []
        assert broker.callback_redirect(outcome) == (
            "http://client.test/integrations?connected=youtube&error=state_expired"
        )

    @pytest.mark.asyncio
    async def test_forged_state_is_invalid(self, settings, session_factory, fake_api, user):
        broker = _broker(settings, session_factory, fake_api)
        outcome = await broker.handle_callback(Platform.YOUTUBE, "code", "not-a-state")
        assert outcome.stage is Stage.STATE_INVALID
        assert outcome.error_code == "state_invalid"
        assert fake_api.calls == []

    @pytest.mark.asyncio
    async def test_state_issued_for_other_platform_is_invalid(self, settings, session_factory, fake_api, user):
        broker = _broker(settings, session_factory, fake_api)
        state = _state_from(broker.authorization_url(user.id, Platform.TWITCH))
        outcome = await broker.handle_callback(Platform.YOUTUBE, "code", state)
        assert outcome.error_code == "state_invalid"

    @pytest.mark.asyncio
    async def test_rejected_code_is_exchange_failure(self, settings, session_factory, fake_api, user):
        script_youtube(fake_api, exchange_status=400)
        broker = _broker(settings, session_factory, fake_api)

        outcome = await broker.handle_callback(Platform.YOUTUBE, "bad", _state_from(broker.authorization_url(user.id, Platform.YOUTUBE)))

        assert outcome.stage is Stage.EXCHANGE_FAILED
        assert outcome.error_code == "token_exchange"
        assert await _accounts(session_factory, user, "youtube") == []

    @pytest.mark.asyncio
    async def test_unresolved_identity_still_persists_tokens(self, settings, session_factory, cipher, fake_api, user):
        script_youtube(fake_api, channel=False)
        broker = _broker(settings, session_factory, fake_api)

        outcome = await broker.handle_callback(Platform.YOUTUBE, "code", _state_from(broker.authorization_url(user.id, Platform.YOUTUBE)))

        assert outcome.stage is Stage.IDENTITY_UNRESOLVED
        assert outcome.connected
        assert outcome.error_code is None
        [account] = await _accounts(session_factory, user, "youtube")
        assert account.identity_key is None
        assert cipher.decrypt(account.access_token_enc) == "yt-access"


def script_instagram(fake_api, upgrade_ok=True):
    def token_endpoint(request: httpx.Request):
        params = request.url.params
        if params.get("grant_type") == "fb_exchange_token":
            if not upgrade_ok:
                return httpx.Response(400, json={"error": {"message": "upgrade rejected"}})
            return httpx.Response(200, json={"access_token": "long-lived", "expires_in": 5184000})
        return httpx.Response(200, json={"access_token": "short-lived", "expires_in": 3600})

    fake_api.add("GET", f"{GRAPH}/oauth/access_token", token_endpoint)
    fake_api.add("GET", f"{GRAPH}/me/accounts", {"data": [{"id": "p1", "name": "Shop", "access_token": "pt"}]})
    fake_api.add("GET", f"{GRAPH}/p1", {"instagram_business_account": {"id": "ig1", "username": "shop"}})


class TestInstagramHandshake:

    @pytest.mark.asyncio
    async def test_short_lived_token_is_upgraded(self, settings, session_factory, cipher, fake_api, user):
        script_instagram(fake_api)
        broker = _broker(settings, session_factory, fake_api)

        outcome = await broker.handle_callback(Platform.INSTAGRAM, "code", _state_from(broker.authorization_url(user.id, Platform.INSTAGRAM)))

        assert Stage.UPGRADED in outcome.stages
        assert outcome.stage is Stage.PERSISTED
        [account] = await _accounts(session_factory, user, "instagram")
        assert cipher.decrypt(account.access_token_enc) == "long-lived"
        assert account.identity_key == "ig1"
        assert account.meta["pageId"] == "p1"

    @pytest.mark.asyncio
    async def test_failed_upgrade_keeps_short_lived_token(self, settings, session_factory, cipher, fake_api, user):
        script_instagram(fake_api, upgrade_ok=False)
        broker = _broker(settings, session_factory, fake_api)

        outcome = await broker.handle_callback(Platform.INSTAGRAM, "code", _state_from(broker.authorization_url(user.id, Platform.INSTAGRAM)))

        assert Stage.UPGRADED not in outcome.stages
        assert outcome.stage is Stage.PERSISTED
        [account] = await _accounts(session_factory, user, "instagram")
        assert cipher.decrypt(account.access_token_enc) == "short-lived"


class TestTikTokHandshake:

    @pytest.mark.asyncio
    async def test_token_extras_land_in_metadata(self, settings, session_factory, fake_api, user):
        fake_api.add("POST", tiktok.TOKEN_URL, {
            "access_token": "tt", "refresh_token": "tr", "expires_in": 86400, "open_id": "open-1",
        })
        fake_api.add("GET", f"{tiktok.API_URL}/user/info/", {
            "data": {"user": {"open_id": "open-1", "display_name": "Dancer"}},
            "error": {"code": "ok"},
        })
        broker = _broker(settings, session_factory, fake_api)

        outcome = await broker.handle_callback(Platform.TIKTOK, "code", _state_from(broker.authorization_url(user.id, Platform.TIKTOK)))

        assert outcome.identity_key == "open-1"
        [account] = await _accounts(session_factory, user, "tiktok")
        assert account.meta["open_id"] == "open-1"
        assert account.meta["displayName"] == "Dancer"
