"""
Adapter-level tests: URL building, token parsing, provider-specific quirks.
"""
from datetime import date
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from src.config import DEFAULT_SCOPES, Platform, ProviderConfig
from src.errors import ConfigurationMissing, IdentityNotFound, ProviderRequestError, TokenExchangeFailed, UnsupportedPlatform
from src.infrastructure.provider_client import ProviderClient
from src.infrastructure.providers import meta_graph, tiktok, twitch, youtube
from src.infrastructure.providers.base import MetricsWindow, QueryTarget, parse_token_response, to_number
from src.infrastructure.providers.registry import build_adapters, parse_platform

WINDOW = MetricsWindow(start=date(2024, 4, 1), end=date(2024, 4, 3))


def _query(url: str):
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


class TestDurations:

    @pytest.mark.parametrize("raw,expected", [
        ("PT45S", 45),
        ("PT1M", 60),
        ("PT1H2M3S", 3723),
        ("P1DT1S", 86401),
        ("", None),
        (None, None),
        ("bogus", None),
    ])
    def test_iso_duration(self, raw, expected):
        assert youtube.iso_duration_to_seconds(raw) == expected

    @pytest.mark.parametrize("raw,expected", [("1h2m3s", 3723), ("59s", 59), ("10m", 600), ("", None), ("x", None)])
    def test_twitch_duration(self, raw, expected):
        assert twitch.twitch_duration_to_seconds(raw) == expected


class TestAuthorizationUrls:

    def test_every_platform_embeds_state_redirect_and_scopes(self, settings):
        for platform, adapter in build_adapters(settings).items():
            params = _query(adapter.authorization_url("STATE123"))
            assert params["state"] == "STATE123"
            assert params["redirect_uri"] == settings.provider(platform).redirect_uri
            assert params["response_type"] == "code"
            assert params["scope"]

    def test_tiktok_uses_client_key_and_comma_scopes(self, settings):
        url = build_adapters(settings)[Platform.TIKTOK].authorization_url("s")
        params = _query(url)
        assert params["client_key"] == "tiktok-client"
        assert params["scope"] == ",".join(DEFAULT_SCOPES[Platform.TIKTOK])

    def test_youtube_requests_offline_access(self, settings):
        params = _query(build_adapters(settings)[Platform.YOUTUBE].authorization_url("s"))
        assert params["access_type"] == "offline"
        assert params["prompt"] == "consent"

    def test_unconfigured_platform_raises_configuration_missing(self, settings):
        blank = ProviderConfig(Platform.TWITCH, None, None, "http://x/cb", ())
        adapter = twitch.TwitchAdapter(blank, ProviderClient("twitch"))
        with pytest.raises(ConfigurationMissing):
            adapter.authorization_url("s")

    def test_parse_platform(self):
        assert parse_platform("YouTube") is Platform.YOUTUBE
        with pytest.raises(UnsupportedPlatform):
            parse_platform("myspace")


class TestTokenParsing:

    def test_optional_fields_may_be_absent(self):
        tokens = parse_token_response(Platform.YOUTUBE, {"access_token": "a"})
        assert tokens.access_token == "a"
        assert tokens.refresh_token is None
        assert tokens.expires_in is None

    def test_string_expiry_and_list_scope(self):
        tokens = parse_token_response(Platform.TWITCH, {"access_token": "a", "expires_in": "3600", "scope": ["x", "y"]})
        assert tokens.expires_in == 3600
        assert tokens.scope == "x y"

    def test_missing_access_token_fails_exchange(self):
        with pytest.raises(TokenExchangeFailed):
            parse_token_response(Platform.TIKTOK, {"refresh_token": "r"})

    @pytest.mark.asyncio
    async def test_non_2xx_exchange_is_token_exchange_failed(self, settings, fake_api):
        fake_api.add("POST", youtube.TOKEN_URL, {"error": "invalid_grant"}, status=400)
        adapter = build_adapters(settings, fake_api.transport)[Platform.YOUTUBE]
        with pytest.raises(TokenExchangeFailed):
            await adapter.exchange_code("code", settings.provider(Platform.YOUTUBE).redirect_uri)

    @pytest.mark.asyncio
    async def test_tiktok_exchange_keeps_open_id(self, settings, fake_api):
        fake_api.add("POST", tiktok.TOKEN_URL, {
            "access_token": "act", "refresh_token": "rft", "expires_in": 86400, "open_id": "open-1", "scope": "user.info.basic",
        })
        adapter = build_adapters(settings, fake_api.transport)[Platform.TIKTOK]
        tokens = await adapter.exchange_code("code", "http://cb")
        assert tokens.extra == {"open_id": "open-1"}
        assert parse_qs(fake_api.calls[0].content.decode())["client_key"] == ["tiktok-client"]


class TestProviderClient:

    @pytest.mark.asyncio
    async def test_timeout_becomes_provider_request_error(self):
        def boom(request):
            raise httpx.ReadTimeout("slow", request=request)

        client = ProviderClient("youtube", transport=httpx.MockTransport(boom))
        with pytest.raises(ProviderRequestError):
            await client.get("https://example.test/x")

    @pytest.mark.asyncio
    async def test_error_status_keeps_code_and_body(self):
        client = ProviderClient("youtube", transport=httpx.MockTransport(lambda r: httpx.Response(403, text="forbidden")))
        with pytest.raises(ProviderRequestError) as exc_info:
            await client.get("https://example.test/x?access_token=secret")
        assert exc_info.value.status_code == 403
        assert exc_info.value.body == "forbidden"
        assert "secret" not in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_list_body_is_wrapped(self):
        client = ProviderClient("x", transport=httpx.MockTransport(lambda r: httpx.Response(200, json=[1, 2])))
        assert await client.get("https://example.test") == {"data": [1, 2]}


class TestProviderQuirks:

    def test_to_number(self):
        assert to_number("12") == 12
        assert to_number("1.5") == 1.5
        assert to_number(None) is None
        assert to_number(True) is None
        assert to_number("n/a") is None

    def test_parse_insights_sums_day_series_and_keeps_total_values(self):
        body = {"data": [
            {"name": "reach", "period": "day", "values": [
                {"value": 3, "end_time": "2024-04-01T07:00:00+0000"},
                {"value": 4, "end_time": "2024-04-02T07:00:00+0000"},
            ]},
            {"name": "profile_views", "period": "day", "total_value": {"value": 9}},
            {"name": "page_fans", "period": "lifetime", "values": [{"value": 100}, {"value": 105}]},
        ]}
        result = meta_graph.parse_insights(body)
        assert result.totals == {"reach": 7, "profile_views": 9, "page_fans": 105}
        assert result.series["reach"] == [("2024-04-01", 3), ("2024-04-02", 4)]

    @pytest.mark.asyncio
    async def test_tiktok_error_envelope_is_a_provider_failure(self, settings, fake_api):
        fake_api.add("GET", f"{tiktok.API_URL}/user/info/", {"data": {}, "error": {"code": "access_token_invalid", "message": "bad"}})
        adapter = build_adapters(settings, fake_api.transport)[Platform.TIKTOK]
        with pytest.raises(ProviderRequestError):
            await adapter.resolve_identity("tok")

    @pytest.mark.asyncio
    async def test_twitch_sends_client_id_header(self, settings, fake_api):
        fake_api.add("GET", f"{twitch.HELIX_URL}/users", {"data": [{"id": "42", "login": "streamer", "display_name": "Streamer"}]})
        adapter = build_adapters(settings, fake_api.transport)[Platform.TWITCH]

        identity = await adapter.resolve_identity("tok")

        assert identity.identity_key == "42"
        assert identity.metadata["broadcasterId"] == "42"
        assert fake_api.calls[0].headers["Client-Id"] == "twitch-client"
        assert fake_api.calls[0].headers["Authorization"] == "Bearer tok"

    @pytest.mark.asyncio
    async def test_youtube_without_channel_is_identity_not_found(self, settings, fake_api):
        fake_api.add("GET", f"{youtube.DATA_API}/channels", {"items": []})
        adapter = build_adapters(settings, fake_api.transport)[Platform.YOUTUBE]
        with pytest.raises(IdentityNotFound):
            await adapter.resolve_identity("tok")

    @pytest.mark.asyncio
    async def test_facebook_container_resolves_page_token(self, settings, fake_api):
        fake_api.add("GET", f"{meta_graph.GRAPH_URL}/me/accounts", {"data": [
            {"id": "p1", "name": "One", "access_token": "page-tok-1"},
            {"id": "p2", "name": "Two", "access_token": "page-tok-2"},
        ]})
        adapter = build_adapters(settings, fake_api.transport)[Platform.FACEBOOK]

        target = await adapter.resolve_container("user-tok", "p2")

        assert target == QueryTarget(identity_key="p2", access_token="page-tok-2")
        with pytest.raises(IdentityNotFound):
            await adapter.resolve_container("user-tok", "gone")

    @pytest.mark.asyncio
    async def test_youtube_daily_batch_sums_and_averages(self, settings, fake_api):
        fake_api.add("GET", youtube.ANALYTICS_API, {
            "columnHeaders": [{"name": "day"}, {"name": "views"}, {"name": "averageViewDuration"}],
            "rows": [["2024-04-01", 10, 30], ["2024-04-02", 20, 60]],
        })
        adapter = build_adapters(settings, fake_api.transport)[Platform.YOUTUBE]
        daily = adapter.metric_batches()[0]

        result = await adapter.fetch_metric_batch(QueryTarget("UC1", "tok"), daily, WINDOW)

        assert result.totals["views"] == 30
        assert result.totals["averageViewDuration"] == 45
        assert result.series["views"] == [("2024-04-01", 10), ("2024-04-02", 20)]
        assert fake_api.calls[0].url.params["ids"] == "channel==UC1"
