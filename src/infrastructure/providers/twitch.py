# src/infrastructure/providers/twitch.py
import re
from typing import Any, Dict, List, Optional

from src.config import Platform, ProviderConfig
from src.errors import IdentityNotFound, NoRefreshCapability, ProviderRequestError, TokenExchangeFailed
from src.infrastructure.provider_client import ProviderClient
from src.infrastructure.providers.base import (
    BatchResult,
    MetricBatch,
    MetricsWindow,
    ProviderIdentity,
    QueryTarget,
    TokenSet,
    build_url,
    parse_token_response,
    require_configured,
    to_number,
)

AUTH_URL = "https://id.twitch.tv/oauth2/authorize"
TOKEN_URL = "https://id.twitch.tv/oauth2/token"
HELIX_URL = "https://api.twitch.tv/helix"

_DURATION_RE = re.compile(r"^(?:(\d+)h)?(?:(\d+)m)?(?:(\d+)s)?$")


def twitch_duration_to_seconds(duration: Optional[str]) -> Optional[int]:
    """Helix durations look like 1h2m3s."""
    if not duration:
        return None
    m = _DURATION_RE.match(duration)
    if not m or not any(m.groups()):
        return None
    hours, mins, secs = (int(g or 0) for g in m.groups())
    return hours * 3600 + mins * 60 + secs


class TwitchAdapter:
    platform = Platform.TWITCH
    identity_field = "broadcasterId"
    refreshes_with_access_token = False
    max_items = 100

    profile_fields = {
        "id": "id",
        "display_name": "display_name",
        "login": "username",
        "profile_image_url": "picture_url",
    }
    aggregate_fields = {
        "followers_total": "followers",
        "subscriptions_total": "subscriptions",
    }
    audience_fields = ()
    item_fields = {
        "id": "id",
        "title": "title",
        "published_at": "published_at",
        "url": "url",
        "thumbnail_url": "thumbnail_url",
        "type": "media_type",
        "viewable": "visibility",
        "durationSeconds": "duration_seconds",
    }
    item_metric_fields = {
        "view_count": "views",
    }

    upgrade_token = None
    resolve_container = None

    def __init__(self, config: ProviderConfig, client: ProviderClient):
        self.config = config
        self.client = client

    def _headers(self, token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token}", "Client-Id": self.config.client_id or ""}

    def authorization_url(self, state: str) -> str:
        cfg = require_configured(self.config, self.platform)
        return build_url(AUTH_URL, {
            "client_id": cfg.client_id,
            "redirect_uri": cfg.redirect_uri,
            "response_type": "code",
            "scope": " ".join(cfg.scopes),
            "state": state,
        })

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenSet:
        cfg = require_configured(self.config, self.platform)
        try:
            body = await self.client.post(TOKEN_URL, data={
                "client_id": cfg.client_id,
                "client_secret": cfg.client_secret,
                "code": code,
                "grant_type": "authorization_code",
                "redirect_uri": redirect_uri,
            })
        except ProviderRequestError as exc:
            raise TokenExchangeFailed(str(exc)) from exc
        return parse_token_response(self.platform, body)

    async def refresh(self, credential: Optional[str]) -> TokenSet:
        if not credential:
            raise NoRefreshCapability("twitch account has no refresh token")
        cfg = require_configured(self.config, self.platform)
        body = await self.client.post(TOKEN_URL, data={
            "client_id": cfg.client_id,
            "client_secret": cfg.client_secret,
            "grant_type": "refresh_token",
            "refresh_token": credential,
        })
        return parse_token_response(self.platform, body)

    async def _user(self, token: str, **selector: str) -> Optional[Dict[str, Any]]:
        body = await self.client.get(f"{HELIX_URL}/users", headers=self._headers(token), params=selector or None)
        users = body.get("data") or []
        return users[0] if users else None

    async def resolve_identity(self, access_token: str) -> ProviderIdentity:
        user = await self._user(access_token)
        if not user or not user.get("id"):
            raise IdentityNotFound("twitch returned no user for this token")
        return ProviderIdentity(
            identity_key=user["id"],
            display_name=user.get("display_name") or user.get("login"),
            raw={k: v for k, v in user.items() if k != "email"},
            metadata={
                "broadcasterId": user["id"],
                "login": user.get("login"),
                "username": user.get("login"),
                "displayName": user.get("display_name") or user.get("login"),
                "pictureUrl": user.get("profile_image_url"),
                "broadcasterType": user.get("broadcaster_type"),
            },
        )

    async def fetch_profile(self, target: QueryTarget) -> Dict[str, Any]:
        user = await self._user(target.access_token, id=target.identity_key)
        if not user:
            raise ProviderRequestError(self.platform.value, f"user {target.identity_key} not found")
        return user

    def metric_batches(self):
        return (
            MetricBatch("followers", ("followers_total",), "total_value"),
            # only affiliates and partners have subscriptions; 4xx otherwise
            MetricBatch("subscriptions", ("subscriptions_total",), "total_value", optional=True),
        )

    async def fetch_metric_batch(self, target: QueryTarget, batch: MetricBatch, window: MetricsWindow) -> BatchResult:
        path = "channels/followers" if batch.name == "followers" else "subscriptions"
        body = await self.client.get(
            f"{HELIX_URL}/{path}",
            headers=self._headers(target.access_token),
            params={"broadcaster_id": target.identity_key, "first": 1},
        )
        return BatchResult(totals={batch.metrics[0]: to_number(body.get("total"))})

    async def list_items(self, target: QueryTarget, limit: int) -> List[Dict[str, Any]]:
        body = await self.client.get(
            f"{HELIX_URL}/videos",
            headers=self._headers(target.access_token),
            params={"user_id": target.identity_key, "first": min(limit, self.max_items)},
        )
        items = []
        for video in body.get("data") or []:
            if not video.get("id"):
                continue
            thumb = video.get("thumbnail_url") or ""
            items.append({
                **video,
                "thumbnail_url": thumb.replace("%{width}", "320").replace("%{height}", "180") or None,
                "durationSeconds": twitch_duration_to_seconds(video.get("duration")),
            })
        return items

    async def fetch_item_metrics(self, target: QueryTarget, item: Dict[str, Any]) -> Dict[str, Any]:
        body = await self.client.get(
            f"{HELIX_URL}/videos",
            headers=self._headers(target.access_token),
            params={"id": item["id"]},
        )
        videos = body.get("data") or []
        if not videos:
            raise ProviderRequestError(self.platform.value, f"video {item['id']} not found")
        return {"view_count": to_number(videos[0].get("view_count"))}
