# src/infrastructure/providers/tiktok.py
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog

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

logger = structlog.get_logger(__name__)

AUTH_URL = "https://www.tiktok.com/v2/auth/authorize/"
TOKEN_URL = "https://open.tiktokapis.com/v2/oauth/token/"
API_URL = "https://open.tiktokapis.com/v2"

USER_FIELDS = "open_id,union_id,avatar_url,display_name,follower_count,following_count,likes_count,video_count"
VIDEO_LIST_FIELDS = "id,title,video_description,create_time,cover_image_url,share_url,duration"
VIDEO_STATS_FIELDS = "id,view_count,like_count,comment_count,share_count"


class TikTokAdapter:
    platform = Platform.TIKTOK
    identity_field = "openId"
    refreshes_with_access_token = False
    max_items = 20

    profile_fields = {
        "open_id": "id",
        "display_name": "display_name",
        "avatar_url": "picture_url",
        "follower_count": "followers",
        "video_count": "items_count",
    }
    aggregate_fields = {
        "follower_count": "followers",
        "likes_count": "likes",
    }
    audience_fields = ()
    item_fields = {
        "id": "id",
        "title": "title",
        "published_at": "published_at",
        "share_url": "url",
        "cover_image_url": "thumbnail_url",
        "kind": "media_type",
        "duration": "duration_seconds",
    }
    item_metric_fields = {
        "view_count": "views",
        "like_count": "likes",
        "comment_count": "comments",
        "share_count": "shares",
    }

    upgrade_token = None
    resolve_container = None

    def __init__(self, config: ProviderConfig, client: ProviderClient):
        self.config = config
        self.client = client

    @staticmethod
    def _auth(token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    def _check(self, body: Dict[str, Any]) -> Dict[str, Any]:
        # TikTok answers 200 with {"error": {"code": "..."}} for many failures
        error = body.get("error") or {}
        if error.get("code") not in (None, "ok"):
            raise ProviderRequestError(self.platform.value, f"api error {error.get('code')}: {error.get('message')}")
        return body.get("data") or {}

    def authorization_url(self, state: str) -> str:
        cfg = require_configured(self.config, self.platform)
        return build_url(AUTH_URL, {
            "client_key": cfg.client_id,
            "redirect_uri": cfg.redirect_uri,
            "response_type": "code",
            "scope": ",".join(cfg.scopes),
            "state": state,
        })

    async def _token_request(self, form: Dict[str, Any]) -> Dict[str, Any]:
        cfg = require_configured(self.config, self.platform)
        return await self.client.post(
            TOKEN_URL,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            data={"client_key": cfg.client_id, "client_secret": cfg.client_secret, **form},
        )

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenSet:
        try:
            body = await self._token_request({
                "code": code,
                "grant_type": "authorization_code",
                "redirect_uri": redirect_uri,
            })
        except ProviderRequestError as exc:
            raise TokenExchangeFailed(str(exc)) from exc
        if body.get("error") and not body.get("access_token"):
            raise TokenExchangeFailed(f"tiktok: {body.get('error')}: {body.get('error_description')}")
        return parse_token_response(self.platform, body, open_id="open_id")

    async def refresh(self, credential: Optional[str]) -> TokenSet:
        if not credential:
            raise NoRefreshCapability("tiktok account has no refresh token")
        body = await self._token_request({"grant_type": "refresh_token", "refresh_token": credential})
        if body.get("error") and not body.get("access_token"):
            raise ProviderRequestError(self.platform.value, f"refresh rejected: {body.get('error')}")
        return parse_token_response(self.platform, body, open_id="open_id")

    async def _user_info(self, token: str) -> Dict[str, Any]:
        body = await self.client.get(
            f"{API_URL}/user/info/", headers=self._auth(token), params={"fields": USER_FIELDS}
        )
        return self._check(body).get("user") or {}

    async def resolve_identity(self, access_token: str) -> ProviderIdentity:
        user = await self._user_info(access_token)
        if not user.get("open_id"):
            raise IdentityNotFound("tiktok user info carried no open_id")
        return ProviderIdentity(
            identity_key=user["open_id"],
            display_name=user.get("display_name"),
            raw=user,
            metadata={
                "openId": user["open_id"],
                "unionId": user.get("union_id"),
                "displayName": user.get("display_name"),
                "pictureUrl": user.get("avatar_url"),
                "followers": user.get("follower_count"),
                "itemsCount": user.get("video_count"),
            },
        )

    async def fetch_profile(self, target: QueryTarget) -> Dict[str, Any]:
        return await self._user_info(target.access_token)

    def metric_batches(self):
        return (MetricBatch("stats", ("follower_count", "likes_count"), "total_value"),)

    async def fetch_metric_batch(self, target: QueryTarget, batch: MetricBatch, window: MetricsWindow) -> BatchResult:
        # the Display API has no windowed insights; account counters are lifetime totals
        user = await self._user_info(target.access_token)
        return BatchResult(totals={name: to_number(user.get(name)) for name in batch.metrics})

    async def list_items(self, target: QueryTarget, limit: int) -> List[Dict[str, Any]]:
        body = await self.client.post(
            f"{API_URL}/video/list/",
            headers=self._auth(target.access_token),
            params={"fields": VIDEO_LIST_FIELDS},
            json={"max_count": min(limit, self.max_items)},
        )
        items = []
        for video in self._check(body).get("videos") or []:
            if not video.get("id"):
                continue
            created = video.get("create_time")
            items.append({
                **video,
                "title": video.get("title") or video.get("video_description"),
                "published_at": (
                    datetime.fromtimestamp(int(created), tz=timezone.utc).isoformat() if created else None
                ),
                "kind": "video",
            })
        return items

    async def fetch_item_metrics(self, target: QueryTarget, item: Dict[str, Any]) -> Dict[str, Any]:
        body = await self.client.post(
            f"{API_URL}/video/query/",
            headers=self._auth(target.access_token),
            params={"fields": VIDEO_STATS_FIELDS},
            json={"filters": {"video_ids": [item["id"]]}},
        )
        videos = self._check(body).get("videos") or []
        if not videos:
            raise ProviderRequestError(self.platform.value, f"video {item['id']} not returned")
        return {k: to_number(v) for k, v in videos[0].items() if k != "id"}
