# src/infrastructure/providers/youtube.py
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

AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"
DATA_API = "https://www.googleapis.com/youtube/v3"
ANALYTICS_API = "https://youtubeanalytics.googleapis.com/v2/reports"

_DURATION_RE = re.compile(r"^P(?:(\d+)D)?T?(?:(\d+)H)?(?:(\d+)M)?(?:(\d+)S)?$")


def iso_duration_to_seconds(duration: Optional[str]) -> Optional[int]:
    """PT1H2M3S -> 3723. Returns None for anything that is not an ISO-8601 duration."""
    if not duration or not isinstance(duration, str):
        return None
    m = _DURATION_RE.match(duration)
    if not m or not any(m.groups()):
        return None
    days, hours, mins, secs = (int(g or 0) for g in m.groups())
    return days * 86400 + hours * 3600 + mins * 60 + secs


class YouTubeAdapter:
    platform = Platform.YOUTUBE
    identity_field = "channelId"
    refreshes_with_access_token = False
    max_items = 50

    profile_fields = {
        "id": "id",
        "title": "display_name",
        "customUrl": "username",
        "subscriberCount": "followers",
        "videoCount": "items_count",
        "viewCount": "total_views",
        "thumbnailUrl": "picture_url",
    }
    aggregate_fields = {
        "views": "views",
        "estimatedMinutesWatched": "watch_minutes",
        "averageViewDuration": "average_view_duration",
        "subscribersGained": "followers_gained",
        "subscribersLost": "followers_lost",
        "likes": "likes",
        "comments": "comments",
        "shares": "shares",
    }
    audience_fields = ("by_country", "by_device", "by_age_gender")
    item_fields = {
        "videoId": "id",
        "title": "title",
        "publishedAt": "published_at",
        "url": "url",
        "thumbnailUrl": "thumbnail_url",
        "kind": "media_type",
        "privacyStatus": "visibility",
        "durationSeconds": "duration_seconds",
    }
    item_metric_fields = {
        "viewCount": "views",
        "likeCount": "likes",
        "commentCount": "comments",
    }

    # single-step grant, ids are usable as-is
    upgrade_token = None
    resolve_container = None

    def __init__(self, config: ProviderConfig, client: ProviderClient):
        self.config = config
        self.client = client

    @staticmethod
    def _auth(token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    def authorization_url(self, state: str) -> str:
        cfg = require_configured(self.config, self.platform)
        return build_url(AUTH_URL, {
            "client_id": cfg.client_id,
            "redirect_uri": cfg.redirect_uri,
            "response_type": "code",
            "scope": " ".join(cfg.scopes),
            "access_type": "offline",
            "prompt": "consent",
            "include_granted_scopes": "true",
            "state": state,
        })

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenSet:
        cfg = require_configured(self.config, self.platform)
        try:
            body = await self.client.post(TOKEN_URL, data={
                "code": code,
                "client_id": cfg.client_id,
                "client_secret": cfg.client_secret,
                "redirect_uri": redirect_uri,
                "grant_type": "authorization_code",
            })
        except ProviderRequestError as exc:
            raise TokenExchangeFailed(str(exc)) from exc
        return parse_token_response(self.platform, body)

    async def refresh(self, credential: Optional[str]) -> TokenSet:
        if not credential:
            raise NoRefreshCapability("youtube account has no refresh token")
        cfg = require_configured(self.config, self.platform)
        body = await self.client.post(TOKEN_URL, data={
            "client_id": cfg.client_id,
            "client_secret": cfg.client_secret,
            "grant_type": "refresh_token",
            "refresh_token": credential,
        })
        return parse_token_response(self.platform, body)

    async def _channel(self, token: str, **selector: str) -> Optional[Dict[str, Any]]:
        body = await self.client.get(
            f"{DATA_API}/channels",
            headers=self._auth(token),
            params={"part": "snippet,statistics", **selector},
        )
        items = body.get("items") or []
        return items[0] if items else None

    @staticmethod
    def _flatten_channel(channel: Dict[str, Any]) -> Dict[str, Any]:
        snippet = channel.get("snippet") or {}
        stats = channel.get("statistics") or {}
        thumbs = snippet.get("thumbnails") or {}
        thumb = (thumbs.get("high") or thumbs.get("medium") or thumbs.get("default") or {}).get("url")
        return {
            "id": channel.get("id"),
            "title": snippet.get("title"),
            "customUrl": snippet.get("customUrl"),
            "thumbnailUrl": thumb,
            "subscriberCount": None if stats.get("hiddenSubscriberCount") else stats.get("subscriberCount"),
            "videoCount": stats.get("videoCount"),
            "viewCount": stats.get("viewCount"),
        }

    async def resolve_identity(self, access_token: str) -> ProviderIdentity:
        channel = await self._channel(access_token, mine="true")
        if not channel:
            raise IdentityNotFound("no YouTube channel is linked to this Google account")
        flat = self._flatten_channel(channel)
        return ProviderIdentity(
            identity_key=flat["id"],
            display_name=flat["title"],
            raw=channel,
            metadata={
                "channelId": flat["id"],
                "title": flat["title"],
                "displayName": flat["title"],
                "username": flat["customUrl"],
                "pictureUrl": flat["thumbnailUrl"],
                "followers": to_number(flat["subscriberCount"]),
                "itemsCount": to_number(flat["videoCount"]),
            },
        )

    async def fetch_profile(self, target: QueryTarget) -> Dict[str, Any]:
        channel = await self._channel(target.access_token, id=target.identity_key)
        if not channel:
            raise ProviderRequestError(self.platform.value, f"channel {target.identity_key} not found")
        return self._flatten_channel(channel)

    def metric_batches(self):
        return (
            MetricBatch("daily", ("views", "estimatedMinutesWatched", "averageViewDuration",
                                  "subscribersGained", "subscribersLost"), "time_series"),
            MetricBatch("totals", ("likes", "comments", "shares"), "total_value"),
            MetricBatch("by_country", ("views",), "breakdown", optional=True),
            MetricBatch("by_device", ("views",), "breakdown", optional=True),
            MetricBatch("by_age_gender", ("viewerPercentage",), "breakdown", optional=True),
        )

    async def _report(self, target: QueryTarget, window: MetricsWindow, metrics, **extra) -> Dict[str, Any]:
        params = {
            "ids": f"channel=={target.identity_key}",
            "startDate": window.start.isoformat(),
            "endDate": window.end.isoformat(),
            "metrics": ",".join(metrics),
            **extra,
        }
        return await self.client.get(ANALYTICS_API, headers=self._auth(target.access_token), params=params)

    async def fetch_metric_batch(self, target: QueryTarget, batch: MetricBatch, window: MetricsWindow) -> BatchResult:
        result = BatchResult()
        if batch.name == "daily":
            body = await self._report(target, window, batch.metrics, dimensions="day", sort="day")
            headers = [h.get("name") for h in body.get("columnHeaders") or []]
            rows = body.get("rows") or []
            for i, name in enumerate(headers):
                if i == 0 or name not in batch.metrics:
                    continue
                points = [(row[0], to_number(row[i])) for row in rows]
                result.series[name] = points
                values = [v for _, v in points if v is not None]
                if name == "averageViewDuration":
                    result.totals[name] = round(sum(values) / len(values), 2) if values else None
                else:
                    result.totals[name] = sum(values) if values else 0
        elif batch.name == "totals":
            body = await self._report(target, window, batch.metrics)
            headers = [h.get("name") for h in body.get("columnHeaders") or []]
            rows = body.get("rows") or []
            if rows:
                for name, value in zip(headers, rows[0]):
                    result.totals[name] = to_number(value)
        elif batch.name == "by_country":
            body = await self._report(target, window, batch.metrics, dimensions="country", sort="-views", maxResults=10)
            result.audience["by_country"] = [
                {"key": row[0], "value": to_number(row[1])} for row in body.get("rows") or []
            ]
        elif batch.name == "by_device":
            body = await self._report(target, window, batch.metrics, dimensions="deviceType", sort="-views", maxResults=10)
            result.audience["by_device"] = [
                {"key": str(row[0]).lower(), "value": to_number(row[1])} for row in body.get("rows") or []
            ]
        elif batch.name == "by_age_gender":
            body = await self._report(target, window, batch.metrics, dimensions="ageGroup,gender")
            result.audience["by_age_gender"] = [
                {"age_group": row[0], "gender": row[1], "value": to_number(row[2])} for row in body.get("rows") or []
            ]
        return result

    async def list_items(self, target: QueryTarget, limit: int) -> List[Dict[str, Any]]:
        body = await self.client.get(
            f"{DATA_API}/search",
            headers=self._auth(target.access_token),
            params={
                "part": "id,snippet",
                "channelId": target.identity_key,
                "type": "video",
                "order": "date",
                "maxResults": min(limit, self.max_items),
            },
        )
        items = []
        for entry in body.get("items") or []:
            video_id = (entry.get("id") or {}).get("videoId")
            if not video_id:
                continue
            snippet = entry.get("snippet") or {}
            thumbs = snippet.get("thumbnails") or {}
            items.append({
                "videoId": video_id,
                "title": snippet.get("title"),
                "publishedAt": snippet.get("publishedAt"),
                "url": f"https://www.youtube.com/watch?v={video_id}",
                "thumbnailUrl": (thumbs.get("medium") or thumbs.get("default") or {}).get("url"),
                "kind": "video",
            })
        return items

    async def fetch_item_metrics(self, target: QueryTarget, item: Dict[str, Any]) -> Dict[str, Any]:
        body = await self.client.get(
            f"{DATA_API}/videos",
            headers=self._auth(target.access_token),
            params={"part": "contentDetails,statistics,status", "id": item["videoId"]},
        )
        videos = body.get("items") or []
        if not videos:
            raise ProviderRequestError(self.platform.value, f"video {item['videoId']} not found")
        video = videos[0]
        stats = video.get("statistics") or {}
        return {
            "viewCount": to_number(stats.get("viewCount")),
            "likeCount": to_number(stats.get("likeCount")),
            "commentCount": to_number(stats.get("commentCount")),
            "privacyStatus": (video.get("status") or {}).get("privacyStatus"),
            "durationSeconds": iso_duration_to_seconds((video.get("contentDetails") or {}).get("duration")),
        }
