# src/infrastructure/providers/instagram.py
from typing import Any, Dict, List, Optional

import structlog

from src.config import Platform, ProviderConfig
from src.errors import IdentityNotFound, NoRefreshCapability, ProviderRequestError
from src.infrastructure.provider_client import ProviderClient
from src.infrastructure.providers import meta_graph
from src.infrastructure.providers.base import (
    BatchResult,
    MetricBatch,
    MetricsWindow,
    ProviderIdentity,
    QueryTarget,
    TokenSet,
)

logger = structlog.get_logger(__name__)

IG_ACCOUNT_FIELDS = "id,username,name,profile_picture_url,followers_count,media_count"
MEDIA_FIELDS = (
    "id,caption,timestamp,media_type,media_product_type,permalink,"
    "thumbnail_url,media_url,like_count,comments_count"
)


class InstagramAdapter:
    """
    Instagram professional accounts through Facebook Login.

    The authorized entity is the Facebook user; the content-owning identity is the Instagram
    business account linked to one of that user's pages, found by probing each page.
    """

    platform = Platform.INSTAGRAM
    identity_field = "igBusinessAccountId"
    refreshes_with_access_token = True
    max_items = 50

    profile_fields = {
        "id": "id",
        "name": "display_name",
        "username": "username",
        "followers_count": "followers",
        "media_count": "items_count",
        "profile_picture_url": "picture_url",
    }
    aggregate_fields = {
        "reach": "reach",
        "follower_count": "followers_gained",
        "profile_views": "profile_views",
        "website_clicks": "website_clicks",
        "accounts_engaged": "accounts_engaged",
        "total_interactions": "interactions",
    }
    audience_fields = ("online_hours",)
    item_fields = {
        "id": "id",
        "caption": "title",
        "timestamp": "published_at",
        "permalink": "url",
        "thumbnail_url": "thumbnail_url",
        "media_type": "media_type",
    }
    item_metric_fields = {
        "like_count": "likes",
        "comments_count": "comments",
        "reach": "reach",
        "saved": "saves",
        "shares": "shares",
        "total_interactions": "interactions",
        "views": "views",
    }

    resolve_container = None

    def __init__(self, config: ProviderConfig, client: ProviderClient):
        self.config = config
        self.client = client

    def authorization_url(self, state: str) -> str:
        return meta_graph.dialog_url(self.config, self.platform, state)

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenSet:
        return await meta_graph.exchange_code(self.client, self.config, self.platform, code, redirect_uri)

    async def upgrade_token(self, access_token: str) -> TokenSet:
        return await meta_graph.exchange_long_lived(self.client, self.config, self.platform, access_token)

    async def refresh(self, credential: Optional[str]) -> TokenSet:
        if not credential:
            raise NoRefreshCapability("instagram account has no token to extend")
        return await meta_graph.exchange_long_lived(self.client, self.config, self.platform, credential)

    async def resolve_identity(self, access_token: str) -> ProviderIdentity:
        pages = await meta_graph.list_pages(self.client, access_token)
        for page in pages:
            try:
                node = await meta_graph.get_node(
                    self.client, page["id"], access_token,
                    f"instagram_business_account{{{IG_ACCOUNT_FIELDS}}}",
                )
            except ProviderRequestError as exc:
                logger.warning("instagram_page_lookup_failed", page_id=page["id"], status=exc.status_code)
                continue
            ig = node.get("instagram_business_account")
            if not ig or not ig.get("id"):
                continue
            display = ig.get("name") or ig.get("username")
            return ProviderIdentity(
                identity_key=ig["id"],
                display_name=display,
                raw=ig,
                metadata={
                    "igBusinessAccountId": ig["id"],
                    "pageId": page["id"],
                    "pageName": page.get("name"),
                    "username": ig.get("username"),
                    "displayName": display,
                    "pictureUrl": ig.get("profile_picture_url"),
                    "followers": ig.get("followers_count"),
                    "itemsCount": ig.get("media_count"),
                },
            )
        raise IdentityNotFound(f"none of {len(pages)} pages has a linked Instagram business account")

    async def fetch_profile(self, target: QueryTarget) -> Dict[str, Any]:
        return await meta_graph.get_node(
            self.client, target.identity_key, target.access_token,
            "id,username,name,profile_picture_url,followers_count,follows_count,media_count,biography,website",
        )

    def metric_batches(self):
        # follower_count only exists as time_series and the engagement totals only as
        # total_value; one request mixing them is rejected by the Graph API
        return (
            MetricBatch("daily", ("reach", "follower_count"), "time_series"),
            MetricBatch("totals", ("profile_views", "website_clicks", "accounts_engaged", "total_interactions"), "total_value"),
            MetricBatch("online_followers", ("online_followers",), "lifetime", optional=True),
        )

    async def fetch_metric_batch(self, target: QueryTarget, batch: MetricBatch, window: MetricsWindow) -> BatchResult:
        params: Dict[str, Any] = {"metric": ",".join(batch.metrics)}
        if batch.kind == "lifetime":
            params["period"] = "lifetime"
        else:
            params.update(period="day", since=meta_graph.unix_time(window.start), until=meta_graph.unix_time(window.end, end_of_day=True))
        if batch.kind == "total_value":
            params["metric_type"] = "total_value"
        body = await meta_graph.get_insights(self.client, target.identity_key, target.access_token, **params)
        result = meta_graph.parse_insights(body, audience_keys={"online_followers": "online_hours"})
        hours = result.audience.get("online_hours")
        if isinstance(hours, dict):
            result.audience["online_hours"] = [
                {"hour": h, "value": hours.get(str(h), hours.get(h, 0)) or 0} for h in range(24)
            ]
        return result

    async def list_items(self, target: QueryTarget, limit: int) -> List[Dict[str, Any]]:
        body = await self.client.get(
            f"{meta_graph.GRAPH_URL}/{target.identity_key}/media",
            params={"fields": MEDIA_FIELDS, "limit": min(limit, self.max_items), "access_token": target.access_token},
        )
        items = []
        for media in body.get("data") or []:
            if not media.get("id"):
                continue
            media = dict(media)
            if not media.get("thumbnail_url") and media.get("media_type") != "VIDEO":
                media["thumbnail_url"] = media.get("media_url")
            items.append(media)
        return items

    async def fetch_item_metrics(self, target: QueryTarget, item: Dict[str, Any]) -> Dict[str, Any]:
        metrics = ["reach", "saved", "shares", "total_interactions"]
        if item.get("media_type") == "VIDEO" or item.get("media_product_type") == "REELS":
            metrics.append("views")
        body = await meta_graph.get_insights(self.client, item["id"], target.access_token, metric=",".join(metrics))
        return meta_graph.first_insight_values(body)
