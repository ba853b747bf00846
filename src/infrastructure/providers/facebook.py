# src/infrastructure/providers/facebook.py
from typing import Any, Dict, List, Optional

from src.config import Platform, ProviderConfig
from src.errors import IdentityNotFound, NoRefreshCapability
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


class FacebookAdapter:
    """Facebook pages. Metric calls need the page token, which is looked up from the user token on demand."""

    platform = Platform.FACEBOOK
    identity_field = "pageId"
    refreshes_with_access_token = True
    max_items = 100

    profile_fields = {
        "id": "id",
        "name": "display_name",
        "username": "username",
        "followers_count": "followers",
        "picture_url": "picture_url",
    }
    aggregate_fields = {
        "page_impressions": "impressions",
        "page_impressions_unique": "reach",
        "page_post_engagements": "interactions",
        "page_fans": "followers",
        "page_views_total": "profile_views",
    }
    audience_fields = ()
    item_fields = {
        "id": "id",
        "message": "title",
        "created_time": "published_at",
        "permalink_url": "url",
        "full_picture": "thumbnail_url",
        "kind": "media_type",
    }
    item_metric_fields = {
        "post_impressions": "impressions",
        "post_impressions_unique": "reach",
        "post_clicks": "clicks",
        "post_reactions_like_total": "likes",
    }

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
            raise NoRefreshCapability("facebook account has no token to extend")
        return await meta_graph.exchange_long_lived(self.client, self.config, self.platform, credential)

    async def resolve_identity(self, access_token: str) -> ProviderIdentity:
        pages = await meta_graph.list_pages(self.client, access_token)
        for page in pages:
            if not page.get("access_token"):
                continue
            return ProviderIdentity(
                identity_key=page["id"],
                display_name=page.get("name"),
                raw={k: v for k, v in page.items() if k != "access_token"},
                metadata={
                    "pageId": page["id"],
                    "pageName": page.get("name"),
                    "displayName": page.get("name"),
                    "category": page.get("category"),
                },
            )
        raise IdentityNotFound("the Facebook user manages no pages")

    async def resolve_container(self, access_token: str, identity_key: str) -> QueryTarget:
        for page in await meta_graph.list_pages(self.client, access_token):
            if page["id"] == identity_key and page.get("access_token"):
                return QueryTarget(identity_key=identity_key, access_token=page["access_token"])
        raise IdentityNotFound(f"page {identity_key} is no longer accessible with this token")

    async def fetch_profile(self, target: QueryTarget) -> Dict[str, Any]:
        node = await meta_graph.get_node(
            self.client, target.identity_key, target.access_token,
            "id,name,username,fan_count,followers_count,picture{url}",
        )
        node = dict(node)
        node["picture_url"] = ((node.pop("picture", None) or {}).get("data") or {}).get("url")
        if node.get("followers_count") is None:
            node["followers_count"] = node.get("fan_count")
        return node

    def metric_batches(self):
        return (
            MetricBatch("daily", ("page_impressions", "page_impressions_unique", "page_post_engagements"), "time_series"),
            MetricBatch("lifetime", ("page_fans",), "lifetime"),
            MetricBatch("page_views", ("page_views_total",), "time_series", optional=True),
        )

    async def fetch_metric_batch(self, target: QueryTarget, batch: MetricBatch, window: MetricsWindow) -> BatchResult:
        params: Dict[str, Any] = {
            "metric": ",".join(batch.metrics),
            "period": "day",
            "since": meta_graph.unix_time(window.start),
            "until": meta_graph.unix_time(window.end, end_of_day=True),
        }
        if batch.kind == "lifetime":
            # page_fans is reported as a daily lifetime snapshot; keep only the latest
            params["period"] = "lifetime"
        body = await meta_graph.get_insights(self.client, target.identity_key, target.access_token, **params)
        return meta_graph.parse_insights(body)

    async def list_items(self, target: QueryTarget, limit: int) -> List[Dict[str, Any]]:
        body = await self.client.get(
            f"{meta_graph.GRAPH_URL}/{target.identity_key}/posts",
            params={
                "fields": "id,message,created_time,permalink_url,full_picture",
                "limit": min(limit, self.max_items),
                "access_token": target.access_token,
            },
        )
        return [dict(post, kind="post") for post in body.get("data") or [] if post.get("id")]

    async def fetch_item_metrics(self, target: QueryTarget, item: Dict[str, Any]) -> Dict[str, Any]:
        body = await meta_graph.get_insights(
            self.client, item["id"], target.access_token,
            metric="post_impressions,post_impressions_unique,post_clicks,post_reactions_like_total",
        )
        return meta_graph.first_insight_values(body)
