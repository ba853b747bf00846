# src/schemas/integration_schema.py
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
import uuid
from datetime import date, datetime

from src.config import Platform


class CanonicalProfile(BaseModel):
    id: Optional[str] = None
    display_name: Optional[str] = None
    username: Optional[str] = None
    followers: Optional[float] = None
    items_count: Optional[float] = None
    total_views: Optional[float] = None
    picture_url: Optional[str] = None
    # True when the provider call failed and the values come from stored metadata
    from_cache: bool = False


class CanonicalItem(BaseModel):
    id: str
    title: Optional[str] = None
    published_at: Optional[str] = None
    url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    media_type: Optional[str] = None
    visibility: Optional[str] = None
    duration_seconds: Optional[int] = None
    # None when this item's enrichment call failed
    metrics: Optional[Dict[str, Optional[float]]] = None


class CanonicalMetricsResult(BaseModel):
    account_id: uuid.UUID
    platform: Platform
    synthetic: bool = False
    fetched_at: datetime
    window_start: date
    window_end: date
    profile: CanonicalProfile
    metrics: Dict[str, Optional[float]] = Field(default_factory=dict)
    series: List[Dict[str, Any]] = Field(default_factory=list)
    audience: Dict[str, Any] = Field(default_factory=dict)
    items: List[CanonicalItem] = Field(default_factory=list)
    metrics_presence: Dict[str, bool] = Field(default_factory=dict)


class AccountSummary(BaseModel):
    id: uuid.UUID
    platform: Platform
    identity_key: Optional[str]
    display_name: str
    token_expires_at: Optional[datetime]
    token_expired: bool
    connected_at: datetime
    updated_at: datetime


class ConnectRequest(BaseModel):
    platform: Platform
    access_token: str = Field(min_length=1)
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = Field(default=None, gt=0)
    identity_key: Optional[str] = None
    display_name: Optional[str] = None


class AuthorizationUrl(BaseModel):
    url: str


class PlatformStatus(BaseModel):
    platform: Platform
    configured: bool
    scopes: List[str]


CANONICAL_AGGREGATES = (
    "followers", "followers_gained", "followers_lost", "reach", "impressions", "views",
    "watch_minutes", "average_view_duration", "profile_views", "website_clicks",
    "accounts_engaged", "interactions", "likes", "comments", "shares", "subscriptions",
)
CANONICAL_ITEM_METRICS = (
    "views", "likes", "comments", "shares", "saves", "reach", "impressions", "interactions", "clicks",
)
