# src/services/demo_metrics.py
"""Generated metrics for demo accounts, so the UI and tests work without provider credentials."""
import hashlib
import random
from datetime import datetime, timedelta
from typing import List

from src.config import Platform
from src.infrastructure.providers.base import MetricsWindow
from src.models.integration_account import IntegrationAccount
from src.schemas.integration_schema import (
    CANONICAL_AGGREGATES,
    CanonicalItem,
    CanonicalMetricsResult,
    CanonicalProfile,
)

DEMO_ITEM_COUNT = 6
SERIES_METRICS = ("views", "reach", "followers_gained")
DEMO_COUNTRIES = ("US", "GB", "DE", "BR", "IN")
DEMO_DEVICES = ("mobile", "desktop", "tablet", "tv")


def demo_identity_key(access_token: str) -> str:
    return "demo-" + hashlib.sha256(access_token.encode()).hexdigest()[:16]


def _rng(account: IntegrationAccount) -> random.Random:
    # str seeds are stable across processes
    return random.Random(f"{account.id}:{account.platform}")


def demo_items(account: IntegrationAccount, published_before: datetime, count: int = DEMO_ITEM_COUNT) -> List[CanonicalItem]:
    rng = _rng(account)
    items = []
    for i in range(count):
        views = rng.randint(200, 50_000)
        published = published_before - timedelta(days=i * 3 + 1)
        items.append(CanonicalItem(
            id=f"demo-{account.platform}-{i + 1}",
            title=f"Demo {account.platform} post #{i + 1}",
            published_at=published.replace(microsecond=0).isoformat(),
            url=None,
            thumbnail_url=None,
            media_type="video" if i % 2 == 0 else "image",
            visibility="public",
            duration_seconds=rng.choice((15, 45, 58, 120, 300)) if i % 2 == 0 else None,
            metrics={
                "views": views,
                "likes": int(views * rng.uniform(0.02, 0.12)),
                "comments": int(views * rng.uniform(0.002, 0.02)),
                "shares": int(views * rng.uniform(0.001, 0.01)),
                "reach": int(views * rng.uniform(0.6, 0.95)),
            },
        ))
    return items


def demo_result(account: IntegrationAccount, window: MetricsWindow, now: datetime) -> CanonicalMetricsResult:
    rng = _rng(account)
    followers = rng.randint(1_000, 250_000)
    meta = account.meta or {}

    series = []
    totals = {name: 0 for name in SERIES_METRICS}
    for offset in range(window.days):
        row = {"date": (window.start + timedelta(days=offset)).isoformat()}
        for name in SERIES_METRICS:
            value = rng.randint(0, followers // 10) if name != "followers_gained" else rng.randint(0, 60)
            row[name] = value
            totals[name] += value
        series.append(row)

    metrics = {name: rng.randint(10, followers) for name in CANONICAL_AGGREGATES}
    metrics.update(totals)
    metrics["followers"] = followers
    metrics["followers_lost"] = rng.randint(0, max(totals["followers_gained"] // 3, 1))
    metrics["average_view_duration"] = round(rng.uniform(8, 240), 2)

    shares = [rng.random() for _ in DEMO_COUNTRIES]
    audience = {
        "by_country": [
            {"key": c, "value": round(s / sum(shares) * 100, 2)} for c, s in zip(DEMO_COUNTRIES, shares)
        ],
        "by_device": [{"key": d, "value": rng.randint(0, totals["views"] or 1)} for d in DEMO_DEVICES],
        "online_hours": [{"hour": h, "value": rng.randint(0, followers // 50)} for h in range(24)],
    }

    return CanonicalMetricsResult(
        account_id=account.id,
        platform=Platform(account.platform),
        synthetic=True,
        fetched_at=now,
        window_start=window.start,
        window_end=window.end,
        profile=CanonicalProfile(
            id=account.identity_key or f"demo-{account.platform}",
            display_name=meta.get("displayName") or f"Demo {account.platform} account",
            username=meta.get("username") or "demo",
            followers=followers,
            items_count=DEMO_ITEM_COUNT,
            picture_url=None,
        ),
        metrics=metrics,
        series=series,
        audience=audience,
        items=demo_items(account, datetime.combine(window.end, datetime.min.time())),
        metrics_presence={name: True for name in (*CANONICAL_AGGREGATES, *audience)},
    )
