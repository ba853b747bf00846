# src/infrastructure/providers/meta_graph.py
"""Graph API helpers shared by the Instagram and Facebook adapters (one Meta app serves both)."""
import calendar
from datetime import date, datetime, time
from typing import Any, Dict, List, Optional

from src.config import Platform, ProviderConfig
from src.errors import ProviderRequestError, TokenExchangeFailed
from src.infrastructure.provider_client import ProviderClient
from src.infrastructure.providers.base import (
    BatchResult,
    TokenSet,
    build_url,
    parse_token_response,
    require_configured,
    to_number,
)

GRAPH_VERSION = "v19.0"
DIALOG_URL = f"https://www.facebook.com/{GRAPH_VERSION}/dialog/oauth"
GRAPH_URL = f"https://graph.facebook.com/{GRAPH_VERSION}"


def unix_time(day: date, end_of_day: bool = False) -> int:
    moment = datetime.combine(day, time.max if end_of_day else time.min)
    return calendar.timegm(moment.utctimetuple())


def dialog_url(config: Optional[ProviderConfig], platform: Platform, state: str) -> str:
    cfg = require_configured(config, platform)
    return build_url(DIALOG_URL, {
        "client_id": cfg.client_id,
        "redirect_uri": cfg.redirect_uri,
        "state": state,
        "scope": ",".join(cfg.scopes),
        "response_type": "code",
    })


async def exchange_code(client: ProviderClient, config: Optional[ProviderConfig], platform: Platform, code: str, redirect_uri: str) -> TokenSet:
    cfg = require_configured(config, platform)
    try:
        body = await client.get(f"{GRAPH_URL}/oauth/access_token", params={
            "client_id": cfg.client_id,
            "client_secret": cfg.client_secret,
            "redirect_uri": redirect_uri,
            "code": code,
        })
    except ProviderRequestError as exc:
        raise TokenExchangeFailed(str(exc)) from exc
    return parse_token_response(platform, body)


async def exchange_long_lived(client: ProviderClient, config: Optional[ProviderConfig], platform: Platform, access_token: str) -> TokenSet:
    """
    fb_exchange_token grant. Used both to upgrade the short-lived code-exchange token and,
    while the current token is still valid, to extend it (Meta issues no refresh tokens).
    """
    cfg = require_configured(config, platform)
    body = await client.get(f"{GRAPH_URL}/oauth/access_token", params={
        "grant_type": "fb_exchange_token",
        "client_id": cfg.client_id,
        "client_secret": cfg.client_secret,
        "fb_exchange_token": access_token,
    })
    return parse_token_response(platform, body)


async def list_pages(client: ProviderClient, access_token: str) -> List[Dict[str, Any]]:
    body = await client.get(f"{GRAPH_URL}/me/accounts", params={
        "fields": "id,name,access_token,category",
        "limit": 100,
        "access_token": access_token,
    })
    return [p for p in body.get("data") or [] if p.get("id")]


async def get_node(client: ProviderClient, node_id: str, access_token: str, fields: str) -> Dict[str, Any]:
    return await client.get(f"{GRAPH_URL}/{node_id}", params={"fields": fields, "access_token": access_token})


async def get_insights(client: ProviderClient, node_id: str, access_token: str, **params: Any) -> Dict[str, Any]:
    return await client.get(
        f"{GRAPH_URL}/{node_id}/insights",
        params={**params, "access_token": access_token},
    )


def parse_insights(body: Dict[str, Any], audience_keys: Optional[Dict[str, str]] = None) -> BatchResult:
    """
    Fold a Graph ``/insights`` answer into a BatchResult.

    ``total_value`` entries become totals directly. ``values`` entries become a daily series;
    their total is the sum for ``day`` periods and the latest value otherwise. Dict-valued
    metrics (hour maps, demographics) are routed to ``audience`` via ``audience_keys``.
    """
    audience_keys = audience_keys or {}
    result = BatchResult()
    for entry in body.get("data") or []:
        name = entry.get("name")
        if not name:
            continue
        if "total_value" in entry:
            result.totals[name] = to_number((entry.get("total_value") or {}).get("value"))
            continue
        values = entry.get("values") or []
        if name in audience_keys:
            latest = values[-1].get("value") if values else None
            if isinstance(latest, dict):
                result.audience[audience_keys[name]] = latest
            continue
        points = [((v.get("end_time") or "")[:10], to_number(v.get("value"))) for v in values]
        result.series[name] = points
        numbers = [v for _, v in points if v is not None]
        if entry.get("period") == "day":
            result.totals[name] = sum(numbers) if numbers else 0
        else:
            result.totals[name] = numbers[-1] if numbers else None
    return result


def first_insight_values(body: Dict[str, Any]) -> Dict[str, Any]:
    """Per-object insights (media, posts): one value per metric."""
    out: Dict[str, Any] = {}
    for entry in body.get("data") or []:
        name = entry.get("name")
        if "total_value" in entry:
            out[name] = to_number((entry.get("total_value") or {}).get("value"))
            continue
        values = entry.get("values") or []
        out[name] = to_number(values[0].get("value")) if values else None
    return out
