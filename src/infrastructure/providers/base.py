# src/infrastructure/providers/base.py
"""
Capability set shared by every provider adapter.

Adapters are plain classes that satisfy ``ProviderAdapter`` structurally; nothing inherits
from a common base. Two capabilities are optional and must be declared explicitly as
``None`` by adapters that lack them:

* ``upgrade_token`` - exchange a short-lived token for a long-lived one.
* ``resolve_container`` - turn a stored identity key into the token/id pair that actually
  owns the content (page tokens for Facebook pages).

Each adapter also publishes explicit native -> canonical name tables. Fields missing from
those tables are dropped during normalization.
"""
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

import httpx

from src.config import Platform, ProviderConfig
from src.errors import ConfigurationMissing, TokenExchangeFailed


@dataclass(frozen=True)
class TokenSet:
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    scope: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProviderIdentity:
    identity_key: Optional[str]
    display_name: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)
    # provider-specific fields to persist on IntegrationAccount.meta
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class QueryTarget:
    """The identity and token metric calls are issued with."""

    identity_key: str
    access_token: str


@dataclass(frozen=True)
class MetricsWindow:
    start: date
    end: date

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1


@dataclass(frozen=True)
class MetricBatch:
    """
    One provider call worth of aggregate metrics.

    ``kind`` groups metrics that the provider accepts together (``time_series``,
    ``total_value``, ``lifetime``); metrics of different kinds are never mixed in a batch.
    A failing ``optional`` batch only leaves its fields absent.
    """

    name: str
    metrics: Tuple[str, ...]
    kind: str
    optional: bool = False


@dataclass
class BatchResult:
    totals: Dict[str, Any] = field(default_factory=dict)
    # native metric name -> [(ISO date, value)]
    series: Dict[str, List[Tuple[str, Any]]] = field(default_factory=dict)
    # canonical audience breakdown name -> provider data already shaped as lists/dicts
    audience: Dict[str, Any] = field(default_factory=dict)


class ProviderAdapter(Protocol):
    platform: Platform
    config: ProviderConfig
    identity_field: str
    refreshes_with_access_token: bool
    max_items: int
    profile_fields: Mapping[str, str]
    aggregate_fields: Mapping[str, str]
    item_fields: Mapping[str, str]
    item_metric_fields: Mapping[str, str]
    upgrade_token: Optional[Callable[[str], Awaitable[TokenSet]]]
    resolve_container: Optional[Callable[[str, str], Awaitable[QueryTarget]]]

    def authorization_url(self, state: str) -> str: ...

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenSet: ...

    async def refresh(self, credential: Optional[str]) -> TokenSet: ...

    async def resolve_identity(self, access_token: str) -> ProviderIdentity: ...

    async def fetch_profile(self, target: QueryTarget) -> Dict[str, Any]: ...

    def metric_batches(self) -> Sequence[MetricBatch]: ...

    async def fetch_metric_batch(self, target: QueryTarget, batch: MetricBatch, window: MetricsWindow) -> BatchResult: ...

    async def list_items(self, target: QueryTarget, limit: int) -> List[Dict[str, Any]]: ...

    async def fetch_item_metrics(self, target: QueryTarget, item: Dict[str, Any]) -> Dict[str, Any]: ...


def require_configured(config: Optional[ProviderConfig], platform: Platform) -> ProviderConfig:
    if config is None or not config.is_configured:
        raise ConfigurationMissing(platform.value)
    return config


def build_url(base: str, params: Mapping[str, Any]) -> str:
    return str(httpx.URL(base, params={k: v for k, v in params.items() if v is not None}))


def _as_int(value: Any) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_token_response(platform: Platform, body: Dict[str, Any], **extra_keys: str) -> TokenSet:
    """
    Build a TokenSet from an OAuth token endpoint answer. Optional fields may be absent;
    only a missing access token is an error. ``extra_keys`` maps TokenSet.extra names to
    body keys (e.g. TikTok's ``open_id``).
    """
    access_token = body.get("access_token")
    if not access_token:
        raise TokenExchangeFailed(f"{platform.value} token response carried no access token")
    scope = body.get("scope")
    if isinstance(scope, (list, tuple)):
        scope = " ".join(scope)
    return TokenSet(
        access_token=access_token,
        refresh_token=body.get("refresh_token") or None,
        expires_in=_as_int(body.get("expires_in")),
        scope=scope,
        extra={name: body.get(key) for name, key in extra_keys.items() if body.get(key) is not None},
    )


def to_number(value: Any) -> Optional[float]:
    """Provider counters arrive as ints, floats or numeric strings (YouTube)."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    try:
        as_float = float(value)
    except (TypeError, ValueError):
        return None
    return int(as_float) if as_float.is_integer() else as_float
