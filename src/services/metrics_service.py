# src/services/metrics_service.py
import asyncio
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple

import structlog
from sqlalchemy.exc import SQLAlchemyError

from src.config import Platform, Settings
from src.errors import IdentityNotFound, NoUsableToken, ProviderRequestError
from src.infrastructure.accounts_repo import AccountsRepository
from src.infrastructure.providers.base import (
    BatchResult,
    MetricBatch,
    MetricsWindow,
    ProviderAdapter,
    QueryTarget,
    to_number,
)
from src.models.integration_account import IntegrationAccount
from src.schemas.integration_schema import CanonicalItem, CanonicalMetricsResult, CanonicalProfile
from src.services import demo_metrics
from src.services.token_service import TokenLifecycleManager
from src.UAA.utils import TokenCipher

logger = structlog.get_logger(__name__)

# a provider answering with an unexpected shape counts as a failed sub-fetch
DEGRADABLE = (ProviderRequestError, AttributeError, KeyError, TypeError, ValueError, IndexError)

PROFILE_NUMBERS = ("followers", "items_count", "total_views")
# stored metadata key -> CanonicalProfile field
CACHED_PROFILE_KEYS = {
    "displayName": "display_name",
    "username": "username",
    "pictureUrl": "picture_url",
    "followers": "followers",
    "itemsCount": "items_count",
}


def map_fields(raw: Mapping[str, Any], table: Mapping[str, str]) -> Dict[str, Any]:
    """Rename provider-native keys to canonical ones; keys missing from ``table`` are dropped."""
    return {table[k]: v for k, v in raw.items() if k in table}


class MetricsPipeline:
    """
    Builds a CanonicalMetricsResult out of independent, individually fallible provider calls.

    Only a missing token (NoUsableToken, ReauthorizationRequired) or an identity that cannot
    be resolved (IdentityNotFound) fail a request. A failing profile call falls back to stored
    metadata, a failing metric batch leaves its fields absent and a failing item enrichment
    nulls only that item's metrics.
    """

    def __init__(
        self,
        adapters: Mapping[Platform, ProviderAdapter],
        tokens: TokenLifecycleManager,
        session_factory,
        cipher: TokenCipher,
        settings: Settings,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self._adapters = adapters
        self._tokens = tokens
        self._session_factory = session_factory
        self._cipher = cipher
        self._settings = settings
        self._clock = clock
        self._pending: Set[asyncio.Task] = set()

    def window(self) -> MetricsWindow:
        end = self._clock().date()
        return MetricsWindow(start=end - timedelta(days=self._settings.metrics_window_days - 1), end=end)

    def is_demo(self, account: IntegrationAccount) -> bool:
        token = self._cipher.decrypt(account.access_token_enc)
        if not token:
            raise NoUsableToken(f"account {account.id} has no readable access token")
        return bool(self._settings.demo_token_prefix) and token.startswith(self._settings.demo_token_prefix)

    async def fetch(self, account: IntegrationAccount) -> CanonicalMetricsResult:
        window = self.window()
        if self.is_demo(account):
            logger.info("metrics_demo_account", account_id=str(account.id), platform=account.platform)
            return demo_metrics.demo_result(account, window, self._clock())

        adapter = self._adapters[Platform(account.platform)]
        log = logger.bind(account_id=str(account.id), platform=account.platform)
        token = await self._tokens.ensure_valid(account)
        target, learned = await self._resolve_target(adapter, account, token)

        profile, profile_learned = await self._profile(adapter, target, account, log)
        learned.update(profile_learned)
        (totals, series, audience), items = await asyncio.gather(
            self._aggregates(adapter, target, window, log),
            self._items(adapter, target, self._settings.metrics_max_items, log),
        )

        if profile.followers is None and totals.get("followers") is not None:
            profile.followers = totals["followers"]

        presence = {name: totals.get(name) is not None for name in adapter.aggregate_fields.values()}
        presence.update({name: name in audience for name in adapter.audience_fields})

        self._persist_later(account, learned)
        log.info("metrics_fetched", items=len(items), present=sum(presence.values()), absent=len(presence) - sum(presence.values()))
        return CanonicalMetricsResult(
            account_id=account.id,
            platform=adapter.platform,
            fetched_at=self._clock(),
            window_start=window.start,
            window_end=window.end,
            profile=profile,
            metrics=totals,
            series=series,
            audience=audience,
            items=items,
            metrics_presence=presence,
        )

    async def fetch_items(
        self, account: IntegrationAccount, limit: int, public_only: bool = False, shorts_only: bool = False
    ) -> List[CanonicalItem]:
        if self.is_demo(account):
            items = demo_metrics.demo_items(account, self._clock())[:limit]
        else:
            adapter = self._adapters[Platform(account.platform)]
            log = logger.bind(account_id=str(account.id), platform=account.platform)
            token = await self._tokens.ensure_valid(account)
            target, learned = await self._resolve_target(adapter, account, token)
            self._persist_later(account, learned)
            items = await self._items(adapter, target, limit, log)
        if public_only:
            items = [i for i in items if i.visibility in (None, "public")]
        if shorts_only:
            items = [i for i in items if i.duration_seconds is not None and i.duration_seconds <= 60]
        return items

    async def _resolve_target(
        self, adapter: ProviderAdapter, account: IntegrationAccount, token: str
    ) -> Tuple[QueryTarget, Dict[str, Any]]:
        learned: Dict[str, Any] = {}
        identity_key = account.identity_key
        if not identity_key:
            try:
                identity = await adapter.resolve_identity(token)
            except ProviderRequestError as exc:
                raise IdentityNotFound(f"identity lookup failed: {exc}") from exc
            if not identity.identity_key:
                raise IdentityNotFound(f"{adapter.platform.value} returned no identity")
            identity_key = identity.identity_key
            learned.update(identity.metadata)
            learned[adapter.identity_field] = identity_key

        target = QueryTarget(identity_key=identity_key, access_token=token)
        if adapter.resolve_container is not None:
            try:
                target = await adapter.resolve_container(token, identity_key)
            except ProviderRequestError as exc:
                raise IdentityNotFound(f"container lookup failed: {exc}") from exc
        return target, learned

    async def _profile(self, adapter: ProviderAdapter, target: QueryTarget, account: IntegrationAccount, log) -> Tuple[CanonicalProfile, Dict[str, Any]]:
        try:
            raw = await adapter.fetch_profile(target)
        except DEGRADABLE as exc:
            log.warning("profile_fetch_failed", error=str(exc))
            cached = {field: (account.meta or {}).get(key) for key, field in CACHED_PROFILE_KEYS.items()}
            for name in PROFILE_NUMBERS:
                if name in cached:
                    cached[name] = to_number(cached[name])
            return CanonicalProfile(id=target.identity_key, from_cache=True, **cached), {}

        fields = map_fields(raw, adapter.profile_fields)
        for name in PROFILE_NUMBERS:
            if name in fields:
                fields[name] = to_number(fields[name])
        fields["id"] = str(fields.get("id") or target.identity_key)
        profile = CanonicalProfile(**fields)

        learned = {key: getattr(profile, field) for key, field in CACHED_PROFILE_KEYS.items()}
        return profile, {k: v for k, v in learned.items() if v is not None}

    async def _run_batch(self, adapter: ProviderAdapter, target: QueryTarget, batch: MetricBatch, window: MetricsWindow, log) -> Optional[BatchResult]:
        try:
            return await adapter.fetch_metric_batch(target, batch, window)
        except DEGRADABLE as exc:
            log.warning(
                "metric_batch_failed",
                batch=batch.name,
                optional=batch.optional,
                status=getattr(exc, "status_code", None),
                error=str(exc),
            )
            return None

    async def _aggregates(self, adapter: ProviderAdapter, target: QueryTarget, window: MetricsWindow, log):
        results = await asyncio.gather(
            *(self._run_batch(adapter, target, batch, window, log) for batch in adapter.metric_batches())
        )
        totals: Dict[str, Any] = {}
        rows: Dict[str, Dict[str, Any]] = {}
        audience: Dict[str, Any] = {}
        for result in results:
            if result is None:
                continue
            for canonical, value in map_fields(result.totals, adapter.aggregate_fields).items():
                if value is not None:
                    totals[canonical] = value
            for native, points in result.series.items():
                canonical = adapter.aggregate_fields.get(native)
                if canonical is None:
                    continue
                for day, value in points:
                    if day:
                        rows.setdefault(day, {"date": day})[canonical] = value
            for name, data in result.audience.items():
                if name in adapter.audience_fields and data:
                    audience[name] = data
        series = [rows[day] for day in sorted(rows)]
        return totals, series, audience

    async def _items(self, adapter: ProviderAdapter, target: QueryTarget, limit: int, log) -> List[CanonicalItem]:
        try:
            raw_items = await adapter.list_items(target, min(limit, adapter.max_items))
        except DEGRADABLE as exc:
            log.warning("item_list_failed", error=str(exc))
            return []

        semaphore = asyncio.Semaphore(max(self._settings.metrics_item_concurrency, 1))

        async def enrich(item: Dict[str, Any]) -> Optional[Dict[str, Any]]:
            async with semaphore:
                try:
                    return await adapter.fetch_item_metrics(target, item)
                except DEGRADABLE as exc:
                    log.warning("item_enrichment_failed", item_id=_item_id(adapter, item), error=str(exc))
                    return None

        enriched = await asyncio.gather(*(enrich(item) for item in raw_items))
        return [self._canonical_item(adapter, raw, extra) for raw, extra in zip(raw_items, enriched)]

    @staticmethod
    def _canonical_item(adapter: ProviderAdapter, raw: Dict[str, Any], extra: Optional[Dict[str, Any]]) -> CanonicalItem:
        merged = {**raw, **(extra or {})}
        fields = map_fields(merged, adapter.item_fields)
        fields["id"] = str(fields.get("id"))
        duration = to_number(fields.get("duration_seconds"))
        fields["duration_seconds"] = int(duration) if duration is not None else None
        for name in ("title", "published_at", "url", "thumbnail_url", "media_type", "visibility"):
            if fields.get(name) is not None:
                fields[name] = str(fields[name])
        metrics = None
        if extra is not None:
            metrics = {k: to_number(v) for k, v in map_fields(merged, adapter.item_metric_fields).items()}
        return CanonicalItem(metrics=metrics, **fields)

    def _persist_later(self, account: IntegrationAccount, learned: Dict[str, Any]) -> None:
        current = account.meta or {}
        patch = {k: v for k, v in learned.items() if current.get(k) != v}
        if not patch:
            return
        identity_key = patch.get(self._adapters[Platform(account.platform)].identity_field)
        task = asyncio.create_task(self._persist(account.id, patch, identity_key))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _persist(self, account_id, patch: Dict[str, Any], identity_key: Optional[str]) -> None:
        try:
            async with self._session_factory() as session:
                repo = AccountsRepository(session)
                if identity_key:
                    await repo.assign_identity(account_id, identity_key)
                await repo.merge_metadata(account_id, patch)
        except SQLAlchemyError as exc:
            logger.warning("metadata_persist_failed", account_id=str(account_id), error=str(exc))
        else:
            logger.debug("metadata_persisted", account_id=str(account_id), keys=sorted(patch))

    async def drain(self) -> None:
        """Wait for background metadata writes; used at shutdown and in tests."""
        while self._pending:
            await asyncio.gather(*list(self._pending))


def _item_id(adapter: ProviderAdapter, item: Dict[str, Any]) -> Optional[str]:
    for native, canonical in adapter.item_fields.items():
        if canonical == "id":
            return item.get(native)
    return None
