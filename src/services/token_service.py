# src/services/token_service.py
import asyncio
from datetime import datetime, timedelta
from functools import partial
from typing import Awaitable, Callable, Dict, Hashable, Mapping, Optional, TypeVar

import structlog

from src.config import Platform
from src.errors import (
    NoRefreshCapability,
    NoUsableToken,
    ProviderRequestError,
    ReauthorizationRequired,
    TokenExchangeFailed,
)
from src.infrastructure.accounts_repo import AccountsRepository
from src.infrastructure.providers.base import ProviderAdapter
from src.models.integration_account import IntegrationAccount
from src.UAA.utils import TokenCipher

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class SingleFlight:
    """
    At most one running call per key. Callers arriving while it runs await the same task and
    get its result or its exception; the key is forgotten as soon as the task finishes.
    """

    def __init__(self):
        self._calls: Dict[Hashable, asyncio.Task] = {}

    async def do(self, key: Hashable, fn: Callable[[], Awaitable[T]]) -> T:
        task = self._calls.get(key)
        if task is None:
            task = asyncio.ensure_future(fn())
            self._calls[key] = task
            task.add_done_callback(partial(self._forget, key))
        # a cancelled caller must not cancel the call the others are waiting on
        return await asyncio.shield(task)

    def _forget(self, key: Hashable, task: asyncio.Task) -> None:
        if self._calls.get(key) is task:
            del self._calls[key]
        if not task.cancelled():
            task.exception()

    def __len__(self) -> int:
        return len(self._calls)


def expires_at_from(expires_in: Optional[int], now: datetime) -> Optional[datetime]:
    return now + timedelta(seconds=expires_in) if expires_in else None


class TokenLifecycleManager:
    """
    Hands out access tokens that are not about to expire.

    Refreshes are single-flight per account id: concurrent callers share one provider call and
    its outcome, including a failure. A caller holding a stale copy re-reads the row before refreshing.
    """

    def __init__(
        self,
        session_factory,
        adapters: Mapping[Platform, ProviderAdapter],
        cipher: TokenCipher,
        margin_seconds: int = 30,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self._session_factory = session_factory
        self._adapters = adapters
        self._cipher = cipher
        self._margin = timedelta(seconds=margin_seconds)
        self._clock = clock
        self._flights = SingleFlight()

    def needs_refresh(self, account: IntegrationAccount) -> bool:
        if account.token_expires_at is None:
            return False
        return account.token_expires_at - self._clock() <= self._margin

    def _access_token(self, account: IntegrationAccount) -> str:
        token = self._cipher.decrypt(account.access_token_enc)
        if not token:
            raise NoUsableToken(f"account {account.id} has no readable access token")
        return token

    async def ensure_valid(self, account: IntegrationAccount) -> str:
        token = self._access_token(account)
        if not self.needs_refresh(account):
            return token

        current = await self._flights.do(account.id, partial(self._refresh_account, account.id))
        _copy_tokens(current, account)
        return self._access_token(current)

    async def _refresh_account(self, account_id) -> IntegrationAccount:
        async with self._session_factory() as session:
            repo = AccountsRepository(session)
            current = await repo.get_by_id(account_id)
            if current is None:
                raise NoUsableToken(f"account {account_id} no longer exists")
            if not self.needs_refresh(current):
                logger.debug("token_refresh_coalesced", account_id=str(account_id))
                return current
            return await self._refresh(repo, current)

    async def _refresh(self, repo: AccountsRepository, current: IntegrationAccount) -> IntegrationAccount:
        adapter = self._adapters[Platform(current.platform)]
        if adapter.refreshes_with_access_token:
            credential = self._cipher.decrypt(current.access_token_enc)
        else:
            credential = self._cipher.decrypt(current.refresh_token_enc)

        log = logger.bind(account_id=str(current.id), platform=current.platform)
        try:
            tokens = await adapter.refresh(credential)
        except (NoRefreshCapability, ProviderRequestError, TokenExchangeFailed) as exc:
            log.warning("token_refresh_failed", error=str(exc), status=getattr(exc, "status_code", None))
            raise ReauthorizationRequired(current.id, exc.code) from exc

        updated = await repo.update_tokens(
            current.id,
            access_token_enc=self._cipher.encrypt(tokens.access_token),
            expires_at=expires_at_from(tokens.expires_in, self._clock()),
            refresh_token_enc=self._cipher.encrypt(tokens.refresh_token),
        )
        if updated is None:
            raise NoUsableToken(f"account {current.id} was removed during refresh")
        log.info("token_refreshed", expires_in=tokens.expires_in, rotated=tokens.refresh_token is not None)
        return updated


def _copy_tokens(source: IntegrationAccount, target: IntegrationAccount) -> None:
    target.access_token_enc = source.access_token_enc
    target.refresh_token_enc = source.refresh_token_enc
    target.token_expires_at = source.token_expires_at
