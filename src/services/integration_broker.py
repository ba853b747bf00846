# src/services/integration_broker.py
import time
import uuid
from datetime import datetime
from typing import Callable, List, Optional

import httpx
import structlog

from src.config import Platform, Settings
from src.errors import AccountNotFound, IdentityNotFound, ProviderRequestError
from src.infrastructure.accounts_repo import AccountsRepository
from src.infrastructure.providers.base import TokenSet
from src.infrastructure.providers.registry import build_adapters
from src.models.integration_account import IntegrationAccount
from src.schemas.integration_schema import (
    AccountSummary,
    CanonicalItem,
    CanonicalMetricsResult,
    ConnectRequest,
    PlatformStatus,
)
from src.services import demo_metrics
from src.services.account_service import AccountService
from src.services.metrics_service import MetricsPipeline
from src.services.oauth_service import AuthorizationOutcome, OAuthService
from src.services.token_service import TokenLifecycleManager
from src.UAA.state_codec import StateCodec
from src.UAA.utils import TokenCipher

logger = structlog.get_logger(__name__)

DISPLAY_NAME_KEYS = ("displayName", "title", "username", "name")


def display_name_for(account: IntegrationAccount) -> str:
    meta = account.meta or {}
    for key in DISPLAY_NAME_KEYS:
        if meta.get(key):
            return str(meta[key])
    return f"{account.platform} account"


class IntegrationBroker:
    """Single entry point the HTTP layer talks to; owns the adapters and services."""

    def __init__(
        self,
        settings: Settings,
        session_factory,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
        state_clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self._session_factory = session_factory
        self._clock = clock
        self.cipher = TokenCipher(settings.token_encryption_key)
        self.adapters = build_adapters(settings, transport)
        self.codec = StateCodec(settings.state_secret, settings.algorithm, clock=state_clock)
        self.accounts = AccountService(session_factory, self.cipher, clock)
        self.tokens = TokenLifecycleManager(
            session_factory, self.adapters, self.cipher, settings.token_refresh_margin, clock
        )
        self.oauth = OAuthService(self.adapters, self.codec, self.accounts)
        self.metrics = MetricsPipeline(
            self.adapters, self.tokens, session_factory, self.cipher, settings, clock
        )

    # --- authorization ---
    def authorization_url(self, user_id: uuid.UUID, platform: Platform) -> str:
        return self.oauth.start(user_id, platform)

    async def handle_callback(self, platform: Platform, code: str, state: str) -> AuthorizationOutcome:
        return await self.oauth.complete(platform, code, state)

    def callback_redirect(self, outcome: AuthorizationOutcome) -> str:
        if outcome.error_code:
            return self.settings.client_redirect(
                "/integrations", connected=outcome.platform.value, error=outcome.error_code
            )
        return self.settings.client_redirect("/integrations/success", connected=outcome.platform.value)

    async def connect(self, user_id: uuid.UUID, request: ConnectRequest) -> IntegrationAccount:
        """Link an account from a token the caller already holds (also how demo accounts are created)."""
        adapter = self.adapters[request.platform]
        identity_key = request.identity_key
        metadata = {}
        demo = bool(self.settings.demo_token_prefix) and request.access_token.startswith(self.settings.demo_token_prefix)
        if demo:
            # a synthetic key keeps demo rows out of keyless matching against real accounts
            identity_key = identity_key or demo_metrics.demo_identity_key(request.access_token)
            metadata["demo"] = True
        elif identity_key is None:
            try:
                identity = await adapter.resolve_identity(request.access_token)
                identity_key = identity.identity_key
                metadata.update(identity.metadata)
            except (IdentityNotFound, ProviderRequestError) as exc:
                logger.warning("connect_identity_unresolved", platform=request.platform.value, error=str(exc))
        if identity_key is not None and not demo:
            metadata[adapter.identity_field] = identity_key
        if request.display_name:
            metadata["displayName"] = request.display_name
        tokens = TokenSet(
            access_token=request.access_token,
            refresh_token=request.refresh_token,
            expires_in=request.expires_in,
        )
        return await self.accounts.upsert(user_id, request.platform, identity_key, tokens, metadata)

    # --- accounts ---
    async def get_account(self, user_id: uuid.UUID, account_id: uuid.UUID) -> IntegrationAccount:
        async with self._session_factory() as session:
            account = await AccountsRepository(session).get_for_user(account_id, user_id)
        if account is None:
            raise AccountNotFound(f"account {account_id} not found")
        return account

    def summarize(self, account: IntegrationAccount) -> AccountSummary:
        expires_at = account.token_expires_at
        return AccountSummary(
            id=account.id,
            platform=Platform(account.platform),
            identity_key=account.identity_key,
            display_name=display_name_for(account),
            token_expires_at=expires_at,
            token_expired=expires_at is not None and expires_at <= self._clock(),
            connected_at=account.created_at,
            updated_at=account.updated_at,
        )

    async def list_accounts(self, user_id: uuid.UUID) -> List[AccountSummary]:
        async with self._session_factory() as session:
            accounts = await AccountsRepository(session).list_by_user(user_id)
        return [self.summarize(a) for a in accounts]

    # --- metrics ---
    async def fetch_metrics(self, user_id: uuid.UUID, account_id: uuid.UUID) -> CanonicalMetricsResult:
        account = await self.get_account(user_id, account_id)
        return await self.metrics.fetch(account)

    async def fetch_items(
        self, user_id: uuid.UUID, account_id: uuid.UUID, limit: int, public_only: bool = False, shorts_only: bool = False
    ) -> List[CanonicalItem]:
        account = await self.get_account(user_id, account_id)
        return await self.metrics.fetch_items(account, limit, public_only=public_only, shorts_only=shorts_only)

    def platform_status(self) -> List[PlatformStatus]:
        return [
            PlatformStatus(platform=platform, configured=adapter.config.is_configured, scopes=list(adapter.config.scopes))
            for platform, adapter in self.adapters.items()
        ]

    async def close(self) -> None:
        await self.metrics.drain()
