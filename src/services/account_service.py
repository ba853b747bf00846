# src/services/account_service.py
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import structlog
from sqlalchemy.exc import IntegrityError

from src.config import Platform
from src.infrastructure.accounts_repo import AccountsRepository
from src.infrastructure.providers.base import TokenSet
from src.models.integration_account import IntegrationAccount
from src.services.token_service import expires_at_from
from src.UAA.utils import TokenCipher

logger = structlog.get_logger(__name__)


class AccountService:
    """
    Maps an authenticated provider identity onto at most one IntegrationAccount per
    (user, platform, identity key).

    An existing row gets its tokens overwritten and its metadata merged key-wise. A
    callback without an identity key reuses the row it most plausibly belongs to rather
    than inserting a second one.
    """

    def __init__(self, session_factory, cipher: TokenCipher, clock: Callable[[], datetime] = datetime.utcnow):
        self._session_factory = session_factory
        self._cipher = cipher
        self._clock = clock

    async def _match(
        self, repo: AccountsRepository, user_id: uuid.UUID, platform: str, identity_key: Optional[str], demo: bool = False
    ) -> Optional[IntegrationAccount]:
        # demo rows and real rows never stand in for each other
        def same_kind(row: Optional[IntegrationAccount]) -> bool:
            return row is not None and bool((row.meta or {}).get("demo")) == demo

        if identity_key is not None:
            found = await repo.find_one(user_id, platform, identity_key)
            if found is not None:
                return found
            # adopt a row left behind by an earlier callback whose identity lookup failed
            orphan = await repo.find_one(user_id, platform, None)
            return orphan if same_kind(orphan) else None
        found = await repo.find_one(user_id, platform, None)
        if same_kind(found):
            return found
        rows = [r for r in await repo.find(user_id, platform) if same_kind(r)]
        return rows[0] if len(rows) == 1 else None

    async def upsert(
        self,
        user_id: uuid.UUID,
        platform: Platform,
        identity_key: Optional[str],
        tokens: TokenSet,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> IntegrationAccount:
        async with self._session_factory() as session:
            repo = AccountsRepository(session)
            existing = await self._match(
                repo, user_id, platform.value, identity_key, demo=bool((metadata or {}).get("demo"))
            )
            if existing is None:
                try:
                    account = await repo.create(self._new_account(user_id, platform, identity_key, tokens, metadata))
                    logger.info("integration_account_created", account_id=str(account.id), platform=platform.value, user_id=str(user_id))
                    return account
                except IntegrityError:
                    # a concurrent callback inserted the same identity first
                    await session.rollback()
                    existing = await repo.find_one(user_id, platform.value, identity_key)
                    if existing is None:
                        raise
            return await self._update(repo, existing, identity_key, tokens, metadata)

    def _new_account(self, user_id, platform: Platform, identity_key, tokens: TokenSet, metadata) -> IntegrationAccount:
        return IntegrationAccount(
            user_id=user_id,
            platform=platform.value,
            identity_key=identity_key,
            access_token_enc=self._cipher.encrypt(tokens.access_token),
            refresh_token_enc=self._cipher.encrypt(tokens.refresh_token),
            token_expires_at=expires_at_from(tokens.expires_in, self._clock()),
            scope=tokens.scope,
            meta=dict(metadata or {}),
        )

    async def _update(self, repo: AccountsRepository, existing: IntegrationAccount, identity_key, tokens: TokenSet, metadata) -> IntegrationAccount:
        await repo.update_tokens(
            existing.id,
            access_token_enc=self._cipher.encrypt(tokens.access_token),
            expires_at=expires_at_from(tokens.expires_in, self._clock()),
            refresh_token_enc=self._cipher.encrypt(tokens.refresh_token),
        )
        if (identity_key is not None and existing.identity_key != identity_key) or tokens.scope:
            await repo.assign_identity(existing.id, identity_key or existing.identity_key, scope=tokens.scope)
        if metadata:
            await repo.merge_metadata(existing.id, metadata)
        account = await repo.get_by_id(existing.id)
        logger.info("integration_account_updated", account_id=str(existing.id), platform=existing.platform)
        return account
