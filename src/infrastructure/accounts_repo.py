# src/infrastructure/accounts_repo.py
from typing import Any, Dict, List, Optional
from sqlmodel.ext.asyncio.session import AsyncSession
from sqlmodel import select
from sqlalchemy import update
from src.models.integration_account import IntegrationAccount
import uuid
from datetime import datetime


class AccountsRepository:
    """
    Repository for IntegrationAccount entity.
    All methods are async and expect an AsyncSession to be injected from the outside.

    Writes after creation are column-scoped: token updates never touch ``meta`` and
    metadata merges never touch the token columns, so a refresh and a metadata persist
    racing on the same row both survive.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, account: IntegrationAccount) -> IntegrationAccount:
        self.session.add(account)
        await self.session.commit()
        await self.session.refresh(account)
        return account

    async def save(self, account: IntegrationAccount) -> IntegrationAccount:
        account.updated_at = datetime.utcnow()
        self.session.add(account)
        await self.session.commit()
        await self.session.refresh(account)
        return account

    async def get_by_id(self, id: uuid.UUID) -> Optional[IntegrationAccount]:
        return await self.session.get(IntegrationAccount, id, populate_existing=True)

    async def get_for_user(self, id: uuid.UUID, user_id: uuid.UUID) -> Optional[IntegrationAccount]:
        q = select(IntegrationAccount).where(
            IntegrationAccount.id == id,
            IntegrationAccount.user_id == user_id,
        )
        res = await self.session.execute(q)
        return res.scalar_one_or_none()

    async def find(self, user_id: uuid.UUID, platform: str) -> List[IntegrationAccount]:
        q = (
            select(IntegrationAccount)
            .where(IntegrationAccount.user_id == user_id, IntegrationAccount.platform == platform)
            .order_by(IntegrationAccount.created_at)
        )
        res = await self.session.execute(q)
        return list(res.scalars().all())

    async def find_one(self, user_id: uuid.UUID, platform: str, identity_key: Optional[str]) -> Optional[IntegrationAccount]:
        if identity_key is None:
            key_clause = IntegrationAccount.identity_key.is_(None)
        else:
            key_clause = IntegrationAccount.identity_key == identity_key
        q = select(IntegrationAccount).where(
            IntegrationAccount.user_id == user_id,
            IntegrationAccount.platform == platform,
            key_clause,
        )
        res = await self.session.execute(q)
        return res.scalars().first()

    async def list_by_user(self, user_id: uuid.UUID) -> List[IntegrationAccount]:
        q = (
            select(IntegrationAccount)
            .where(IntegrationAccount.user_id == user_id)
            .order_by(IntegrationAccount.platform, IntegrationAccount.created_at)
        )
        res = await self.session.execute(q)
        return list(res.scalars().all())

    async def update_tokens(
        self,
        id: uuid.UUID,
        access_token_enc: str,
        expires_at: Optional[datetime],
        refresh_token_enc: Optional[str] = None,
    ) -> Optional[IntegrationAccount]:
        """
        Overwrite the token columns only. A missing refresh token keeps the stored one,
        since most providers only send a new refresh token when they rotate it.
        """
        values: Dict[str, Any] = {
            "access_token_enc": access_token_enc,
            "token_expires_at": expires_at,
            "updated_at": datetime.utcnow(),
        }
        if refresh_token_enc is not None:
            values["refresh_token_enc"] = refresh_token_enc
        await self.session.execute(
            update(IntegrationAccount).where(IntegrationAccount.id == id).values(**values)
        )
        await self.session.commit()
        return await self.get_by_id(id)

    async def assign_identity(self, id: uuid.UUID, identity_key: Optional[str], scope: Optional[str] = None) -> None:
        values: Dict[str, Any] = {"identity_key": identity_key, "updated_at": datetime.utcnow()}
        if scope is not None:
            values["scope"] = scope
        await self.session.execute(
            update(IntegrationAccount).where(IntegrationAccount.id == id).values(**values)
        )
        await self.session.commit()

    async def merge_metadata(self, id: uuid.UUID, patch: Dict[str, Any]) -> Optional[IntegrationAccount]:
        """Key-wise merge into ``meta``: new keys win, keys absent from ``patch`` are preserved."""
        current = await self.get_by_id(id)
        if current is None:
            return None
        merged = dict(current.meta or {})
        merged.update(patch)
        await self.session.execute(
            update(IntegrationAccount)
            .where(IntegrationAccount.id == id)
            .values(meta=merged, updated_at=datetime.utcnow())
        )
        await self.session.commit()
        return await self.get_by_id(id)
