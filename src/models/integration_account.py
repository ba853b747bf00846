# src/models/integration_account.py
from sqlmodel import SQLModel, Field, Column
from typing import Optional
from datetime import datetime
import uuid
from sqlalchemy import String, JSON, UniqueConstraint


class IntegrationAccount(SQLModel, table=True):
    __table_args__ = (
        UniqueConstraint("user_id", "platform", "identity_key", name="uq_integration_account_identity"),
    )

    id: Optional[uuid.UUID] = Field(default_factory=uuid.uuid4, primary_key=True)
    user_id: uuid.UUID = Field(foreign_key="user.id", index=True)
    platform: str = Field(sa_column=Column(String, index=True, nullable=False))
    # copy of meta[<provider identity field>], kept as a column for lookups and the unique index
    identity_key: Optional[str] = Field(default=None, sa_column=Column(String, index=True, nullable=True))
    access_token_enc: str
    refresh_token_enc: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    scope: Optional[str] = None
    meta: Optional[dict] = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
