# src/services/oauth_service.py
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Mapping, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError

from src.config import Platform
from src.errors import (
    ConfigurationMissing,
    IdentityNotFound,
    ProviderRequestError,
    StateExpired,
    StateInvalid,
    TokenExchangeFailed,
)
from src.infrastructure.providers.base import ProviderAdapter, ProviderIdentity, require_configured
from src.services.account_service import AccountService
from src.UAA.state_codec import StateCodec

logger = structlog.get_logger(__name__)


class Stage(str, Enum):
    STARTED = "started"
    CODE_RECEIVED = "code_received"
    EXCHANGED = "exchanged"
    UPGRADED = "upgraded"
    IDENTITY_RESOLVED = "identity_resolved"
    PERSISTED = "persisted"
    STATE_EXPIRED = "state_expired"
    STATE_INVALID = "state_invalid"
    EXCHANGE_FAILED = "exchange_failed"
    IDENTITY_UNRESOLVED = "identity_unresolved"


@dataclass
class AuthorizationOutcome:
    platform: Platform
    stage: Stage
    stages: List[Stage] = field(default_factory=list)
    user_id: Optional[uuid.UUID] = None
    account_id: Optional[uuid.UUID] = None
    identity_key: Optional[str] = None
    # short code for the client redirect; None on success
    error_code: Optional[str] = None

    @property
    def connected(self) -> bool:
        return self.account_id is not None

    def advance(self, stage: Stage) -> None:
        self.stage = stage
        self.stages.append(stage)


class OAuthService:
    """
    Authorization handshake: issue a signed state, then on callback verify it, exchange the
    code, optionally upgrade the token, resolve the identity and upsert the account.

    A failed identity lookup still persists the account (without identity key) so the
    obtained token is not lost.
    """

    def __init__(self, adapters: Mapping[Platform, ProviderAdapter], codec: StateCodec, accounts: AccountService):
        self._adapters = adapters
        self._codec = codec
        self._accounts = accounts

    def start(self, user_id: uuid.UUID, platform: Platform) -> str:
        adapter = self._adapters[platform]
        cfg = require_configured(adapter.config, platform)
        state = self._codec.issue(str(user_id), ttl=cfg.state_ttl, platform=platform.value)
        url = adapter.authorization_url(state)
        logger.info("oauth_started", platform=platform.value, user_id=str(user_id))
        return url

    async def complete(self, platform: Platform, code: str, state: str) -> AuthorizationOutcome:
        outcome = AuthorizationOutcome(platform=platform, stage=Stage.STARTED, stages=[Stage.STARTED])
        log = logger.bind(platform=platform.value)

        try:
            claims = self._codec.verify(state, platform=platform.value)
            outcome.user_id = uuid.UUID(claims.subject)
        except StateExpired:
            log.info("oauth_callback_state_expired")
            return self._fail(outcome, Stage.STATE_EXPIRED, "state_expired")
        except (StateInvalid, ValueError):
            log.warning("oauth_callback_state_invalid")
            return self._fail(outcome, Stage.STATE_INVALID, "state_invalid")
        outcome.advance(Stage.CODE_RECEIVED)
        log = log.bind(user_id=str(outcome.user_id))

        adapter = self._adapters[platform]
        try:
            cfg = require_configured(adapter.config, platform)
            tokens = await adapter.exchange_code(code, cfg.redirect_uri)
        except TokenExchangeFailed as exc:
            log.warning("oauth_callback_exchange_failed", error=str(exc))
            return self._fail(outcome, Stage.EXCHANGE_FAILED, "token_exchange")
        except (ConfigurationMissing, ProviderRequestError) as exc:
            log.error("oauth_callback_exchange_error", error=str(exc))
            return self._fail(outcome, Stage.EXCHANGE_FAILED, "1")
        outcome.advance(Stage.EXCHANGED)
        log.info("oauth_callback_exchanged", expires_in=tokens.expires_in, has_refresh=tokens.refresh_token is not None)

        if adapter.upgrade_token is not None:
            try:
                long_lived = await adapter.upgrade_token(tokens.access_token)
            except (ProviderRequestError, TokenExchangeFailed) as exc:
                log.warning("oauth_token_upgrade_failed", error=str(exc))
            else:
                tokens = long_lived
                outcome.advance(Stage.UPGRADED)

        identity: Optional[ProviderIdentity] = None
        try:
            identity = await adapter.resolve_identity(tokens.access_token)
            outcome.identity_key = identity.identity_key
            outcome.advance(Stage.IDENTITY_RESOLVED)
        except (IdentityNotFound, ProviderRequestError) as exc:
            log.warning("oauth_identity_unresolved", error=str(exc))
            outcome.advance(Stage.IDENTITY_UNRESOLVED)

        metadata = dict(identity.metadata) if identity else {}
        if tokens.extra:
            metadata.update(tokens.extra)
        try:
            account = await self._accounts.upsert(
                outcome.user_id, platform, outcome.identity_key, tokens, metadata
            )
        except SQLAlchemyError as exc:
            log.exception("oauth_callback_persist_failed", error=str(exc))
            outcome.error_code = "1"
            return outcome

        outcome.account_id = account.id
        # an unresolved identity stays the terminal stage even though the account was kept
        if outcome.stage is not Stage.IDENTITY_UNRESOLVED:
            outcome.advance(Stage.PERSISTED)
        log.info("oauth_callback_persisted", account_id=str(account.id), stage=outcome.stage.value)
        return outcome

    @staticmethod
    def _fail(outcome: AuthorizationOutcome, stage: Stage, code: str) -> AuthorizationOutcome:
        outcome.advance(stage)
        outcome.error_code = code
        return outcome
