# src/UAA/state_codec.py
import secrets
import time
from dataclasses import dataclass
from typing import Callable, Optional

import structlog
from jose import jwt, JWTError

from src.errors import StateExpired, StateInvalid

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class AuthorizationState:
    subject: str
    nonce: str
    platform: Optional[str]
    issued_at: int
    expiry: int


class StateCodec:
    """
    Signs and verifies the OAuth ``state`` parameter.

    The token is a self-contained HS256 JWT carrying ``sub``, ``nonce``, ``platform``,
    ``iat`` and ``exp``, so any instance holding the same secret can verify a callback
    without shared storage. Expiry is checked against ``clock`` rather than by the JWT
    library, which lets callers tell an expired state apart from a forged or mangled one.

    The nonce is not tracked server-side: a captured state can be replayed until it expires.
    """

    def __init__(self, secret: str, algorithm: str = "HS256", clock: Callable[[], float] = time.time):
        if not secret:
            raise ValueError("state signing secret must not be empty")
        self._secret = secret
        self._algorithm = algorithm
        self._clock = clock

    def issue(self, subject: str, ttl: int, platform: Optional[str] = None) -> str:
        now = int(self._clock())
        payload = {
            "sub": str(subject),
            "nonce": secrets.token_hex(12),
            "iat": now,
            "exp": now + int(ttl),
        }
        if platform:
            payload["platform"] = platform
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)

    def verify(self, token: str, platform: Optional[str] = None) -> AuthorizationState:
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                options={"verify_exp": False, "verify_iat": False},
            )
        except JWTError as e:
            logger.info("oauth_state_rejected", reason=str(e))
            raise StateInvalid("state signature or format is invalid") from e

        subject, nonce, exp = claims.get("sub"), claims.get("nonce"), claims.get("exp")
        if not subject or not nonce or not isinstance(exp, (int, float)):
            raise StateInvalid("state is missing required claims")
        if self._clock() > exp:
            raise StateExpired("state has expired")
        if platform is not None and claims.get("platform") != platform:
            raise StateInvalid("state was issued for another platform")

        return AuthorizationState(
            subject=subject,
            nonce=nonce,
            platform=claims.get("platform"),
            issued_at=int(claims.get("iat") or 0),
            expiry=int(exp),
        )
