# src/UAA/utils.py
import uuid
from datetime import datetime, timedelta
from typing import Dict, Any, Optional

import structlog
from jose import jwt, JWTError
from cryptography.fernet import Fernet, InvalidToken

logger = structlog.get_logger(__name__)


def _now_ts() -> int:
    return int(datetime.utcnow().timestamp())


# --- JWT helpers (bearer tokens of the calling user) ---
def create_access_token(subject: str, secret: str, algorithm: str = "HS256", expires_delta: Optional[timedelta] = None) -> Dict[str, Any]:
    jti = str(uuid.uuid4())
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=15))
    payload = {"sub": subject, "exp": int(expire.timestamp()), "jti": jti, "type": "access", "iat": _now_ts()}
    token = jwt.encode(payload, secret, algorithm=algorithm)
    logger.debug("create_access_token", sub=subject, jti=jti, exp=payload["exp"])
    return {"token": token, "jti": jti, "exp": payload["exp"]}


def decode_token(token: str, secret: str, algorithm: str = "HS256") -> Dict[str, Any]:
    try:
        return jwt.decode(token, secret, algorithms=[algorithm])
    except JWTError as e:
        logger.warning("token_decode_failed", error=str(e))
        raise


# --- OAuth token encryption at rest ---
class TokenCipher:
    """Fernet wrapper for provider tokens stored in IntegrationAccount rows."""

    def __init__(self, key: str):
        self._fernet = Fernet(key.encode())

    def encrypt(self, plaintext: Optional[str]) -> Optional[str]:
        if plaintext is None:
            return None
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: Optional[str]) -> Optional[str]:
        if not ciphertext:
            return None
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken:
            logger.warning("token_decrypt_failed")
            return None
