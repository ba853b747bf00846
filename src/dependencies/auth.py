# src/dependencies/auth.py
import uuid
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError
from src.UAA.utils import decode_token
from src.UAA.repository import UserRepository
from src.dependencies.db import get_session_dep
from sqlmodel.ext.asyncio.session import AsyncSession

# tokens are issued by the account service that owns login; the broker only verifies them
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


async def get_current_user(request: Request, token: str = Depends(oauth2_scheme), session: AsyncSession = Depends(get_session_dep)):
    settings = request.app.state.settings
    try:
        payload = decode_token(token, settings.secret_key, settings.algorithm)
    except JWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid token")
    if payload.get("type") != "access":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid token type")
    try:
        user_id = uuid.UUID(str(payload.get("sub")))
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid token subject")
    repo = UserRepository(session)
    user = await repo.get_by_id(user_id)
    if not user or not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="user not found")
    return user
