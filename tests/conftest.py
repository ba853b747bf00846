import uuid

import pytest
import pytest_asyncio

from src.config import Settings
from src.infrastructure.database import build_engine, build_session_factory, init_db
from src.UAA.models import User
from src.UAA.repository import UserRepository
from src.UAA.utils import TokenCipher
from tests.helpers import FakeProviderAPI, make_settings


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def cipher(settings) -> TokenCipher:
    return TokenCipher(settings.token_encryption_key)


@pytest.fixture
def fake_api() -> FakeProviderAPI:
    return FakeProviderAPI()


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def user(session_factory) -> User:
    async with session_factory() as session:
        return await UserRepository(session).create(
            User(id=uuid.uuid4(), email=f"{uuid.uuid4().hex[:8]}@example.com", username="creator")
        )
