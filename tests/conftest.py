"""pytest fixtures for ecocert archiver tests.

Provides:
- utc_timezone: Autouse fixture enforcing UTC timezone
- settings: Function-scoped Settings pointing at a temporary SQLite database
- session_factory: Async session factory with the schema created
- session: Function-scoped database session
- store: RecordStore over the temporary database
- attestation_payload: Factory for raw attestation payloads
- ecocert_id: A well-formed ecocert id
"""

import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import SQLModel

import ecocert_archiver.models  # noqa: F401
from ecocert_archiver.core.config import Settings
from ecocert_archiver.core.database import setup_db_session
from ecocert_archiver.services.record_store import RecordStore

CONTRACT_ADDRESS = "0x16bA53B74c234C870c61EFC04cD418B8f2865959"
SCHEMA_UID = "0x48e3e1be1e08084b408a7035ac889f2a840b440bbf10758d14fb722831a200c3"
ATTESTER = "0xCf099CF2559764873c120970F1E4a2927799B9B1"


@pytest.fixture(scope="session", autouse=True)
def utc_timezone():
    """Enforce UTC timezone for all tests."""
    os.environ["TZ"] = "UTC"
    yield


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings for a test run: SQLite database and staging directory under tmp_path."""
    return Settings(  # type: ignore[call-arg]
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'archiver.db'}",
        APP_ENV="test",
        DOWNLOAD_DIRECTORY=str(tmp_path / "downloads"),
        MAX_FILE_SIZE_MB=1,
        PINATA_JWT="test-jwt",
        PINATA_GATEWAY="https://gateway.test",
        MAX_CONCURRENT_DOWNLOADS=2,
        MAX_CONCURRENT_ECOCERTS=2,
        SHUTDOWN_GRACE_SECONDS=1.0,
    )


async def create_schema(session_factory: async_sessionmaker[AsyncSession]) -> None:
    engine = session_factory.kw["bind"]
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


@pytest_asyncio.fixture(scope="function")
async def session_factory(settings) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Provide a session factory over a fresh SQLite database with all tables created.

    Each test gets its own database file, so no truncation is needed.
    """
    factory = setup_db_session(settings.database_url)
    await create_schema(factory)

    yield factory

    await factory.kw["bind"].dispose()


@pytest_asyncio.fixture(scope="function")
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def store(session_factory) -> RecordStore:
    return RecordStore(session_factory)


@pytest.fixture
def ecocert_id() -> str:
    return f"42220-{CONTRACT_ADDRESS}-1001"


@pytest.fixture
def attestation_payload():
    """Return a factory building raw attestation payloads.

    Example:
        payload = attestation_payload(1, ["https://example.org/a.pdf"])
    """

    def _build(index: int, urls=(), ipfs=(), token_id: str = "1001"):
        sources = [{"type": "url", "src": url} for url in urls]
        sources += [{"type": "ipfs", "src": cid} for cid in ipfs]
        return {
            "uid": f"0x{index:064x}",
            "schema_uid": SCHEMA_UID,
            "attester": ATTESTER,
            "data": {
                "title": f"Impact proof {index}",
                "description": "Field report",
                "chain_id": "42220",
                "token_id": token_id,
                "contract_address": CONTRACT_ADDRESS,
                "sources": sources,
            },
            "creation_block_timestamp": 1717171717000,
        }

    return _build
