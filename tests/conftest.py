import os

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("CANCEL_REGISTRY_BACKEND", "memory")

import logging
import pytest
from typing import AsyncGenerator
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool
from knowflow.database import Base
from knowflow.engine.context import StepExecutionContext
import knowflow.models.workflow  # noqa: F401  register tables
import knowflow.models.execution  # noqa: F401

@pytest.fixture
def step_context():
    return StepExecutionContext(
        execution_id="exec-1",
        pipeline_config_id="wf-1",
        user_id="user-1",
        logger=logging.LoggerAdapter(logging.getLogger("knowflow.tests"), {"execution_id": "exec-1"}),
        metadata={"node_id": "node-1", "attempt": 1},
    )

@pytest.fixture
async def db_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()

@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(bind=db_engine, class_=AsyncSession, expire_on_commit=False)

@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session
