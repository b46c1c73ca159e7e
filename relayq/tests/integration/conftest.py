from __future__ import annotations

import pytest

from relayq.domain.models import Base
from relayq.persistence.db import engine


@pytest.fixture(autouse=True)
async def fresh_database() -> None:
    # Create the schema on first use and empty every table so tests never see each other's rows.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        for table in reversed(Base.metadata.sorted_tables):
            await conn.execute(table.delete())
    yield
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()
