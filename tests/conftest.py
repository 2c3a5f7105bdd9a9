import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

import pytest

from db.store import Store


@pytest.fixture
def with_store(tmp_path):
    """Run ``scenario(store)`` against a fresh SQLite file inside one event loop."""

    def runner(scenario):
        async def main():
            store = Store(tmp_path / "test.db")
            await store.connect()
            try:
                return await scenario(store)
            finally:
                await store.close()

        return asyncio.run(main())

    return runner
