import os
import tempfile

import pytest

_TEST_DIR = tempfile.mkdtemp(prefix="dish-ar-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_TEST_DIR, 'test.sqlite3')}"
os.environ["DATA_DIR"] = _TEST_DIR
os.environ["STORAGE_BACKEND"] = "local"
os.environ["PUBLIC_BASE_URL"] = ""


@pytest.fixture(autouse=True, scope="session")
def setup_test_db():
    import asyncio

    # Disable API key auth for tests
    from app.config import settings
    settings.api_key = ""
    settings.meshy_api_key = ""

    from app.database import create_tables

    asyncio.run(create_tables())
