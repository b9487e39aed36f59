import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from portal_media.config import Settings  # noqa: E402
from portal_media.main import create_app  # noqa: E402
from portal_media.repositories.migration_records import SqliteMigrationLedger  # noqa: E402
from portal_media.services.storage_service import InMemoryObjectStorage  # noqa: E402
from portal_media.services.uploader import Uploader  # noqa: E402

from .utils import ADMIN_TOKEN  # noqa: E402


@pytest.fixture(scope="module")
def anyio_backend():
    # Limit tests to asyncio backend so local runs do not require the Trio extra.
    return "asyncio"


@pytest.fixture
def legacy_root(tmp_path) -> Path:
    root = tmp_path / "public"
    root.mkdir(parents=True, exist_ok=True)
    return root


@pytest.fixture
def test_settings(tmp_path, legacy_root) -> Settings:
    return Settings(
        _env_file=None,
        ledger_backend="sqlite",
        sqlite_path=str(tmp_path / "ledger.sqlite3"),
        storage_backend="memory",
        legacy_media_root=str(legacy_root),
        upload_backoff_base_seconds=0.0,
        admin_api_token=ADMIN_TOKEN,
    )


@pytest.fixture
async def ledger(anyio_backend, test_settings):
    ledger = SqliteMigrationLedger(test_settings.sqlite_path)
    await ledger.open()
    await ledger.ensure_schema()
    try:
        yield ledger
    finally:
        await ledger.close()


@pytest.fixture
def storage() -> InMemoryObjectStorage:
    return InMemoryObjectStorage()


async def _no_sleep(delay: float) -> None:
    return None


@pytest.fixture
def uploader(storage) -> Uploader:
    return Uploader(storage, base_url="/storage-proxy", max_attempts=3, sleep=_no_sleep)


@pytest.fixture
def app(test_settings, ledger, storage):
    return create_app(test_settings, ledger=ledger, storage=storage)


@pytest.fixture
async def async_client(anyio_backend, app) -> AsyncClient:
    transport = ASGITransport(app=app)
    try:
        async with AsyncClient(
            transport=transport, base_url="http://testserver"
        ) as client:
            yield client
    finally:
        await app.state.resolver.drain()
