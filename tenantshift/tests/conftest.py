from __future__ import annotations

import os
import tempfile

# Settings and the engine are read at import time, so point them at throwaway storage first.
_TEST_ROOT = tempfile.mkdtemp(prefix="tenantshift-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_TEST_ROOT, 'tenantshift.db')}"
os.environ["EXPORT_PACKAGE_DIR"] = os.path.join(_TEST_ROOT, "packages")
os.environ["MIGRATION_EXECUTION_MODE"] = "inline"
os.environ["ADMIN_API_TOKEN"] = "test-admin-token"
os.environ["BACKEND_DRIVER"] = "local"
os.environ["DNS_PROVIDER"] = "local"
os.environ["NOTIFY_PROVIDER"] = "log"
os.environ["PROVISION_BACKOFF_MS"] = "0"
os.environ["ROLLBACK_BACKOFF_MS"] = "0"
os.environ["CUTOVER_POLL_INTERVAL_S"] = "0"
os.environ["CUTOVER_TTL_WAIT_S"] = "0"

import pytest  # noqa: E402

from tenantshift.core.config import get_settings  # noqa: E402
from tenantshift.domain.models import Base  # noqa: E402
from tenantshift.persistence.db import engine  # noqa: E402
from tenantshift.providers.backends.local import reset_local_infrastructure  # noqa: E402
from tenantshift.providers.dns.local import reset_local_dns_state  # noqa: E402
from tenantshift.services.notifications import set_notifier  # noqa: E402
from tenantshift.services.telemetry import reset_telemetry  # noqa: E402
from tenantshift.tests.utils.tenants import RecordingNotifier  # noqa: E402


@pytest.fixture(autouse=True)
async def reset_database() -> None:
    # Every test starts from an empty schema; the engine is disposed to avoid cross-loop reuse.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_in_process_fakes() -> None:
    # Local infrastructure, routing records and counters are process globals.
    reset_local_infrastructure()
    reset_local_dns_state()
    reset_telemetry()
    set_notifier(None)
    yield
    set_notifier(None)
    get_settings.cache_clear()


@pytest.fixture
def notifications() -> RecordingNotifier:
    notifier = RecordingNotifier()
    set_notifier(notifier)
    return notifier
