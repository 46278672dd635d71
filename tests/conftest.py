import logging
import os
import sys
from datetime import timedelta

import pytest
from sqlalchemy import update

# Add the project root to the path for proper imports
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from scan_lifecycle.core.lifecycle import LifecycleOptions, ScanLifecycleManager
from scan_lifecycle.core.maintenance import CleanupCriteria, ScanMaintenanceManager
from scan_lifecycle.core.retry import RetryPolicy
from scan_lifecycle.store.db import create_db_engine
from scan_lifecycle.store.migrator import run_migrations
from scan_lifecycle.store.scan_store import SqlScanStore
from scan_lifecycle.store.schema import scans
from scan_lifecycle.utils.logger import LOGGER_NAME
from scan_lifecycle.utils.timestamps import utcnow


class FakeRefresher:
    """Stands in for the REST gateway; records how often it was asked to reload."""

    def __init__(self, success=True):
        self.success = success
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.success:
            return {"success": True, "method": "postgrest_admin"}
        return {"success": False, "method": "postgrest_admin", "error": "gateway unreachable"}


def no_sleep(seconds):
    return None


@pytest.fixture(autouse=True)
def reset_package_logger():
    yield
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True


@pytest.fixture
def engine(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'scans.db'}")
    run_migrations(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine):
    return SqlScanStore(engine)


@pytest.fixture
def refresher():
    return FakeRefresher()


@pytest.fixture
def lifecycle(store, refresher):
    return ScanLifecycleManager(
        store,
        options=LifecycleOptions(max_retries=3, base_delay_ms=1),
        schema_refresher=refresher,
        sleep=no_sleep,
    )


@pytest.fixture
def maintenance(store, refresher):
    return ScanMaintenanceManager(
        store,
        retry_policy=RetryPolicy(max_retries=3, base_delay_ms=1, sleep=no_sleep),
        schema_refresher=refresher,
        default_criteria=CleanupCriteria(15, 5),
        environment_criteria={"development": CleanupCriteria(5, 2)},
    )


@pytest.fixture
def age_scan(engine):
    """Move a scan's clocks into the past: age_scan(id, created=20, activity=1) in minutes."""

    def _age(scan_id, created=None, activity=None, ended=None):
        now = utcnow()
        values = {}
        if created is not None:
            values["created_at"] = now - timedelta(minutes=created)
        if activity is not None:
            values["last_activity_at"] = now - timedelta(minutes=activity)
        if ended is not None:
            values["ended_at"] = now - timedelta(minutes=ended)
        with engine.begin() as conn:
            conn.execute(update(scans).where(scans.c.id == scan_id).values(**values))

    return _age
