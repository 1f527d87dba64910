"""
Integration test fixtures for DocODM.

Every test gets a fresh Odm backed by the in-memory driver, so models
registered on it start with empty storage and an empty cache.
"""

import pytest

from sdk.docodm.config import OdmSettings
from sdk.docodm.drivers.memory import MemoryDriver
from sdk.docodm.odm import Odm


@pytest.fixture
def driver():
    """In-memory driver recording every storage call."""
    return MemoryDriver()


@pytest.fixture
async def odm(driver):
    """Connected Odm over the in-memory driver."""
    odm = Odm(OdmSettings(url="memory://", cache_ttl_ms=60000), driver=driver)
    await odm.connect()
    yield odm
    await odm.disconnect()
