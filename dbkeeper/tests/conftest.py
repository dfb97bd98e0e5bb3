from __future__ import annotations

import pytest

from dbkeeper.core.config import get_settings


@pytest.fixture(autouse=True)
def reset_settings_cache():
    # Settings are cached per process; clear around each test so env overrides apply.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
