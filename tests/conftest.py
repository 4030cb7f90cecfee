from __future__ import annotations

import os

import pytest

from blobstore.common.config import get_settings

TEST_ENVIRONMENT = {
    "COS_SECRET_ID": "AKIDQjz3ltompVjBni5LitkWHFlFpwkn9U5q",
    "COS_SECRET_KEY": "BQYIM75p8x0iWVFSIgqEKwFprpRSVHlz",
    "COS_SERVICE_BASE_URL": "https://examplebucket-1250000000.cos.ap-beijing.myqcloud.com",
    "DESTRUCTIVE_API_KEY": "admin-secret",
}

for _key, _value in TEST_ENVIRONMENT.items():
    os.environ[_key] = _value
get_settings.cache_clear()  # type: ignore[attr-defined]


@pytest.fixture(autouse=True)
def reset_settings_cache():
    get_settings.cache_clear()  # type: ignore[attr-defined]
    yield
    get_settings.cache_clear()  # type: ignore[attr-defined]


@pytest.fixture
def no_sleep():
    """Sleep replacement for retry policies; records requested delays."""
    delays: list[float] = []
    return delays.append, delays
