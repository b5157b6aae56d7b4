import os
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import pytest

from toggle_engine.core.config import reset_settings
from toggle_engine.core.feature_toggles.bucketing import bucket


_ENV_VARS_TO_ISOLATE = [
    "FEATURE_TOGGLE_ENVIRONMENT",
    "FEATURE_TOGGLE_STORAGE_BACKEND",
    "FEATURE_TOGGLE_STORAGE_PATH",
    "FEATURE_TOGGLE_REMOTE_URL",
    "FEATURE_TOGGLE_REMOTE_TIMEOUT_SECONDS",
    "FEATURE_TOGGLE_UPDATE_QUEUE_SIZE",
    "FEATURE_TOGGLE_APP_VERSION",
]


@pytest.fixture(autouse=True)
def env_isolation():
    """Isolate environment variables and cached settings between tests."""
    backup = {k: os.environ.get(k) for k in _ENV_VARS_TO_ISOLATE}
    reset_settings()
    try:
        yield
    finally:
        for k, v in backup.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v
        reset_settings()


class FixedClock:
    """Manually advanced UTC clock."""

    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


def find_identity(predicate: Callable[[int], bool], prefix: str = "user-") -> str:
    """First ``prefix<n>`` identity whose bucket satisfies ``predicate``."""
    for i in range(10_000):
        identity = f"{prefix}{i}"
        if predicate(bucket(identity)):
            return identity
    raise AssertionError("no identity found for bucket predicate")


@pytest.fixture
def identity_for() -> Callable[..., str]:
    return find_identity
