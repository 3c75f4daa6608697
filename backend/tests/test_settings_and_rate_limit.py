from __future__ import annotations

import pytest
from pydantic import ValidationError

from video_ingest.core.rate_limit import FixedWindowRateLimiter
from video_ingest.core.settings import Settings


def test_defaults_are_valid() -> None:
    settings = Settings()
    assert settings.provider_kind in ("managed-stream", "object-store")
    assert settings.reconcile_abandon_seconds > settings.reconcile_grace_seconds
    assert settings.progress_subscriber_queue_depth > 1


def test_cors_origins_accepts_comma_separated_string() -> None:
    settings = Settings(CORS_ORIGINS="http://a.test, http://b.test,")
    assert settings.cors_origins == ["http://a.test", "http://b.test"]


@pytest.mark.parametrize(
    "env",
    [
        {"UPLOAD_SESSION_TTL_SECONDS": 0},
        {"PROVIDER_SIGNATURE_TOLERANCE_SECONDS": -1},
        {"RECONCILE_GRACE_SECONDS": 600, "RECONCILE_ABANDON_SECONDS": 600},
        {"RECONCILE_PERIOD_SECONDS": 0},
        {"PROGRESS_SUBSCRIBER_QUEUE_DEPTH": 1},
        {"UPLOAD_MIN_BYTES": 10, "UPLOAD_MAX_BYTES": 10},
        {"PROVIDER_KIND": "youtube"},
        {"PROVIDER_KIND": "object-store", "S3_BUCKET": None},
        {"LESSONS_TABLE": "lessons; drop table x"},
    ],
)
def test_invalid_configuration_is_rejected(env) -> None:
    with pytest.raises(ValidationError):
        Settings(**env)


def test_schema_qualified_lessons_table_is_allowed() -> None:
    assert Settings(LESSONS_TABLE="catalog.lessons").lessons_table == "catalog.lessons"


@pytest.mark.asyncio
async def test_fixed_window_limits_per_key_and_resets() -> None:
    now = [1_000_040.0]
    limiter = FixedWindowRateLimiter(clock=lambda: now[0])

    results = [await limiter.hit(key="ip-1", limit=2, window_seconds=60) for _ in range(3)]
    assert [r.allowed for r in results] == [True, True, False]
    assert results[0].remaining == 1
    assert results[2].reset_in_seconds == 40

    # Other keys have their own budget.
    assert (await limiter.hit(key="ip-2", limit=2, window_seconds=60)).allowed is True

    now[0] += 60
    assert (await limiter.hit(key="ip-1", limit=2, window_seconds=60)).allowed is True
