from __future__ import annotations

import random

import allure

from genrelay.config import RetrySettings
from genrelay.orchestrator.retry import RetryPolicy

pytestmark = [
    allure.epic("Generation Queue"),
    allure.feature("Retries & Failures"),
]


def test_compute_delay_stays_within_exponential_cap() -> None:
    policy = RetryPolicy(rng=random.Random(7))

    for retry_number in range(1, 8):
        delay = policy.compute_delay(kind="video", retry_number=retry_number)
        assert 0 <= delay <= min(60.0, 5.0 * 2 ** (retry_number - 1))


def test_compute_delay_is_zero_with_zero_base() -> None:
    policy = RetryPolicy(base_seconds={"image": 0.0})

    assert policy.compute_delay(kind="image", retry_number=3) == 0.0


def test_policy_from_settings_copies_per_kind_budget() -> None:
    settings = RetrySettings(
        max_attempts={"image": 5, "video": 2, "chat": 1},
        base_seconds={"image": 1.0, "video": 1.0, "chat": 1.0},
        max_seconds=10.0,
    )
    policy = RetryPolicy.from_settings(settings)

    assert policy.attempts_for("image") == 5
    assert policy.attempts_for("chat") == 1
    assert policy.attempts_for("unknown") == 3
    assert policy.max_seconds == 10.0


def test_default_attempt_caps_differ_per_kind() -> None:
    policy = RetryPolicy()

    assert policy.attempts_for("image") == 3
    assert policy.attempts_for("video") == 2
    assert policy.attempts_for("chat") == 5
    assert RetrySettings().max_attempts == {"image": 3, "video": 2, "chat": 5}
