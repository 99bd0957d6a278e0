import random
import statistics

import pytest

from meetbot.config.settings import Settings
from meetbot.v1.infra.jobs.backoff import RetryPolicies, RetryPolicy


def test_exponential_growth_without_jitter():
    policy = RetryPolicy(base_delay_ms=1000, max_delay_ms=300_000, jitter=0.0)

    assert [policy.next_delay(n) for n in range(1, 6)] == [1000, 2000, 4000, 8000, 16000]


def test_delay_capped_at_max():
    policy = RetryPolicy(base_delay_ms=1000, max_delay_ms=5000, jitter=0.0)

    assert policy.next_delay(3) == 4000
    assert policy.next_delay(4) == 5000
    assert policy.next_delay(500) == 5000


def test_jitter_stays_within_bounds():
    policy = RetryPolicy(
        base_delay_ms=1000, max_delay_ms=300_000, jitter=0.2, rng=random.Random(7)
    )

    for attempts in range(1, 8):
        expected = 1000 * 2 ** (attempts - 1)
        for _ in range(200):
            delay = policy.next_delay(attempts)
            assert expected * 0.8 - 1 <= delay <= expected * 1.2


def test_jittered_delay_never_exceeds_max():
    policy = RetryPolicy(
        base_delay_ms=1000, max_delay_ms=10_000, jitter=0.5, rng=random.Random(3)
    )

    delays = [policy.next_delay(attempts) for attempts in range(1, 40) for _ in range(50)]
    assert max(delays) <= 10_000
    assert min(delays) >= 0


def test_mean_delay_non_decreasing():
    policy = RetryPolicy(
        base_delay_ms=100, max_delay_ms=5000, jitter=0.2, rng=random.Random(11)
    )

    means = [
        statistics.mean(policy.next_delay(attempts) for _ in range(500))
        for attempts in range(1, 12)
    ]
    for earlier, later in zip(means, means[1:]):
        # Once capped, jitter is clamped from above so the mean settles slightly below max
        assert later >= earlier * 0.95


def test_zero_attempts_has_no_delay():
    assert RetryPolicy(jitter=0.0).next_delay(0) == 0


@pytest.mark.parametrize(
    "kwargs",
    [
        {"max_attempts": 0},
        {"base_delay_ms": -1},
        {"base_delay_ms": 10, "max_delay_ms": 5},
        {"jitter": 1.0},
        {"jitter": -0.1},
    ],
)
def test_invalid_policy_rejected(kwargs):
    with pytest.raises(ValueError):
        RetryPolicy(**kwargs)


def test_policies_from_settings():
    settings = Settings(
        job_max_attempts=4,
        job_base_delay_ms=50,
        job_max_delay_ms=500,
        job_backoff_jitter=0.1,
        job_max_attempts_by_type={"transcribe-audio": 6},
    )

    policies = RetryPolicies.from_settings(settings)

    default = policies.for_type("process-recording")
    assert default.max_attempts == 4
    assert default.base_delay_ms == 50
    assert default.max_delay_ms == 500
    assert default.jitter == 0.1

    transcribe = policies.for_type("transcribe-audio")
    assert transcribe.max_attempts == 6
    assert transcribe.base_delay_ms == 50


def test_policies_set_override():
    policies = RetryPolicies()
    policies.set("generate-summary", RetryPolicy(max_attempts=9))

    assert policies.for_type("generate-summary").max_attempts == 9
    assert policies.for_type("process-recording").max_attempts == 3
