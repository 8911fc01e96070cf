from __future__ import annotations

import allure
import pytest

from taskinfa_orchestrator.orchestrator.retry_policy import decide_after_failure, is_exhausted

pytestmark = [
    allure.epic("Scheduling"),
    allure.feature("Retry Budget"),
]


@pytest.mark.parametrize(
    ("error_count", "max_retries", "expected"),
    [
        (0, 3, False),
        (2, 3, False),
        (3, 3, True),
        (7, 3, True),
        (0, 0, True),
    ],
)
def test_is_exhausted_threshold(error_count: int, max_retries: int, expected: bool) -> None:
    assert is_exhausted(error_count, max_retries) is expected


def test_failure_below_limit_keeps_retrying() -> None:
    decision = decide_after_failure(2, 3)

    assert decision.retry is True
    assert decision.exhausted is False
    assert decision.error_count == 2


def test_failure_reaching_limit_opens_circuit() -> None:
    decision = decide_after_failure(3, 3)

    assert decision.retry is False
    assert decision.exhausted is True
