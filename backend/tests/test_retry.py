import pytest

from utils.retry import backoff_delay, run_with_retry


class Transient(Exception):
    pass


class Fatal(Exception):
    pass


def _flaky(failures):
    calls = {"count": 0}

    def operation():
        calls["count"] += 1
        if failures:
            raise failures.pop(0)
        return "ok"

    return operation, calls


def test_backoff_doubles_from_base():
    assert [backoff_delay(attempt, 2) for attempt in (1, 2, 3)] == [2, 4, 8]


def test_succeeds_after_transient_failures():
    sleeps = []
    retries = []
    operation, calls = _flaky([Transient("a"), Transient("b")])

    result = run_with_retry(
        operation,
        should_retry=lambda exc: isinstance(exc, Transient),
        max_attempts=3,
        base_delay_seconds=2,
        sleep_fn=sleeps.append,
        on_retry=lambda attempt, delay, exc: retries.append((attempt, delay, str(exc))),
    )

    assert result == "ok"
    assert calls["count"] == 3
    assert sleeps == [2, 4]
    assert retries == [(1, 2, "a"), (2, 4, "b")]


def test_no_sleep_after_final_attempt():
    sleeps = []
    operation, calls = _flaky([Transient("1"), Transient("2"), Transient("3")])

    with pytest.raises(Transient, match="3"):
        run_with_retry(operation, should_retry=lambda exc: True, max_attempts=3, sleep_fn=sleeps.append)

    assert calls["count"] == 3
    assert sleeps == [2.0, 4.0]


def test_non_retryable_error_is_raised_immediately():
    sleeps = []
    operation, calls = _flaky([Fatal("bad output")])

    with pytest.raises(Fatal):
        run_with_retry(
            operation,
            should_retry=lambda exc: isinstance(exc, Transient),
            sleep_fn=sleeps.append,
        )

    assert calls["count"] == 1
    assert sleeps == []
