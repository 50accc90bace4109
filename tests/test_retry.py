import pathlib
import sys

import pytest

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))

from gerenciador_redshift.errors import FatalDBError, TransientDBError, ValidationError
from gerenciador_redshift.retry import Exhausted, Success, run_with_retry


class Flaky:
    def __init__(self, failures, code="40001"):
        self.failures = failures
        self.code = code
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise TransientDBError("could not serialize access", self.code)
        return "ok"


def test_success_after_transient_failures():
    sleeps = []
    op = Flaky(2)
    result = run_with_retry(op, max_attempts=5, sleep=sleeps.append, base_delay=0.5)
    assert result == Success("ok", 3)
    assert sleeps == [0.5, 1.0]


def test_exhausted_returns_last_error():
    sleeps = []
    op = Flaky(10)
    result = run_with_retry(op, max_attempts=3, sleep=sleeps.append)
    assert isinstance(result, Exhausted)
    assert result.attempts == 3
    assert op.calls == 3
    assert sleeps == [1.0, 2.0]
    with pytest.raises(FatalDBError) as exc:
        result.unwrap()
    assert exc.value.pgcode == "40001"


def test_fatal_errors_are_not_retried():
    calls = []

    def op():
        calls.append(1)
        raise FatalDBError("permission denied", "42501")

    with pytest.raises(FatalDBError):
        run_with_retry(op, max_attempts=5, sleep=lambda s: None)
    assert len(calls) == 1


def test_validation_errors_propagate():
    def op():
        raise ValidationError("bad privilege")

    with pytest.raises(ValidationError):
        run_with_retry(op, sleep=lambda s: None)


def test_max_attempts_must_be_positive():
    with pytest.raises(ValueError):
        run_with_retry(lambda: None, max_attempts=0)
