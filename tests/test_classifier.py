"""Tests for verdict classification and the exit-code contract."""

import signal

import pytest

from pcibisect.core.classifier import (
    EXIT_BAD,
    EXIT_FATAL,
    EXIT_GOOD,
    EXIT_SKIP,
    BuildOutcome,
    Verdict,
    abort_exit_code,
    classify,
)
from pcibisect.core.oracle import GuestOracle
from pcibisect.exceptions import BuildFailure, SessionCrash, SessionTimeout


@pytest.fixture
def oracle():
    return GuestOracle(entrypoint="/sbin/oracle", success_token="PCIBISECT-GOOD")


def test_token_present_is_good(oracle):
    result = classify("r1", BuildOutcome.SUCCEEDED, oracle, output=b"boot\nPCIBISECT-GOOD\n")

    assert result.verdict == Verdict.GOOD
    assert result.exit_code == EXIT_GOOD == 0


def test_token_absent_is_bad(oracle):
    result = classify("r2", BuildOutcome.SUCCEEDED, oracle, output=b"boot\nreproducer failed\n")

    assert result.verdict == Verdict.BAD
    assert result.exit_code == EXIT_BAD == 1


def test_empty_output_is_bad(oracle):
    result = classify("r2", BuildOutcome.SUCCEEDED, oracle, output=b"")

    assert result.verdict == Verdict.BAD


def test_build_failure_is_inconclusive_regardless_of_output(oracle):
    error = BuildFailure("build exited with status 2", b"PCIBISECT-GOOD\n")
    result = classify(
        "r3", BuildOutcome.FAILED, oracle, output=b"PCIBISECT-GOOD\n", error=error
    )

    assert result.verdict == Verdict.INCONCLUSIVE
    assert result.exit_code == EXIT_SKIP == 125
    assert result.build == BuildOutcome.FAILED


def test_timeout_is_inconclusive(oracle):
    result = classify("r4", BuildOutcome.SUCCEEDED, oracle, error=SessionTimeout(600, b"boot\n"))

    assert result.verdict == Verdict.INCONCLUSIVE
    assert result.exit_code == 125
    assert "600" in result.reason


def test_crash_with_token_is_still_inconclusive(oracle):
    error = SessionCrash(-9, b"PCIBISECT-GOOD\n")
    result = classify("r5", BuildOutcome.SUCCEEDED, oracle, error=error)

    assert result.verdict == Verdict.INCONCLUSIVE
    assert "signal 9" in result.reason


def test_abort_exit_codes():
    assert abort_exit_code(signal.SIGINT) == 130
    assert abort_exit_code(signal.SIGTERM) == 143
    assert EXIT_FATAL == 128 + signal.SIGABRT
    assert EXIT_FATAL not in (EXIT_GOOD, EXIT_BAD, EXIT_SKIP)
