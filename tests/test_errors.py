"""Tests for the settlement error taxonomy."""

import pytest

from gigsettle.errors import (
    ActionConflict,
    BudgetExceeded,
    ConcurrencyConflict,
    ErrorKind,
    EscrowNotFound,
    LedgerRejected,
    LedgerTimeout,
    NotLocked,
    UnknownParty,
)


@pytest.mark.parametrize(
    "error,kind,retryable",
    [
        (BudgetExceeded("too much"), ErrorKind.VALIDATION, False),
        (EscrowNotFound("gone"), ErrorKind.NOT_FOUND, False),
        (NotLocked("created"), ErrorKind.STATE, False),
        (ConcurrencyConflict("busy"), ErrorKind.CONFLICT, True),
        (LedgerRejected("failed"), ErrorKind.LEDGER, True),
        (UnknownParty("who"), ErrorKind.AUTHORIZATION, False),
    ],
)
def test_kind_and_retryable(error, kind, retryable):
    assert error.kind == kind
    assert error.retryable is retryable


def test_to_dict_carries_current_state():
    error = ActionConflict("Collecting refund", current_state="refund")
    assert error.to_dict() == {
        "detail": "Collecting refund",
        "kind": "state",
        "retryable": False,
        "current_state": "refund",
    }


def test_retryable_override():
    assert LedgerRejected("final", retryable=False).retryable is False
    # Class default untouched
    assert LedgerRejected("again").retryable is True


def test_timeout_keeps_tx_ref():
    error = LedgerTimeout("not yet", tx_ref="tx-release-000007", current_state="locked")
    assert error.tx_ref == "tx-release-000007"
    assert error.current_state == "locked"
    assert error.retryable
    assert str(error) == "not yet"
