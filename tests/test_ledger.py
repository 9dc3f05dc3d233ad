"""Tests for the ledger anchor adapters."""

import json
import urllib.error
from unittest.mock import MagicMock, patch

import pytest

from gigsettle.errors import LedgerError
from gigsettle.ledger import HttpLedgerAnchor, InMemoryLedgerAnchor, LedgerParams
from gigsettle.types import ConfirmationStatus, LedgerAction

PARAMS = LedgerParams(
    escrow_id="esc-1",
    amount=90_000,
    currency="USDM",
    payer_id="esc-1",
    payee_id="dev-bob",
    milestone_indices=[0],
    memo="release:0",
)


def _response(payload):
    resp = MagicMock()
    resp.read.return_value = json.dumps(payload).encode("utf-8")
    resp.__enter__.return_value = resp
    return resp


class TestInMemoryLedgerAnchor:
    def test_confirms_by_default(self):
        ledger = InMemoryLedgerAnchor()
        tx_ref = ledger.submit(LedgerAction.RELEASE, PARAMS)
        assert tx_ref == "tx-release-000001"
        assert ledger.await_confirmation(tx_ref, 1.0) == ConfirmationStatus.CONFIRMED
        assert ledger.confirmation_calls == [(tx_ref, 1.0)]

    def test_scripted_outcomes_apply_in_order(self):
        ledger = InMemoryLedgerAnchor()
        ledger.script(ConfirmationStatus.PENDING, ConfirmationStatus.FAILED)
        first = ledger.submit(LedgerAction.LOCK, PARAMS)
        second = ledger.submit(LedgerAction.RELEASE, PARAMS)
        third = ledger.submit(LedgerAction.REFUND, PARAMS)

        assert ledger.await_confirmation(first, 0) == ConfirmationStatus.PENDING
        assert ledger.await_confirmation(second, 0) == ConfirmationStatus.FAILED
        assert ledger.await_confirmation(third, 0) == ConfirmationStatus.CONFIRMED

        ledger.set_status(first, ConfirmationStatus.CONFIRMED)
        assert ledger.await_confirmation(first, 0) == ConfirmationStatus.CONFIRMED

    def test_fail_next_submit(self):
        ledger = InMemoryLedgerAnchor()
        ledger.fail_next_submit()
        with pytest.raises(LedgerError):
            ledger.submit(LedgerAction.LOCK, PARAMS)
        assert ledger.submit(LedgerAction.LOCK, PARAMS)
        assert len(ledger.submissions) == 1

    def test_unknown_tx_is_failed(self):
        assert InMemoryLedgerAnchor().await_confirmation("tx-nope", 0) == ConfirmationStatus.FAILED

    def test_submissions_for_filters(self):
        ledger = InMemoryLedgerAnchor()
        ledger.submit(LedgerAction.LOCK, PARAMS)
        ledger.submit(LedgerAction.RELEASE, PARAMS)
        assert len(ledger.submissions_for("esc-1")) == 2
        assert [t.action for t in ledger.submissions_for("esc-1", LedgerAction.LOCK)] == [LedgerAction.LOCK]
        assert ledger.submissions_for("esc-2") == []


class TestHttpLedgerAnchor:
    def _anchor(self, **kwargs):
        self.now = 0.0
        self.sleeps = []

        def sleep(seconds):
            self.sleeps.append(seconds)
            self.now += seconds

        return HttpLedgerAnchor(
            "https://ledger.example.com/api/",
            auth_token="secret-token",
            poll_interval=1.0,
            sleep=sleep,
            clock=lambda: self.now,
            **kwargs,
        )

    def test_rejects_non_http_url(self):
        with pytest.raises(ValueError):
            HttpLedgerAnchor("ftp://ledger.example.com")

    @patch("gigsettle.ledger.urllib.request.urlopen")
    def test_submit_posts_json(self, mock_urlopen):
        mock_urlopen.return_value = _response({"tx_ref": "0xabc"})
        anchor = self._anchor()

        assert anchor.submit(LedgerAction.RELEASE, PARAMS) == "0xabc"

        request = mock_urlopen.call_args[0][0]
        assert request.full_url == "https://ledger.example.com/api/transactions"
        assert request.get_method() == "POST"
        assert request.get_header("Authorization") == "Bearer secret-token"
        body = json.loads(request.data.decode("utf-8"))
        assert body["action"] == "release"
        assert body["params"]["milestone_indices"] == [0]
        assert body["params"]["amount"] == 90_000

    @patch("gigsettle.ledger.urllib.request.urlopen")
    def test_submit_without_tx_ref(self, mock_urlopen):
        mock_urlopen.return_value = _response({"status": "queued"})
        with pytest.raises(LedgerError):
            self._anchor().submit(LedgerAction.LOCK, PARAMS)

    @pytest.mark.parametrize(
        "error",
        [
            urllib.error.HTTPError("https://ledger.example.com", 503, "Unavailable", None, None),
            urllib.error.URLError("connection refused"),
            TimeoutError("timed out"),
        ],
    )
    def test_transport_errors_become_ledger_errors(self, error):
        with patch("gigsettle.ledger.urllib.request.urlopen", side_effect=error):
            with pytest.raises(LedgerError) as exc:
                self._anchor().submit(LedgerAction.LOCK, PARAMS)
        assert exc.value.retryable

    @patch("gigsettle.ledger.urllib.request.urlopen")
    def test_malformed_json(self, mock_urlopen):
        resp = _response({})
        resp.read.return_value = b"<html>"
        mock_urlopen.return_value = resp
        with pytest.raises(LedgerError):
            self._anchor().submit(LedgerAction.LOCK, PARAMS)

    @patch("gigsettle.ledger.urllib.request.urlopen")
    def test_polls_until_confirmed(self, mock_urlopen):
        mock_urlopen.side_effect = [
            _response({"status": "pending"}),
            _response({"status": "pending"}),
            _response({"status": "confirmed"}),
        ]
        anchor = self._anchor()

        assert anchor.await_confirmation("0xabc", 10.0) == ConfirmationStatus.CONFIRMED
        assert self.sleeps == [1.0, 1.0]
        request = mock_urlopen.call_args[0][0]
        assert request.full_url.endswith("/transactions/0xabc")
        assert request.get_method() == "GET"

    @patch("gigsettle.ledger.urllib.request.urlopen")
    def test_pending_past_timeout(self, mock_urlopen):
        mock_urlopen.side_effect = lambda *a, **kw: _response({"status": "pending"})
        anchor = self._anchor()

        assert anchor.await_confirmation("0xabc", 2.5) == ConfirmationStatus.PENDING
        assert sum(self.sleeps) == pytest.approx(2.5)

    @patch("gigsettle.ledger.urllib.request.urlopen")
    def test_zero_timeout_checks_once(self, mock_urlopen):
        mock_urlopen.return_value = _response({"status": "failed"})
        anchor = self._anchor()
        assert anchor.await_confirmation("0xabc", 0.0) == ConfirmationStatus.FAILED
        assert self.sleeps == []

    @patch("gigsettle.ledger.urllib.request.urlopen")
    def test_unknown_status_is_pending(self, mock_urlopen):
        mock_urlopen.side_effect = lambda *a, **kw: _response({"status": "finalizing"})
        assert self._anchor().await_confirmation("0xabc", 0.0) == ConfirmationStatus.PENDING
