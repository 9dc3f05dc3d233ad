"""
Ledger Anchor adapter.

The engine never moves money itself. It asks a Ledger Anchor to submit a
lock, release or refund and then waits (bounded) for the anchor to report
the transaction as confirmed, still pending or failed.

Implementations:
- InMemoryLedgerAnchor: scripted outcomes for tests and local development
- HttpLedgerAnchor: JSON over HTTP to an anchor service
"""

import itertools
import json
import logging
import threading
import time
import urllib.error
import urllib.request
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Protocol, Tuple

from gigsettle.errors import LedgerError
from gigsettle.types import ConfirmationStatus, LedgerAction

logger = logging.getLogger(__name__)


@dataclass
class LedgerParams:
    """What a ledger transaction moves, and between whom."""

    escrow_id: str
    amount: int
    currency: str
    payer_id: str
    payee_id: str
    asset_id: Optional[str] = None
    milestone_indices: List[int] = field(default_factory=list)
    memo: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class LedgerAnchor(Protocol):
    """Interface to the external ledger."""

    def submit(self, action: LedgerAction, params: LedgerParams) -> str:
        """Submit a transaction. Returns its reference.

        Raises LedgerError if the anchor refuses or cannot be reached.
        """
        ...

    def await_confirmation(self, tx_ref: str, timeout: float) -> ConfirmationStatus:
        """Wait up to timeout seconds for a terminal outcome.

        Returns PENDING when the transaction is neither confirmed nor failed
        by the deadline. Raises LedgerError if the anchor cannot be reached.
        """
        ...


@dataclass
class SubmittedTransaction:
    tx_ref: str
    action: LedgerAction
    params: LedgerParams
    status: ConfirmationStatus = ConfirmationStatus.PENDING


class InMemoryLedgerAnchor:
    """Scripted ledger for tests and local development.

    By default every submission confirms immediately. Outcomes can be
    scripted per upcoming confirmation with script(), per transaction with
    set_status(), and submissions can be made to fail with fail_next_submit().
    """

    def __init__(
        self,
        default_status: ConfirmationStatus = ConfirmationStatus.CONFIRMED,
        submit_delay: float = 0.0,
    ):
        self.default_status = default_status
        self.submit_delay = submit_delay
        self.transactions: Dict[str, SubmittedTransaction] = {}
        self.submissions: List[SubmittedTransaction] = []
        self.confirmation_calls: List[Tuple[str, float]] = []
        self._scripted: Deque[ConfirmationStatus] = deque()
        self._submit_errors: Deque[Exception] = deque()
        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    def script(self, *outcomes: ConfirmationStatus) -> None:
        """Queue outcomes for the next newly submitted transactions, in order."""
        with self._lock:
            self._scripted.extend(outcomes)

    def fail_next_submit(self, error: Optional[Exception] = None) -> None:
        with self._lock:
            self._submit_errors.append(error or LedgerError("ledger anchor unavailable"))

    def set_status(self, tx_ref: str, status: ConfirmationStatus) -> None:
        with self._lock:
            self.transactions[tx_ref].status = status

    def submissions_for(self, escrow_id: str, action: Optional[LedgerAction] = None):
        return [
            t
            for t in self.submissions
            if t.params.escrow_id == escrow_id and (action is None or t.action == action)
        ]

    def submit(self, action: LedgerAction, params: LedgerParams) -> str:
        if self.submit_delay:
            time.sleep(self.submit_delay)
        with self._lock:
            if self._submit_errors:
                raise self._submit_errors.popleft()
            tx_ref = f"tx-{action.value}-{next(self._counter):06d}"
            status = self._scripted.popleft() if self._scripted else self.default_status
            tx = SubmittedTransaction(tx_ref=tx_ref, action=action, params=params, status=status)
            self.transactions[tx_ref] = tx
            self.submissions.append(tx)
        logger.debug(f"Ledger submit {action.value} escrow={params.escrow_id} amount={params.amount} -> {tx_ref}")
        return tx_ref

    def await_confirmation(self, tx_ref: str, timeout: float) -> ConfirmationStatus:
        with self._lock:
            self.confirmation_calls.append((tx_ref, timeout))
            tx = self.transactions.get(tx_ref)
            if tx is None:
                return ConfirmationStatus.FAILED
            return tx.status


class HttpLedgerAnchor:
    """Ledger anchor reached over HTTP.

    POST {base_url}/transactions          {action, params}  -> {tx_ref}
    GET  {base_url}/transactions/{tx_ref}                    -> {status}
    """

    def __init__(
        self,
        base_url: str,
        auth_token: Optional[str] = None,
        request_timeout: float = 10.0,
        poll_interval: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        if not base_url.startswith(("https://", "http://")):
            raise ValueError("Ledger anchor URL must be http(s)")
        self.base_url = base_url.rstrip("/")
        self.auth_token = auth_token
        self.request_timeout = request_timeout
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._clock = clock

    def _request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        data = json.dumps(body).encode("utf-8") if body is not None else None
        req = urllib.request.Request(
            f"{self.base_url}{path}", data=data, headers=headers, method=method
        )
        try:
            with urllib.request.urlopen(req, timeout=self.request_timeout) as resp:
                payload = resp.read()
        except urllib.error.HTTPError as e:
            raise LedgerError(f"Ledger anchor returned HTTP {e.code} for {method} {path}") from e
        except urllib.error.URLError as e:
            raise LedgerError(f"Ledger anchor unreachable: {e.reason}") from e
        except TimeoutError as e:
            raise LedgerError(f"Ledger anchor timed out on {method} {path}") from e
        try:
            return json.loads(payload or b"{}")
        except json.JSONDecodeError as e:
            raise LedgerError("Ledger anchor returned malformed JSON") from e

    def submit(self, action: LedgerAction, params: LedgerParams) -> str:
        result = self._request(
            "POST", "/transactions", {"action": action.value, "params": params.to_dict()}
        )
        tx_ref = result.get("tx_ref")
        if not tx_ref:
            raise LedgerError("Ledger anchor accepted submission without a tx_ref")
        logger.info(f"Ledger submit {action.value} escrow={params.escrow_id} -> {tx_ref}")
        return tx_ref

    def _status(self, tx_ref: str) -> ConfirmationStatus:
        result = self._request("GET", f"/transactions/{tx_ref}")
        try:
            return ConfirmationStatus(result.get("status", "pending"))
        except ValueError:
            logger.warning(f"Unknown ledger status {result.get('status')!r} for {tx_ref}")
            return ConfirmationStatus.PENDING

    def await_confirmation(self, tx_ref: str, timeout: float) -> ConfirmationStatus:
        deadline = self._clock() + timeout
        while True:
            status = self._status(tx_ref)
            if status != ConfirmationStatus.PENDING:
                return status
            remaining = deadline - self._clock()
            if remaining <= 0:
                return ConfirmationStatus.PENDING
            self._sleep(min(self.poll_interval, remaining))
