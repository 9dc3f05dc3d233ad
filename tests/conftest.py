"""
Pytest fixtures and test configuration for gigsettle tests.
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List
from unittest.mock import Mock

import pytest

from gigsettle import SettlementConfig, SettlementEngine
from gigsettle.ledger import InMemoryLedgerAnchor
from gigsettle.storage import InMemoryStorage, SQLiteStorage

EMPLOYER = "emp-alice"
FREELANCER = "dev-bob"
ARBITER = "arb-carol"
OTHER_BIDDER = "dev-dave"

START = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = START):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def config():
    # No backoff sleeps in tests
    return SettlementConfig(conflict_backoff_seconds=0.0, ledger_timeout_seconds=1.0)


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def sqlite_storage(tmp_path):
    return SQLiteStorage(db_path=tmp_path / "gigsettle.db")


@pytest.fixture
def ledger():
    return InMemoryLedgerAnchor()


@pytest.fixture
def engine(storage, ledger, config, clock):
    return SettlementEngine(storage=storage, ledger=ledger, config=config, now_fn=clock)


@pytest.fixture
def sqlite_engine(sqlite_storage, ledger, config, clock):
    return SettlementEngine(storage=sqlite_storage, ledger=ledger, config=config, now_fn=clock)


# ---------------------------------------------------------------------------
# Scenario builders
# ---------------------------------------------------------------------------


def _post_job(engine, budget_min=100_000, budget_max=500_000, plan=None, employer=EMPLOYER):
    return engine.jobs.create_job(
        employer_id=employer,
        title="Build a landing page",
        description="Responsive, three sections",
        budget_min=budget_min,
        budget_max=budget_max,
        milestone_plan=plan,
    )


def _accept(engine, job, amount=300_000, duration_days=30, bidder=FREELANCER):
    proposal = engine.proposals.submit_proposal(job.id, bidder, amount, duration_days)
    return engine.proposals.accept_proposal(proposal.id, actor_id=job.employer_id)


def _fund(engine, plan=None, threshold=None, amount=300_000, lock=True, duration_days=30):
    job = _post_job(engine)
    proposal = _accept(engine, job, amount=amount, duration_days=duration_days)
    escrow = engine.escrows.create_escrow(
        job.id,
        proposal.id,
        arbiter_id=ARBITER,
        milestone_plan=plan,
        threshold=threshold,
        actor_id=EMPLOYER,
    )
    if lock:
        escrow = engine.escrows.submit_lock(escrow.id, actor_id=EMPLOYER)
    return escrow


@pytest.fixture
def post_job(engine):
    """Factory: post an OPEN job (budget 100000-500000) as emp-alice."""

    def factory(target=None, **kwargs):
        return _post_job(target or engine, **kwargs)

    return factory


@pytest.fixture
def accepted_proposal(engine):
    """Factory: submit a proposal from dev-bob on a job and accept it."""

    def factory(job, target=None, **kwargs):
        return _accept(target or engine, job, **kwargs)

    return factory


@pytest.fixture
def make_escrow(engine):
    """Factory: job -> accepted proposal -> escrow with arb-carol, locked unless lock=False."""

    def factory(target=None, **kwargs):
        return _fund(target or engine, **kwargs)

    return factory


@pytest.fixture
def locked_escrow(make_escrow):
    return make_escrow()


@pytest.fixture
def milestone_escrow(make_escrow):
    """Locked escrow of 300000 split 30/30/40 over 30 days."""
    return make_escrow(plan=[30, 30, 40])

# ---------------------------------------------------------------------------
# Supabase mock
# ---------------------------------------------------------------------------


class _Query:
    """Chainable stand-in for a PostgREST query builder over a list of rows."""

    def __init__(
        self, rows: List[Dict[str, Any]], op: str = "select", payload=None, count=None, embeds=None
    ):
        self._rows = rows
        self._op = op
        self._payload = payload
        self._count = count
        self._embeds = embeds or {}
        self._filters = []
        self._order = None
        self._range = None
        self._limit = None
        self._negate_next = False

    def _value(self, row, column):
        if "->>" in column:
            base, key = column.split("->>")
            inner = row.get(base) or {}
            return inner.get(key)
        return row.get(column)

    def eq(self, column, value):
        self._filters.append(lambda r: self._value(r, column) == value)
        return self

    def in_(self, column, values):
        values = list(values)
        self._filters.append(lambda r: self._value(r, column) in values)
        return self

    def is_(self, column, value):
        negate = self._negate_next
        self._negate_next = False
        if value == "null":
            self._filters.append(lambda r: (r.get(column) is None) != negate)
        return self

    @property
    def not_(self):
        # .not_.is_(...) negates the next is_ filter
        self._negate_next = True
        return self

    def or_(self, expression):
        clauses = [c.split(".eq.") for c in expression.split(",")]
        self._filters.append(lambda r: any(r.get(col) == val for col, val in clauses))
        return self

    def order(self, column, desc=False):
        self._order = (column, desc)
        return self

    def range(self, start, end):
        self._range = (start, end)
        return self

    def limit(self, n):
        self._limit = n
        return self

    def _matching(self):
        return [r for r in self._rows if all(f(r) for f in self._filters)]

    def execute(self):
        result = Mock()
        if self._op == "update":
            matched = self._matching()
            for row in matched:
                row.update(self._payload)
            result.data = [dict(r) for r in matched]
            return result
        rows = [dict(r) for r in self._matching()]
        for name, (children, foreign_key) in self._embeds.items():
            for row in rows:
                row[name] = [dict(c) for c in children if c.get(foreign_key) == row.get("id")]
        if self._order:
            column, desc = self._order
            rows.sort(key=lambda r: (r.get(column) is None, r.get(column) or ""), reverse=desc)
        if self._range:
            start, end = self._range
            rows = rows[start : end + 1]
        if self._limit is not None:
            rows = rows[: self._limit]
        result.data = rows
        result.count = len(rows) if self._count == "exact" else None
        return result


class FakeSupabase:
    """Minimal in-memory Supabase client: table().select/insert/update and rpc()."""

    def __init__(self):
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.unique: Dict[str, List[str]] = {}
        # Child table -> column referencing the parent's id, for embedded selects
        self.foreign_keys: Dict[str, str] = {}
        self.rpc_calls: List[tuple] = []
        self.rpc_handler = None

    def table(self, name):
        rows = self.tables.setdefault(name, [])
        client = self

        class _Table:
            def select(self, fields="*", count=None):
                embeds = {}
                for part in fields.split(","):
                    part = part.strip()
                    if "(" in part:
                        child = part.split("(")[0]
                        embeds[child] = (
                            client.tables.setdefault(child, []),
                            client.foreign_keys.get(child, "parent_id"),
                        )
                return _Query(rows, count=count, embeds=embeds)

            def insert(self, data):
                for column in client.unique.get(name, []):
                    if any(r.get(column) == data.get(column) for r in rows):
                        raise Exception(
                            f'duplicate key value violates unique constraint "{name}_{column}_key"'
                        )
                row = dict(data)
                row.setdefault("id", str(uuid.uuid4()))
                rows.append(row)
                inserted = Mock()
                inserted.execute = lambda: Mock(data=[dict(row)])
                return inserted

            def update(self, payload):
                return _Query(rows, op="update", payload=payload)

        return _Table()

    def rpc(self, name, params):
        self.rpc_calls.append((name, params))
        call = Mock()
        call.execute = lambda: Mock(data=self.rpc_handler(name, params) if self.rpc_handler else None)
        return call


@pytest.fixture
def mock_supabase_client():
    return FakeSupabase()
