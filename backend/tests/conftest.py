"""Pytest configuration and fixtures."""

import os
import secrets
import sys
from datetime import datetime, timedelta, timezone

import pytest

# Generate a unique test secret for this test run to prevent token forgery
_TEST_JWT_SECRET = f"test-only-{secrets.token_urlsafe(32)}"

# For unit tests, set mock values ONLY if not running integration tests
if not os.environ.get("RUN_INTEGRATION"):
    os.environ.setdefault("STORAGE_BACKEND", "memory")
    os.environ.setdefault("SWEEP_ENABLED", "false")
    os.environ.setdefault("JWT_SECRET_KEY", _TEST_JWT_SECRET)
    os.environ.pop("LEDGER_URL", None)
else:
    # For integration tests, load from .env
    from pathlib import Path

    from dotenv import load_dotenv

    env_path = Path(__file__).parent.parent / ".env"

    # Safety check: require explicit confirmation for integration tests
    if not os.environ.get("CONFIRM_INTEGRATION_CREDENTIALS"):
        print(
            "\n" + "=" * 70,
            file=sys.stderr,
        )
        print(
            "WARNING: Integration tests will use REAL credentials from .env",
            file=sys.stderr,
        )
        print(
            "   This may write to a production database and a live ledger.",
            file=sys.stderr,
        )
        print(
            "   Set CONFIRM_INTEGRATION_CREDENTIALS=yes to proceed.",
            file=sys.stderr,
        )
        print("=" * 70 + "\n", file=sys.stderr)
        pytest.exit(
            "Integration tests require CONFIRM_INTEGRATION_CREDENTIALS=yes",
            returncode=1,
        )

    print(
        "\nRunning integration tests with REAL credentials\n",
        file=sys.stderr,
    )
    load_dotenv(env_path, override=True)

from app.auth import create_access_token  # noqa: E402
from app.config import get_settings  # noqa: E402
from app.database import get_engine, reset_engine  # noqa: E402
from app.main import app  # noqa: E402
from app.rate_limit import limiter  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from gigsettle import SettlementConfig, SettlementEngine  # noqa: E402
from gigsettle.ledger import InMemoryLedgerAnchor  # noqa: E402
from gigsettle.storage import InMemoryStorage  # noqa: E402


API = "/api/v1"
EMPLOYER = "emp-alice"
FREELANCER = "dev-bob"
ARBITER = "arb-carol"


class TestClock:
    """Clock the test engine reads; advance() moves it forward."""

    __test__ = False

    def __init__(self):
        self.current = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


@pytest.fixture
def api_clock():
    return TestClock()


@pytest.fixture
def api_ledger():
    """Ledger anchor behind the test engine; script() it to simulate outcomes."""
    return InMemoryLedgerAnchor()


@pytest.fixture
def api_engine(api_ledger, api_clock):
    return SettlementEngine(
        storage=InMemoryStorage(),
        ledger=api_ledger,
        config=SettlementConfig(conflict_backoff_seconds=0.0, ledger_timeout_seconds=1.0),
        now_fn=api_clock,
    )


@pytest.fixture
def client(api_engine):
    """Create a test client bound to a fresh in-memory engine."""
    get_settings.cache_clear()
    limiter.reset()
    app.dependency_overrides[get_engine] = lambda: api_engine
    yield TestClient(app)
    app.dependency_overrides.clear()
    reset_engine()


@pytest.fixture
def auth_headers():
    """Factory: bearer headers for a test identity."""

    def factory(agent_id: str, admin: bool = False) -> dict:
        token = create_access_token(agent_id, get_settings(), admin=admin)
        return {"Authorization": f"Bearer {token}"}

    return factory


# ---------------------------------------------------------------------------
# Scenario builders (over HTTP)
# ---------------------------------------------------------------------------


@pytest.fixture
def open_job(client, auth_headers):
    """Factory: emp-alice posts a job with a 100000-500000 budget."""

    def factory(milestone_plan=None, **overrides) -> dict:
        body = {
            "title": "Build a landing page",
            "description": "Responsive, three sections",
            "budget_min": 100_000,
            "budget_max": 500_000,
            "milestone_plan": milestone_plan or [],
            **overrides,
        }
        resp = client.post(f"{API}/jobs", json=body, headers=auth_headers(EMPLOYER))
        assert resp.status_code == 201, resp.text
        return resp.json()

    return factory


@pytest.fixture
def accepted_bid(client, auth_headers, open_job):
    """Factory: dev-bob bids 300000 over 30 days and emp-alice accepts."""

    def factory(job=None) -> dict:
        job = job or open_job()
        resp = client.post(
            f"{API}/proposals",
            json={"job_id": job["id"], "amount": 300_000, "duration_days": 30},
            headers=auth_headers(FREELANCER),
        )
        assert resp.status_code == 201, resp.text
        resp = client.patch(
            f"{API}/proposals/{resp.json()['id']}",
            json={"action": "accept"},
            headers=auth_headers(EMPLOYER),
        )
        assert resp.status_code == 200, resp.text
        return resp.json()

    return factory


@pytest.fixture
def funded_escrow(client, auth_headers, accepted_bid):
    """Factory: escrow over the accepted bid with arb-carol, locked unless lock=False."""

    def factory(milestone_plan=None, lock=True, **overrides) -> dict:
        proposal = accepted_bid()
        body = {
            "job_id": proposal["job_id"],
            "proposal_id": proposal["id"],
            "arbiter_id": ARBITER,
            **overrides,
        }
        if milestone_plan:
            body["milestone_plan"] = [{"percentage": p} for p in milestone_plan]
        resp = client.post(f"{API}/escrows", json=body, headers=auth_headers(EMPLOYER))
        assert resp.status_code == 201, resp.text
        escrow = resp.json()
        if lock:
            resp = client.post(f"{API}/escrows/{escrow['id']}/lock", headers=auth_headers(EMPLOYER))
            assert resp.status_code == 200, resp.text
            escrow = resp.json()
        return escrow

    return factory
