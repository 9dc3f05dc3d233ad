"""Settlement engine and Supabase client wiring for the API."""

from pathlib import Path
from typing import Annotated

from fastapi import Depends

from gigsettle import SettlementEngine
from gigsettle.ledger import HttpLedgerAnchor, InMemoryLedgerAnchor
from gigsettle.storage import get_storage
from supabase import Client, create_client

from .config import Settings, get_settings
from .logging_config import get_logger

logger = get_logger("gigsettle.api.database")

_supabase_client: Client | None = None
_engine: SettlementEngine | None = None


def get_supabase_client(settings: Settings | None = None) -> Client:
    """Get cached Supabase client."""
    global _supabase_client
    if _supabase_client is None:
        if settings is None:
            settings = get_settings()
        api_key = settings.supabase_secret_key or settings.supabase_service_role_key
        if not settings.supabase_url or not api_key:
            raise ValueError("SUPABASE_URL and SUPABASE_SECRET_KEY must be set for the supabase backend")
        _supabase_client = create_client(settings.supabase_url, api_key)
    return _supabase_client


def build_engine(settings: Settings) -> SettlementEngine:
    """Construct the engine described by the settings."""
    client = get_supabase_client(settings) if settings.storage_backend == "supabase" else None
    storage = get_storage(
        settings.storage_backend,
        db_path=Path(settings.sqlite_path) if settings.sqlite_path else None,
        supabase_client=client,
    )
    if settings.ledger_url:
        ledger = HttpLedgerAnchor(settings.ledger_url, auth_token=settings.ledger_token)
    else:
        logger.warning("LEDGER_URL not set; using the in-memory ledger anchor")
        ledger = InMemoryLedgerAnchor()
    logger.info(f"Settlement engine | storage={settings.storage_backend} | ledger={type(ledger).__name__}")
    return SettlementEngine(storage=storage, ledger=ledger, config=settings.settlement_config())


def get_engine() -> SettlementEngine:
    """Process-wide settlement engine, built on first use."""
    global _engine
    if _engine is None:
        _engine = build_engine(get_settings())
    return _engine


def reset_engine() -> None:
    global _engine
    _engine = None


# Type alias for dependency injection
Engine = Annotated[SettlementEngine, Depends(get_engine)]
