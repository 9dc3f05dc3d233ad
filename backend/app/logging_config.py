"""Logging setup for the gigsettle backend.

Request lines are logged as "METHOD /path | agent=... | key=value" and
domain events as "event | agent=... | details".
"""

import logging
import sys

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_configured = False


def configure_logging(debug: bool = False) -> None:
    """Configure root logging once; later calls only adjust the level."""
    global _configured
    level = logging.DEBUG if debug else logging.INFO
    if not _configured:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        root = logging.getLogger()
        root.addHandler(handler)
        _configured = True
    logging.getLogger().setLevel(level)
    logging.getLogger("gigsettle").setLevel(level)
    # httpx logs every Supabase call at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger for a backend module, e.g. get_logger("gigsettle.api.escrows")."""
    return logging.getLogger(name)


def log_event(logger: logging.Logger, event: str, agent_id: str | None = None, **details) -> None:
    """Log a domain event in the "event | agent=x | k=v" format."""
    parts = [event]
    if agent_id:
        parts.append(f"agent={agent_id}")
    if details:
        parts.append(" ".join(f"{k}={v}" for k, v in details.items()))
    logger.info(" | ".join(parts))
