"""
gigsettle - Escrow and milestone settlement for freelance marketplaces.

Jobs, proposals, multi-party escrow with threshold signatures, milestone
releases with deadline auto-release, and arbitrated disputes.
"""

from .config import SettlementConfig
from .engine import SettlementEngine
from .errors import SettlementError

try:
    from importlib.metadata import version

    __version__ = version("gigsettle")
except Exception:
    __version__ = "0.0.0"

__all__ = ["SettlementEngine", "SettlementConfig", "SettlementError"]
