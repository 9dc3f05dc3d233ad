"""
Settlement engine configuration.

Values come from keyword arguments or, via from_env(), from GIGSETTLE_*
environment variables.
"""

import os
from dataclasses import dataclass, fields
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

ENV_PREFIX = "GIGSETTLE_"


@dataclass
class SettlementConfig:
    """Tunables for the settlement engine."""

    default_threshold: int = 2  # Signatures needed out of {employer, freelancer, arbiter}
    min_escrow_amount: int = 1  # Minor units
    max_escrow_amount: int = 10**12
    currency: str = "USDM"
    percentage_epsilon: Decimal = Decimal("0.01")  # Milestone plans must sum to 100 +/- this
    ledger_timeout_seconds: float = 30.0
    max_conflict_retries: int = 3
    conflict_backoff_seconds: float = 0.05
    submission_stale_seconds: int = 900  # Markers with no tx ref older than this are cleared
    sweep_interval_seconds: float = 60.0
    auto_release_requires_freelancer: bool = False

    def __post_init__(self):
        if not isinstance(self.percentage_epsilon, Decimal):
            self.percentage_epsilon = Decimal(str(self.percentage_epsilon))
        if not 1 <= self.default_threshold <= 3:
            raise ValueError("default_threshold must be between 1 and 3")
        if self.min_escrow_amount <= 0:
            raise ValueError("min_escrow_amount must be positive")
        if self.max_escrow_amount < self.min_escrow_amount:
            raise ValueError("max_escrow_amount must be >= min_escrow_amount")
        if self.percentage_epsilon < 0:
            raise ValueError("percentage_epsilon cannot be negative")
        if self.ledger_timeout_seconds <= 0:
            raise ValueError("ledger_timeout_seconds must be positive")
        if self.max_conflict_retries < 0:
            raise ValueError("max_conflict_retries cannot be negative")
        if self.submission_stale_seconds <= 0:
            raise ValueError("submission_stale_seconds must be positive")
        if self.sweep_interval_seconds <= 0:
            raise ValueError("sweep_interval_seconds must be positive")

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None, **overrides: Any) -> "SettlementConfig":
        """Build a config from GIGSETTLE_* variables; explicit overrides win."""
        env = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for f in fields(cls):
            raw = env.get(ENV_PREFIX + f.name.upper())
            if raw is None or raw.strip() == "":
                continue
            values[f.name] = _coerce(f.name, f.type, raw.strip())
        values.update(overrides)
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        result = {f.name: getattr(self, f.name) for f in fields(self)}
        result["percentage_epsilon"] = str(self.percentage_epsilon)
        return result


def _coerce(name: str, type_hint: Any, raw: str) -> Any:
    type_name = type_hint if isinstance(type_hint, str) else getattr(type_hint, "__name__", "")
    try:
        if type_name == "bool":
            return raw.lower() in ("1", "true", "yes", "on")
        if type_name == "int":
            return int(raw)
        if type_name == "float":
            return float(raw)
        if type_name == "Decimal":
            return Decimal(raw)
    except (ValueError, InvalidOperation) as e:
        raise ValueError(f"Invalid value for {ENV_PREFIX}{name.upper()}: {raw!r}") from e
    return raw


DEFAULT_CONFIG = SettlementConfig()
