"""
Milestone Scheduler.

Partitions an escrow's total into ordered milestones with integer amounts
and evenly spread deadlines, and tracks per-milestone release state.
Money is integer minor units throughout: each milestone gets
total * pct // 100 and the rounding remainder goes to the last one, so the
amounts always sum to the total exactly.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Sequence

from gigsettle.config import DEFAULT_CONFIG, SettlementConfig
from gigsettle.errors import (
    AlreadyReleased,
    InvalidMilestonePlan,
    MilestoneNotFound,
    ThresholdNotMet,
)
from gigsettle.types import Escrow, Milestone, MilestoneSpec

logger = logging.getLogger(__name__)

HUNDRED = Decimal(100)

SINGLE_MILESTONE_PLAN = (MilestoneSpec(percentage=HUNDRED, description="Full delivery"),)


class ReleasePath(str, Enum):
    """Why a milestone release is allowed."""

    SIGNED = "signed"  # Threshold met for release:<index>
    AUTO = "auto"  # Deadline passed


def coerce_plan(specs: Optional[Sequence]) -> List[MilestoneSpec]:
    """Accept MilestoneSpec objects, dicts or bare percentages."""
    if not specs:
        return list(SINGLE_MILESTONE_PLAN)
    plan = []
    for spec in specs:
        if isinstance(spec, MilestoneSpec):
            plan.append(spec)
        elif isinstance(spec, dict):
            plan.append(MilestoneSpec.from_dict(spec))
        else:
            plan.append(MilestoneSpec(percentage=Decimal(str(spec))))
    return plan


def validate_plan(specs: Sequence[MilestoneSpec], epsilon: Decimal = Decimal("0.01")) -> None:
    """Raise InvalidMilestonePlan unless every share is positive and they sum to 100 +/- epsilon."""
    if not specs:
        raise InvalidMilestonePlan("Milestone plan must have at least one milestone")
    for i, spec in enumerate(specs):
        if not spec.percentage.is_finite() or spec.percentage <= 0:
            raise InvalidMilestonePlan(f"Milestone {i} percentage must be positive")
    total = sum((s.percentage for s in specs), Decimal(0))
    if abs(total - HUNDRED) > epsilon:
        raise InvalidMilestonePlan(f"Milestone percentages sum to {total}, expected 100")


class MilestoneScheduler:
    """Plans milestones and decides whether a given milestone may be released."""

    def __init__(self, config: SettlementConfig = DEFAULT_CONFIG):
        self.config = config

    def plan_milestones(
        self,
        total_amount: int,
        specs: Optional[Sequence],
        start: datetime,
        duration: timedelta,
    ) -> List[Milestone]:
        if total_amount <= 0:
            raise InvalidMilestonePlan("Total amount must be positive")
        if duration <= timedelta(0):
            raise InvalidMilestonePlan("Duration must be positive")
        plan = coerce_plan(specs)
        validate_plan(plan, self.config.percentage_epsilon)

        n = len(plan)
        amounts = [int(total_amount * spec.percentage // HUNDRED) for spec in plan]
        amounts[-1] += total_amount - sum(amounts)
        if any(a <= 0 for a in amounts):
            raise InvalidMilestonePlan(
                f"Total {total_amount} is too small to split into {n} milestones"
            )

        milestones = [
            Milestone(
                index=i,
                amount=amounts[i],
                percentage=spec.percentage,
                description=spec.description,
                deadline=start + duration * (i + 1) / n,
            )
            for i, spec in enumerate(plan)
        ]
        logger.debug(f"Planned {n} milestones for {total_amount}: {amounts}")
        return milestones

    def get_milestone(self, escrow: Escrow, index: int) -> Milestone:
        for milestone in escrow.milestones:
            if milestone.index == index:
                return milestone
        raise MilestoneNotFound(f"Escrow {escrow.id} has no milestone {index}")

    def check_release(
        self, escrow: Escrow, index: int, now: datetime, authorized: bool
    ) -> ReleasePath:
        milestone = self.get_milestone(escrow, index)
        if milestone.released:
            raise AlreadyReleased(
                f"Milestone {index} of escrow {escrow.id} already released",
                current_state=escrow.status,
            )
        if authorized:
            return ReleasePath.SIGNED
        if now > milestone.deadline:
            return ReleasePath.AUTO
        raise ThresholdNotMet(
            f"Milestone {index} needs {escrow.threshold} signatures "
            f"(have {len(escrow.signatures)}) before {milestone.deadline.isoformat()}",
            current_state=escrow.status,
        )

    def apply_release(
        self,
        escrow: Escrow,
        indices: Sequence[int],
        tx_ref: str,
        now: datetime,
        auto: bool = False,
    ) -> bool:
        """Mark milestones released and advance the pointer. Returns True when all are released."""
        for index in indices:
            milestone = self.get_milestone(escrow, index)
            if milestone.released:
                continue
            milestone.released = True
            milestone.release_tx_ref = tx_ref
            milestone.released_at = now
            milestone.auto_released = auto
        escrow.current_milestone = self.next_unreleased(escrow)
        return escrow.current_milestone >= len(escrow.milestones)

    def next_unreleased(self, escrow: Escrow) -> int:
        for milestone in escrow.milestones:
            if not milestone.released:
                return milestone.index
        return len(escrow.milestones)

    def unreleased_indices(self, escrow: Escrow) -> List[int]:
        return [m.index for m in escrow.milestones if not m.released]

    def due_for_auto_release(self, escrow: Escrow, now: datetime) -> List[Milestone]:
        return [m for m in escrow.milestones if not m.released and now > m.deadline]

    def released_amount(self, escrow: Escrow) -> int:
        return escrow.released_amount

    def remaining_amount(self, escrow: Escrow) -> int:
        return escrow.remaining_amount
