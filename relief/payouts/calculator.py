"""Share policy for distributable yield.

NGOs take ``NGO_SHARE_PCT`` and winners ``WINNER_SHARE_PCT`` of the yield,
both truncated; the protocol share is whatever remains, so the three shares
always add up to the total exactly. Losers get their principal back and
nothing else.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Any

from ..core.errors import InvariantViolationError
from ..settings import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class YieldSplit:
    total: int
    ngo_share: int
    winner_share: int
    protocol_share: int


@dataclass(frozen=True)
class Allocation:
    recipient: str
    principal: int
    yield_share: int

    @property
    def total(self) -> int:
        return self.principal + self.yield_share


@dataclass
class PayoutPlan:
    split: YieldSplit
    ngos: list[Allocation] = field(default_factory=list)
    winners: list[Allocation] = field(default_factory=list)
    losers: list[Allocation] = field(default_factory=list)
    zero_reward_fallback: bool = False
    ngo_fallback: bool = False
    undistributed: int = 0

    @property
    def trader_allocations(self) -> list[tuple[str, Allocation]]:
        return [("WINNER", item) for item in self.winners] + [("LOSER", item) for item in self.losers]

    @property
    def total_outflow(self) -> int:
        return sum(item.total for item in self.ngos + self.winners + self.losers)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "PayoutPlan":
        return cls(
            split=YieldSplit(**payload["split"]),
            ngos=[Allocation(**item) for item in payload.get("ngos", [])],
            winners=[Allocation(**item) for item in payload.get("winners", [])],
            losers=[Allocation(**item) for item in payload.get("losers", [])],
            zero_reward_fallback=bool(payload.get("zero_reward_fallback")),
            ngo_fallback=bool(payload.get("ngo_fallback")),
            undistributed=int(payload.get("undistributed", 0)),
        )


def split_yield(total: int, ngo_pct: int | None = None, winner_pct: int | None = None) -> YieldSplit:
    total = int(total)
    if total < 0:
        raise ValueError("total yield cannot be negative")
    ngo_pct = settings.NGO_SHARE_PCT if ngo_pct is None else ngo_pct
    winner_pct = settings.WINNER_SHARE_PCT if winner_pct is None else winner_pct
    ngo_share = total * ngo_pct // 100
    winner_share = total * winner_pct // 100
    return YieldSplit(
        total=total,
        ngo_share=ngo_share,
        winner_share=winner_share,
        protocol_share=total - ngo_share - winner_share,
    )


def allocate_winner_rewards(winners, winner_share: int) -> tuple[list[Allocation], bool, int]:
    """Return (allocations, fallback_used, undistributed) for the winner pool.

    Rewards come from the scoring contract. When every reward is zero while
    the pool is not, the pool is split equally and truncated instead.
    """
    if not winners:
        return [], False, winner_share
    rewards = [int(item.reward) for item in winners]
    if sum(rewards) == 0 and winner_share > 0:
        each = winner_share // len(winners)
        undistributed = winner_share - each * len(winners)
        logger.warning(
            "payout_zero_reward_fallback winners=%s winner_share=%s per_winner=%s undistributed=%s",
            len(winners),
            winner_share,
            each,
            undistributed,
        )
        allocations = [Allocation(item.address.lower(), int(item.principal), each) for item in winners]
        return allocations, True, undistributed
    if sum(rewards) > winner_share:
        raise InvariantViolationError(
            "contract rewards exceed the winner pool",
            context={"rewards": sum(rewards), "winner_share": winner_share},
        )
    allocations = [
        Allocation(item.address.lower(), int(item.principal), int(item.reward)) for item in winners
    ]
    return allocations, False, winner_share - sum(rewards)


def allocate_ngo_shares(
    ngo_share: int,
    reported: dict[str, int],
    eligible: list[str],
) -> tuple[list[Allocation], bool, int]:
    """Return (allocations, fallback_used, undistributed) for the NGO pool.

    ``reported`` maps NGO ids to the amounts the payout contract computed. Those
    are used as-is when they are positive and fit in the pool; otherwise the
    pool is split equally across the eligible NGOs.
    """
    reported_total = sum(reported.values())
    if reported and 0 < reported_total <= ngo_share:
        allocations = [Allocation(key, 0, int(amount)) for key, amount in reported.items() if amount > 0]
        return allocations, False, ngo_share - reported_total
    if not eligible:
        logger.warning("payout_no_eligible_ngos ngo_share=%s", ngo_share)
        return [], True, ngo_share
    each = ngo_share // len(eligible)
    logger.warning(
        "payout_ngo_equal_split ngos=%s reported_total=%s ngo_share=%s per_ngo=%s",
        len(eligible),
        reported_total,
        ngo_share,
        each,
    )
    allocations = [Allocation(key, 0, each) for key in eligible]
    return allocations, True, ngo_share - each * len(eligible)


class PayoutCalculator:
    def __init__(self, ngo_pct: int | None = None, winner_pct: int | None = None) -> None:
        self.ngo_pct = settings.NGO_SHARE_PCT if ngo_pct is None else ngo_pct
        self.winner_pct = settings.WINNER_SHARE_PCT if winner_pct is None else winner_pct
        if self.ngo_pct < 0 or self.winner_pct < 0 or self.ngo_pct + self.winner_pct > 100:
            raise ValueError("share percentages must be non-negative and sum to at most 100")

    def build_plan(
        self,
        total_yield: int,
        winners,
        losers,
        *,
        reported_ngo_amounts: dict[str, int] | None = None,
        eligible_ngos: list[str] | None = None,
    ) -> PayoutPlan:
        split = split_yield(total_yield, self.ngo_pct, self.winner_pct)
        winner_allocations, zero_fallback, winner_rest = allocate_winner_rewards(winners, split.winner_share)
        ngo_allocations, ngo_fallback, ngo_rest = allocate_ngo_shares(
            split.ngo_share,
            reported_ngo_amounts or {},
            eligible_ngos or [],
        )
        loser_allocations = [Allocation(item.address.lower(), int(item.principal), 0) for item in losers]
        plan = PayoutPlan(
            split=split,
            ngos=ngo_allocations,
            winners=winner_allocations,
            losers=loser_allocations,
            zero_reward_fallback=zero_fallback,
            ngo_fallback=ngo_fallback,
            undistributed=winner_rest + ngo_rest,
        )
        logger.info(
            "payout_plan_built total=%s ngo=%s winners=%s protocol=%s winner_count=%s loser_count=%s "
            "ngo_count=%s undistributed=%s",
            split.total,
            split.ngo_share,
            split.winner_share,
            split.protocol_share,
            len(winner_allocations),
            len(loser_allocations),
            len(ngo_allocations),
            plan.undistributed,
        )
        return plan
