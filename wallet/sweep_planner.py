"""
Sweep planning.

There is no minimum sweep threshold: any balance that covers its own
transfer gas is swept. A balance that cannot cover the gas stays at the
deposit address and is re-evaluated on every run.
"""

import enum
from dataclasses import dataclass

from shared.currency_precision import Wei


class SweepAction(enum.Enum):
    SKIP = "skip"
    SWEEP = "sweep"


@dataclass(frozen=True)
class SweepDecision:
    action: SweepAction
    amount: Wei
    gas_cost: Wei
    reason: str = ""

    @property
    def should_sweep(self) -> bool:
        return self.action is SweepAction.SWEEP


def plan(balance: Wei, gas_price: Wei, gas_limit: int) -> SweepDecision:
    if balance < 0 or gas_price < 0 or gas_limit < 0:
        raise ValueError("balance, gas_price and gas_limit must be non-negative")

    cost = gas_price * gas_limit
    if balance <= 0:
        return SweepDecision(SweepAction.SKIP, 0, cost, "empty balance")
    if balance - cost <= 0:
        return SweepDecision(SweepAction.SKIP, 0, cost, "balance does not cover gas")
    return SweepDecision(SweepAction.SWEEP, balance - cost, cost)
