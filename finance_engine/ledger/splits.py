from __future__ import annotations

"""
Revenue split arithmetic.

Rounding policy (the one rule every caller relies on):
  creator_share  = floor(amount * creator_bps / 10000)
  platform_share = amount - creator_share

The platform share is never computed independently, so
creator_share + platform_share == amount holds by construction. Integer
arithmetic only: float ratios like 0.29 * 100 floor to the wrong value.
"""

from dataclasses import dataclass

from finance_engine.common.config import BPS_DENOMINATOR, RevenueSplitTable

from .models import SourceCategory


@dataclass(frozen=True, slots=True)
class Split:
    creator_share: int
    platform_share: int

    @property
    def amount(self) -> int:
        return self.creator_share + self.platform_share


def split_amount(amount: int, creator_bps: int) -> Split:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise TypeError("amount must be an integer number of tokens")
    if amount < 0:
        raise ValueError("amount must be >= 0")
    if creator_bps < 0 or creator_bps > BPS_DENOMINATOR:
        raise ValueError(f"creator_bps must be 0..{BPS_DENOMINATOR}")
    creator = (amount * int(creator_bps)) // BPS_DENOMINATOR
    return Split(creator_share=creator, platform_share=amount - creator)


def compute_split(amount: int, category: SourceCategory, table: RevenueSplitTable) -> Split:
    return split_amount(amount, table.creator_bps_for(category))
