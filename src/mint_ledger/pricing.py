"""
Bonding-curve pricing.

Everything here is pure integer arithmetic in the currency's smallest unit.
Phases are validated when the CollectionConfig is built, so the functions
below can assume ordered, contiguous, non-decreasing phases.
"""

from __future__ import annotations

from bisect import bisect_right
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Tuple

from .config import CollectionConfig, Phase, format_amount, from_base_units


@dataclass(frozen=True)
class Price:
    amount: int  # base units
    currency: str
    decimals: int
    phase_name: str

    @property
    def ui_amount(self) -> Decimal:
        return from_base_units(self.amount, self.decimals)

    @property
    def is_free(self) -> bool:
        return self.amount == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "price": format_amount(self.amount, self.decimals),
            "price_raw": self.amount,
            "currency": self.currency,
            "phase_name": self.phase_name,
        }


def find_phase(minted_count: int, phases: Tuple[Phase, ...]) -> Phase:
    """Phase governing `minted_count`; clamps to the first/last phase outside the table."""
    if minted_count < phases[0].start:
        return phases[0]
    if minted_count >= phases[-1].end:
        return phases[-1]
    starts = [p.start for p in phases]
    return phases[bisect_right(starts, minted_count) - 1]


def phase_price(phase: Phase, minted_count: int) -> int:
    """
    price_start + (price_end - price_start) * progress ** exponent, where
    progress = (minted_count - start) / (end - start) clamped to [0, 1].
    Rounds down to the base unit.
    """
    if phase.is_flat:
        return phase.price_start

    span = phase.end - phase.start
    done = min(max(minted_count - phase.start, 0), span)
    k = phase.exponent
    delta = phase.price_end - phase.price_start
    return phase.price_start + (delta * done**k) // (span**k)


def price(minted_count: int, config: CollectionConfig) -> Price:
    """Price of the next mint once `minted_count` mints have happened."""
    if minted_count < 0:
        raise ValueError(f"minted_count must not be negative, got {minted_count}")

    phase = find_phase(minted_count, config.phases)
    return Price(
        amount=phase_price(phase, minted_count),
        currency=config.currency.symbol,
        decimals=config.currency.decimals,
        phase_name=phase.name,
    )


def price_curve(config: CollectionConfig, points: int = 100) -> List[Tuple[int, Price]]:
    """Evenly spaced (minted_count, price) samples from 0 to total supply, for charts."""
    if points < 1:
        raise ValueError(f"points must be >= 1, got {points}")

    total = config.total_supply
    counts = sorted({(i * total) // points for i in range(points + 1)})
    return [(n, price(n, config)) for n in counts]
