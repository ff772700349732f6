from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .config import ConfigError, GatingConfig, format_amount, from_base_units
from .pricing import Price
from .project_constants import TOKEN_PROGRAMS
from .rpc import ChainReader, RpcUnavailable
from .token_accounts import decode_account_data, parse_mint_account, sum_balance_for_mint

log = logging.getLogger(__name__)


class EligibilityStatus(str, Enum):
    FREE = "free"
    DISCOUNT = "discount"
    FULL_PRICE = "full_price"
    # Balance could not be read; retryable, and NOT the same as a zero balance.
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class EligibilityResult:
    wallet: str
    mint: str
    symbol: str
    status: EligibilityStatus
    discount_pct: int
    reason: str
    raw_balance: Optional[int] = None
    decimals: Optional[int] = None

    @property
    def ui_balance(self) -> Optional[Decimal]:
        if self.raw_balance is None or self.decimals is None:
            return None
        return from_base_units(self.raw_balance, self.decimals)

    @property
    def is_retryable(self) -> bool:
        return self.status is EligibilityStatus.UNAVAILABLE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "wallet": self.wallet,
            "mint": self.mint,
            "symbol": self.symbol,
            "status": self.status.value,
            "discount_pct": self.discount_pct,
            "reason": self.reason,
            "raw_balance": None if self.raw_balance is None else str(self.raw_balance),
            "balance": None
            if self.raw_balance is None or self.decimals is None
            else format_amount(self.raw_balance, self.decimals),
            "decimals": self.decimals,
        }


def classify(raw_balance: int, gating: GatingConfig) -> Tuple[EligibilityStatus, int]:
    """Highest floor first. Compares raw integers, i.e. floor * 10**decimals."""
    if raw_balance >= gating.full_floor_raw:
        return EligibilityStatus.FREE, 100
    if raw_balance >= gating.partial_floor_raw:
        return EligibilityStatus.DISCOUNT, gating.partial_discount_pct
    return EligibilityStatus.FULL_PRICE, 0


def _reason(status: EligibilityStatus, raw_balance: int, gating: GatingConfig) -> str:
    held = f"{format_amount(raw_balance, gating.decimals)} {gating.symbol}"
    if status is EligibilityStatus.FREE:
        return f"Holds {held} (free mint at {gating.full_discount_floor} or more)"
    if status is EligibilityStatus.DISCOUNT:
        return (
            f"Holds {held} ({gating.partial_discount_pct}% discount at "
            f"{gating.partial_discount_floor} or more; free at {gating.full_discount_floor})"
        )
    if raw_balance == 0:
        return f"No {gating.symbol} held"
    return f"Holds {held}, below the {gating.partial_discount_floor} {gating.symbol} discount floor"


def check_eligibility(reader: ChainReader, wallet: str, gating: GatingConfig) -> EligibilityResult:
    """
    Point-in-time discount decision for `wallet`, read directly from chain.

    A wallet without a token account holds zero and pays full price. If the
    node cannot be reached (after the reader's own retries) the result is
    UNAVAILABLE so callers can ask the user to try again.
    """
    accounts: List[Dict[str, Any]] = []
    try:
        for program_id in TOKEN_PROGRAMS:
            accounts.extend(reader.get_parsed_token_accounts_by_owner(wallet, program_id))
    except RpcUnavailable as e:
        log.warning("Balance check for %s failed: %s", wallet, e)
        return EligibilityResult(
            wallet=wallet,
            mint=gating.mint,
            symbol=gating.symbol,
            status=EligibilityStatus.UNAVAILABLE,
            discount_pct=0,
            reason=f"Temporarily unable to verify {gating.symbol} balance; try again",
        )

    balance = sum_balance_for_mint(accounts, gating.mint)
    if balance.decimals is not None and balance.decimals != gating.decimals:
        raise ConfigError(
            f"Gating mint {gating.mint} has {balance.decimals} decimals on chain, "
            f"config says {gating.decimals}"
        )

    status, pct = classify(balance.raw_amount, gating)
    log.debug(
        "Wallet %s holds raw %d of %s across %d account(s): %s",
        wallet,
        balance.raw_amount,
        gating.mint,
        balance.account_count,
        status.value,
    )
    return EligibilityResult(
        wallet=wallet,
        mint=gating.mint,
        symbol=gating.symbol,
        status=status,
        discount_pct=pct,
        reason=_reason(status, balance.raw_amount, gating),
        raw_balance=balance.raw_amount,
        decimals=gating.decimals,
    )


def limit_free_tier(
    result: EligibilityResult,
    gating: GatingConfig,
    phase_name: str,
    free_phase: str,
    claimed: int,
) -> EligibilityResult:
    """
    The free tier is a one-off: it only applies while `free_phase` is the
    current phase and the wallet has minted fewer than
    `gating.free_mints_per_wallet` in it. Otherwise a free-tier holder is
    treated as clearing the partial floor, which it always does.
    """
    if result.status is not EligibilityStatus.FREE:
        return result
    if phase_name != free_phase:
        why = f"free mint only during the {free_phase} phase"
    elif claimed >= gating.free_mints_per_wallet:
        why = f"free mint already claimed ({claimed} in {free_phase})"
    else:
        return result

    return replace(
        result,
        status=EligibilityStatus.DISCOUNT,
        discount_pct=gating.partial_discount_pct,
        reason=f"{result.reason}; {why}, {gating.partial_discount_pct}% discount applies",
    )


def apply_discount(price: Price, result: EligibilityResult) -> Price:
    """Discounted price, rounded down to the base unit."""
    pct = result.discount_pct
    if pct <= 0:
        return price
    return replace(price, amount=price.amount * (100 - pct) // 100)


def read_mint_decimals(reader: ChainReader, mint: str) -> int:
    """Decimals straight from the SPL mint account."""
    info = reader.get_account_info(mint)
    if info is None:
        raise ConfigError(f"Mint account {mint} does not exist")
    if info.get("owner") not in TOKEN_PROGRAMS:
        raise ConfigError(f"Account {mint} is not owned by a token program ({info.get('owner')})")

    raw = decode_account_data(info)
    parsed = parse_mint_account(raw) if raw is not None else None
    if parsed is None or not parsed.is_initialized:
        raise ConfigError(f"Account {mint} is not an initialized mint")
    return parsed.decimals


def verify_gating_decimals(reader: ChainReader, gating: GatingConfig) -> None:
    on_chain = read_mint_decimals(reader, gating.mint)
    if on_chain != gating.decimals:
        raise ConfigError(
            f"Gating mint {gating.mint} has {on_chain} decimals on chain, "
            f"config says {gating.decimals}"
        )
    log.info("Gating mint %s verified: %d decimals", gating.mint, on_chain)
