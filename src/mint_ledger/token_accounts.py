from __future__ import annotations

import base64
import binascii
import struct
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

import base58

MINT_ACCOUNT_SIZE = 82


@dataclass(frozen=True)
class MintAccount:
    mint_authority: Optional[str]
    supply: int
    decimals: int
    is_initialized: bool
    freeze_authority: Optional[str]


@dataclass(frozen=True)
class TokenBalance:
    """Raw balance of one mint summed over a wallet's token accounts."""

    mint: str
    raw_amount: int
    decimals: Optional[int]
    account_count: int


def _coption_pubkey(data: bytes, offset: int) -> Optional[str]:
    tag = struct.unpack_from("<I", data, offset)[0]
    if tag == 0:
        return None
    return base58.b58encode(data[offset + 4 : offset + 36]).decode("ascii")


def parse_mint_account(account_data: bytes) -> MintAccount | None:
    """
    SPL mint layout:
    MintAuthority COption(0-36) | Supply(36-44) | Decimals(44) |
    IsInitialized(45) | FreezeAuthority COption(46-82)
    """
    if len(account_data) < MINT_ACCOUNT_SIZE:
        return None

    supply = struct.unpack_from("<Q", account_data, 36)[0]
    return MintAccount(
        mint_authority=_coption_pubkey(account_data, 0),
        supply=supply,
        decimals=account_data[44],
        is_initialized=account_data[45] == 1,
        freeze_authority=_coption_pubkey(account_data, 46),
    )


def decode_account_data(account_info: Dict[str, Any]) -> bytes | None:
    """getAccountInfo returns data as [base64_str, "base64"]."""
    data = account_info.get("data")
    if not isinstance(data, (list, tuple)) or len(data) < 2 or data[1] != "base64":
        return None
    try:
        return base64.b64decode(data[0], validate=True)
    except (binascii.Error, TypeError):
        return None


def _parsed_info(item: Any) -> Dict[str, Any]:
    account = item.get("account") if isinstance(item, dict) else None
    data = account.get("data") if isinstance(account, dict) else None
    parsed = data.get("parsed") if isinstance(data, dict) else None
    info = parsed.get("info") if isinstance(parsed, dict) else None
    return info if isinstance(info, dict) else {}


def sum_balance_for_mint(parsed_accounts: Iterable[Dict[str, Any]], mint: str) -> TokenBalance:
    """
    Sum the raw `tokenAmount.amount` of every parsed token account holding
    `mint`. Accounts with an unexpected shape are ignored. The raw integer is
    authoritative; `uiAmount` is never used.
    """
    total = 0
    decimals: Optional[int] = None
    count = 0

    for item in parsed_accounts:
        info = _parsed_info(item)
        if info.get("mint") != mint:
            continue
        token_amount = info.get("tokenAmount") or {}
        try:
            amount = int(token_amount["amount"])
            acct_decimals = int(token_amount["decimals"])
        except (KeyError, TypeError, ValueError):
            continue
        if amount < 0:
            continue

        total += amount
        decimals = acct_decimals
        count += 1

    return TokenBalance(mint=mint, raw_amount=total, decimals=decimals, account_count=count)
