"""
Decoder for jsonParsed transactions.

Recognizes the mint-creation pattern: a System Program createAccount whose
new account is owned by a token program, followed (later in execution
order, top-level or CPI) by initializeMint/initializeMint2 on that same
account. Every field is read by name; anything missing or out of order is
an Unrecognized outcome, never an exception.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from .models import MintEvent
from .project_constants import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    SYSTEM_PROGRAM_ID,
    TOKEN_PROGRAMS,
)

CREATE_ACCOUNT_TYPES = ("createAccount", "createAccountWithSeed")
INIT_MINT_TYPES = ("initializeMint", "initializeMint2")
INIT_ACCOUNT_TYPES = ("initializeAccount", "initializeAccount2", "initializeAccount3")
ATA_CREATE_TYPES = ("create", "createIdempotent")


@dataclass(frozen=True)
class Recognized:
    event: MintEvent


@dataclass(frozen=True)
class Unrecognized:
    signature: str
    reason: str
    # True when the transaction looked like a mint but its layout did not fit.
    suspicious: bool = False


@dataclass(frozen=True)
class ChainError:
    signature: str
    error: Any


ParseOutcome = Union[Recognized, Unrecognized, ChainError]


@dataclass(frozen=True)
class _Ix:
    program_id: str
    kind: str
    info: Dict[str, Any]


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _str(info: Dict[str, Any], key: str) -> Optional[str]:
    value = info.get(key)
    return value if isinstance(value, str) and value else None


def _parsed_ix(raw: Any) -> Optional[_Ix]:
    raw = _as_dict(raw)
    program_id = raw.get("programId")
    parsed = raw.get("parsed")
    # Instructions the node could not parse come back with raw `data` only.
    if not isinstance(program_id, str) or not isinstance(parsed, dict):
        return None
    kind = parsed.get("type")
    if not isinstance(kind, str):
        return None
    return _Ix(program_id=program_id, kind=kind, info=_as_dict(parsed.get("info")))


def iter_instructions(tx: Dict[str, Any]) -> Iterator[_Ix]:
    """Parsed instructions in execution order: each top-level one, then its CPIs."""
    message = _as_dict(_as_dict(tx.get("transaction")).get("message"))
    top_level = message.get("instructions")
    if not isinstance(top_level, list):
        return

    inner_by_index: Dict[int, List[Any]] = {}
    for group in _as_dict(tx.get("meta")).get("innerInstructions") or []:
        group = _as_dict(group)
        idx = group.get("index")
        if isinstance(idx, int) and isinstance(group.get("instructions"), list):
            inner_by_index.setdefault(idx, []).extend(group["instructions"])

    for i, raw in enumerate(top_level):
        ix = _parsed_ix(raw)
        if ix is not None:
            yield ix
        for inner in inner_by_index.get(i, []):
            inner_ix = _parsed_ix(inner)
            if inner_ix is not None:
                yield inner_ix


def transaction_signature(tx: Dict[str, Any]) -> Optional[str]:
    sigs = _as_dict(tx.get("transaction")).get("signatures")
    if isinstance(sigs, list) and sigs and isinstance(sigs[0], str):
        return sigs[0]
    return None


def account_keys(tx: Dict[str, Any]) -> List[str]:
    """accountKeys as plain strings (jsonParsed gives {pubkey, signer, writable})."""
    message = _as_dict(_as_dict(tx.get("transaction")).get("message"))
    keys: List[str] = []
    for key in message.get("accountKeys") or []:
        if isinstance(key, str):
            keys.append(key)
        elif isinstance(key, dict) and isinstance(key.get("pubkey"), str):
            keys.append(key["pubkey"])
    return keys


def _find_owner(instructions: List[_Ix], mint: str) -> Optional[str]:
    for ix in instructions:
        if ix.program_id == ASSOCIATED_TOKEN_PROGRAM_ID and ix.kind in ATA_CREATE_TYPES:
            if _str(ix.info, "mint") == mint and _str(ix.info, "wallet"):
                return _str(ix.info, "wallet")
    for ix in instructions:
        if ix.program_id in TOKEN_PROGRAMS and ix.kind in INIT_ACCOUNT_TYPES:
            if _str(ix.info, "mint") == mint and _str(ix.info, "owner"):
                return _str(ix.info, "owner")
    return None


def decode_transaction(tx: Any, signature: Optional[str] = None) -> ParseOutcome:
    if not isinstance(tx, dict):
        return Unrecognized(signature or "", "transaction is not an object")

    sig = signature or transaction_signature(tx) or ""
    meta = tx.get("meta")
    if not isinstance(meta, dict):
        return Unrecognized(sig, "transaction has no meta")
    if meta.get("err") is not None:
        return ChainError(sig, meta["err"])

    slot = tx.get("slot")
    if not isinstance(slot, int):
        return Unrecognized(sig, "transaction has no slot")
    block_time = tx.get("blockTime")
    if not isinstance(block_time, int):
        block_time = None

    instructions = list(iter_instructions(tx))

    created: Dict[str, str] = {}  # new account -> payer
    mints: List[Tuple[str, str, Any]] = []
    orphan_init: Optional[str] = None
    for ix in instructions:
        if ix.program_id == SYSTEM_PROGRAM_ID and ix.kind in CREATE_ACCOUNT_TYPES:
            new_account = _str(ix.info, "newAccount")
            payer = _str(ix.info, "source")
            if new_account and payer and ix.info.get("owner") in TOKEN_PROGRAMS:
                created[new_account] = payer
        elif ix.program_id in TOKEN_PROGRAMS and ix.kind in INIT_MINT_TYPES:
            mint = _str(ix.info, "mint")
            if mint is None:
                continue
            if mint in created:
                mints.append((mint, created[mint], ix.info.get("decimals")))
            else:
                orphan_init = mint

    if not mints:
        if orphan_init is not None:
            return Unrecognized(
                sig,
                f"initializeMint for {orphan_init} without a preceding createAccount",
                suspicious=True,
            )
        return Unrecognized(sig, "no account created and initialized as a mint")
    if len(mints) > 1:
        return Unrecognized(
            sig, f"transaction creates {len(mints)} mints; expected one", suspicious=True
        )

    mint, payer, decimals = mints[0]
    if decimals != 0:
        return Unrecognized(
            sig, f"mint {mint} has decimals={decimals!r}; not an NFT mint", suspicious=True
        )

    owner = _find_owner(instructions, mint) or payer
    return Recognized(
        MintEvent(
            signature=sig,
            slot=slot,
            block_time=block_time,
            mint=mint,
            owner=owner,
            payer=payer,
        )
    )
