import threading
from decimal import Decimal
from typing import Any, Dict, List, Optional, Set

import pytest

from mint_ledger.config import (
    CollectionConfig,
    Currency,
    GatingConfig,
    Phase,
    RarityTier,
    Trait,
    TraitLayer,
)
from mint_ledger.project_constants import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    SYSTEM_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
)
from mint_ledger.rpc import RpcUnavailable

LOS = 10**9

SCAN_ADDRESS = "CandyMachine1111111111111111111111111111111"
GATING_MINT = "GateMint11111111111111111111111111111111111"
PAYER = "Payer111111111111111111111111111111111111111"


def token_account(mint: str, raw_amount: int, decimals: int = 9) -> Dict[str, Any]:
    """getTokenAccountsByOwner (jsonParsed) entry."""
    return {
        "pubkey": f"ata-{mint[:6]}-{raw_amount}",
        "account": {
            "owner": TOKEN_PROGRAM_ID,
            "data": {
                "program": "spl-token",
                "parsed": {
                    "type": "account",
                    "info": {
                        "mint": mint,
                        "owner": "wallet",
                        "tokenAmount": {
                            "amount": str(raw_amount),
                            "decimals": decimals,
                            # Deliberately lossy: code must not read it.
                            "uiAmount": float(raw_amount) / 10**decimals,
                        },
                    },
                },
            },
        },
    }


def mint_tx(
    signature: str,
    slot: int,
    mint: str,
    wallet: str,
    payer: str = PAYER,
    err: Any = None,
    decimals: int = 0,
    scan_address: str = SCAN_ADDRESS,
) -> Dict[str, Any]:
    """jsonParsed transaction shaped like a candy-machine style mint."""
    return {
        "slot": slot,
        "blockTime": 1_700_000_000 + slot,
        "meta": {"err": err, "innerInstructions": []},
        "transaction": {
            "signatures": [signature],
            "message": {
                "accountKeys": [
                    {"pubkey": payer, "signer": True, "writable": True},
                    {"pubkey": mint, "signer": True, "writable": True},
                    {"pubkey": scan_address, "signer": False, "writable": True},
                ],
                "instructions": [
                    {
                        "programId": SYSTEM_PROGRAM_ID,
                        "parsed": {
                            "type": "createAccount",
                            "info": {
                                "source": payer,
                                "newAccount": mint,
                                "owner": TOKEN_PROGRAM_ID,
                                "lamports": 1461600,
                                "space": 82,
                            },
                        },
                    },
                    {
                        "programId": TOKEN_PROGRAM_ID,
                        "parsed": {
                            "type": "initializeMint2",
                            "info": {"mint": mint, "decimals": decimals, "mintAuthority": payer},
                        },
                    },
                    {
                        "programId": ASSOCIATED_TOKEN_PROGRAM_ID,
                        "parsed": {
                            "type": "create",
                            "info": {
                                "source": payer,
                                "account": f"ata-{mint}",
                                "wallet": wallet,
                                "mint": mint,
                            },
                        },
                    },
                ],
            },
        },
    }


def transfer_tx(signature: str, slot: int) -> Dict[str, Any]:
    return {
        "slot": slot,
        "blockTime": 1_700_000_000 + slot,
        "meta": {"err": None, "innerInstructions": []},
        "transaction": {
            "signatures": [signature],
            "message": {
                "accountKeys": [PAYER, SCAN_ADDRESS],
                "instructions": [
                    {
                        "programId": SYSTEM_PROGRAM_ID,
                        "parsed": {
                            "type": "transfer",
                            "info": {"source": PAYER, "destination": SCAN_ADDRESS, "lamports": 5},
                        },
                    }
                ],
            },
        },
    }


class FakeChainReader:
    """
    In-memory ChainReader. `history` is kept newest first, like
    getSignaturesForAddress returns it.
    """

    def __init__(self) -> None:
        self.history: List[Dict[str, Any]] = []
        self.transactions: Dict[str, Dict[str, Any]] = {}
        self.token_accounts: Dict[tuple, List[Dict[str, Any]]] = {}
        self.accounts: Dict[str, Dict[str, Any]] = {}
        self.fail_transactions: Set[str] = set()
        self.fail_token_accounts = False
        self.signature_calls: List[Optional[str]] = []
        self.closed = False
        # When set, get_signatures_for_address signals `entered` and blocks on `release`.
        self.entered: Optional[threading.Event] = None
        self.release: Optional[threading.Event] = None

    # -- test helpers ---------------------------------------------------------

    def add_mint(self, signature: str, slot: int, mint: str, wallet: str, **kw: Any) -> None:
        tx = mint_tx(signature, slot, mint, wallet, **kw)
        self.transactions[signature] = tx
        self.history.insert(
            0, {"signature": signature, "slot": slot, "err": kw.get("err"), "blockTime": tx["blockTime"]}
        )

    def add_failed(self, signature: str, slot: int) -> None:
        tx = mint_tx(signature, slot, f"failed-{signature}", "wallet", err={"InstructionError": [1, "Custom"]})
        self.transactions[signature] = tx
        self.history.insert(0, {"signature": signature, "slot": slot, "err": tx["meta"]["err"]})

    def add_transfer(self, signature: str, slot: int) -> None:
        self.transactions[signature] = transfer_tx(signature, slot)
        self.history.insert(0, {"signature": signature, "slot": slot, "err": None})

    # -- ChainReader ------------------------------------------------------------

    def get_signatures_for_address(
        self, address: str, limit: int, before: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        self.signature_calls.append(before)
        if self.entered is not None and self.release is not None:
            self.entered.set()
            self.release.wait(5)
        if address != SCAN_ADDRESS:
            return []
        start = 0
        if before is not None:
            sigs = [info["signature"] for info in self.history]
            start = sigs.index(before) + 1
        return [dict(info) for info in self.history[start : start + limit]]

    def get_transaction(self, signature: str) -> Optional[Dict[str, Any]]:
        if signature in self.fail_transactions:
            raise RpcUnavailable(f"getTransaction: gave up on {signature}")
        return self.transactions.get(signature)

    def get_parsed_token_accounts_by_owner(self, owner: str, program_id: str) -> List[Dict[str, Any]]:
        if self.fail_token_accounts:
            raise RpcUnavailable("getTokenAccountsByOwner: gave up after 3 attempts: HTTP 503")
        return list(self.token_accounts.get((owner, program_id), []))

    def get_account_info(self, pubkey: str) -> Optional[Dict[str, Any]]:
        return self.accounts.get(pubkey)

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def reader() -> FakeChainReader:
    return FakeChainReader()


@pytest.fixture
def gating() -> GatingConfig:
    return GatingConfig(
        mint=GATING_MINT,
        decimals=9,
        full_discount_floor=Decimal("1000000"),
        partial_discount_floor=Decimal("100000"),
        partial_discount_pct=50,
        symbol="LOL",
    )


@pytest.fixture
def pricing_config() -> CollectionConfig:
    """Whitelist 0-100 free, public 100-2000 linear from 100 to 1000 LOS."""
    return CollectionConfig(
        collection_id="curve",
        name="Curve",
        scan_address=SCAN_ADDRESS,
        total_supply=2000,
        phases=(
            Phase("whitelist", 0, 100, 0, 0),
            Phase("public", 100, 2000, 100 * LOS, 1000 * LOS),
        ),
        tiers=(RarityTier("Common", 0, 2000, 1000),),
        currency=Currency("LOS", 9),
    )


@pytest.fixture
def rarity_config() -> CollectionConfig:
    return CollectionConfig(
        collection_id="rare",
        name="Rare",
        scan_address=SCAN_ADDRESS,
        total_supply=1000,
        phases=(Phase("public", 0, 1000, 10 * LOS, 10 * LOS),),
        tiers=(
            RarityTier("Legendary", 0, 10, 100_000),
            RarityTier("Epic", 10, 60, 25_000),
            RarityTier("Rare", 60, 260, 5_000),
            RarityTier("Common", 260, 1000, 1_000),
        ),
        trait_layers=(
            TraitLayer(
                "Background",
                (Trait("Sunset", 50), Trait("Ocean", 35), Trait("Gold", 15)),
            ),
            TraitLayer("Headwear", (Trait("None", 60), Trait("Cap", 30), Trait("Crown", 10))),
        ),
        reveal_seed="los-bros-reveal-2024",
    )


@pytest.fixture
def small_config(gating: GatingConfig) -> CollectionConfig:
    """Five-piece collection used by the reconciler and service tests."""
    return CollectionConfig(
        collection_id="mini",
        name="Mini",
        scan_address=SCAN_ADDRESS,
        total_supply=5,
        phases=(
            Phase("whitelist", 0, 2, 0, 0),
            Phase("public", 2, 5, 10 * LOS, 40 * LOS),
        ),
        tiers=(
            RarityTier("Legendary", 0, 1, 500),
            RarityTier("Common", 1, 5, 100),
        ),
        gating=gating,
        reveal_seed="mini-seed",
        trait_layers=(TraitLayer("Eyes", (Trait("Laser", 1), Trait("Sleepy", 3))),),
    )
