from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class DiscoveredVia(str, Enum):
    SCAN = "scan"
    RECOVERY = "recovery"
    DIRECT = "direct"


@dataclass(frozen=True)
class MintEvent:
    """A mint recognized in a confirmed, successful transaction."""

    signature: str
    slot: int
    block_time: Optional[int]
    mint: str
    owner: str
    payer: str


@dataclass(frozen=True)
class MintRecord:
    """
    One confirmed mint. Written once, never changed or deleted.
    Tier, allocation and list price are captured at discovery from the
    config version in force, and can be recomputed from the ordinal. The
    list price is the curve price before any holder discount; what the
    wallet actually paid is not visible to the scanner.
    """

    collection_id: str
    ordinal: int
    mint: str
    owner: str
    signature: str
    slot: int
    block_time: Optional[int]
    discovered_via: DiscoveredVia
    rarity_tier: str
    token_allocation: int
    list_price_raw: int
    phase_name: str
    config_version: int = 1

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["discovered_via"] = self.discovered_via.value
        return d

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "MintRecord":
        return MintRecord(
            collection_id=str(d["collection_id"]),
            ordinal=int(d["ordinal"]),
            mint=str(d["mint"]),
            owner=str(d["owner"]),
            signature=str(d["signature"]),
            slot=int(d["slot"]),
            block_time=None if d.get("block_time") is None else int(d["block_time"]),
            discovered_via=DiscoveredVia(d["discovered_via"]),
            rarity_tier=str(d["rarity_tier"]),
            token_allocation=int(d["token_allocation"]),
            list_price_raw=int(d["list_price_raw"]),
            phase_name=str(d["phase_name"]),
            config_version=int(d.get("config_version", 1)),
        )


@dataclass(frozen=True)
class ScanCursor:
    """Newest signature fully processed for a collection."""

    collection_id: str
    last_signature: Optional[str] = None
    last_slot: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "ScanCursor":
        return ScanCursor(
            collection_id=str(d["collection_id"]),
            last_signature=d.get("last_signature"),
            last_slot=int(d.get("last_slot", 0)),
        )


@dataclass
class ScanSummary:
    collection_id: str
    mode: str
    signatures_seen: int = 0
    new_records: List[MintRecord] = field(default_factory=list)
    chain_errors: int = 0
    unrecognized: int = 0
    errors: List[str] = field(default_factory=list)
    cursor_advanced: bool = False
    cancelled: bool = False
    # Known records whose signature a full recovery scan did not see again.
    missing_on_chain: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors and not self.cancelled

    def to_dict(self) -> Dict[str, Any]:
        return {
            "collection_id": self.collection_id,
            "mode": self.mode,
            "signatures_seen": self.signatures_seen,
            "new_records": [r.to_dict() for r in self.new_records],
            "chain_errors": self.chain_errors,
            "unrecognized": self.unrecognized,
            "errors": list(self.errors),
            "cursor_advanced": self.cursor_advanced,
            "cancelled": self.cancelled,
            "missing_on_chain": list(self.missing_on_chain),
        }
