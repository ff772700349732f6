from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from dotenv import load_dotenv

from .project_constants import (
    DEFAULT_CURRENCY,
    DEFAULT_CURRENCY_DECIMALS,
    DEFAULT_ELIGIBILITY_TIMEOUT_S,
    DEFAULT_PAGE_SIZE,
    DEFAULT_PARTIAL_DISCOUNT_PCT,
    DEFAULT_POLL_INTERVAL_S,
    DEFAULT_RPC_RETRIES,
    DEFAULT_RPC_TIMEOUT_S,
    DEFAULT_STORE_PATH,
    MAX_PAGE_SIZE,
)


class ConfigError(ValueError):
    """A service or collection configuration violates one of its invariants."""


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {raw!r}")
    return value


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {raw!r}")
    return value


@dataclass(frozen=True)
class Settings:
    rpc_url: str
    rpc_timeout_s: float = DEFAULT_RPC_TIMEOUT_S
    eligibility_timeout_s: float = DEFAULT_ELIGIBILITY_TIMEOUT_S
    rpc_retries: int = DEFAULT_RPC_RETRIES
    poll_interval_s: float = DEFAULT_POLL_INTERVAL_S
    page_size: int = DEFAULT_PAGE_SIZE
    store_path: str = DEFAULT_STORE_PATH

    @staticmethod
    def from_env(
        rpc_url_override: str | None = None, require_rpc: bool = True
    ) -> "Settings":
        load_dotenv()

        # --rpc-url wins, then RPC_URL, then the chain-specific variable.
        rpc_url = (
            (rpc_url_override or "").strip()
            or os.getenv("RPC_URL", "").strip()
            or os.getenv("ANALOS_RPC_URL", "").strip()
        )
        if not rpc_url and require_rpc:
            raise RuntimeError(
                "Missing RPC_URL (or ANALOS_RPC_URL). Put it in .env or export it."
            )

        page_size = _env_int("MINT_LEDGER_PAGE_SIZE", DEFAULT_PAGE_SIZE)
        if page_size > MAX_PAGE_SIZE:
            raise ConfigError(
                f"MINT_LEDGER_PAGE_SIZE must be at most {MAX_PAGE_SIZE}, got {page_size}"
            )

        return Settings(
            rpc_url=rpc_url,
            rpc_timeout_s=_env_float("MINT_LEDGER_RPC_TIMEOUT", DEFAULT_RPC_TIMEOUT_S),
            eligibility_timeout_s=_env_float(
                "MINT_LEDGER_ELIGIBILITY_TIMEOUT", DEFAULT_ELIGIBILITY_TIMEOUT_S
            ),
            rpc_retries=_env_int("MINT_LEDGER_RPC_RETRIES", DEFAULT_RPC_RETRIES),
            poll_interval_s=_env_float(
                "MINT_LEDGER_POLL_INTERVAL", DEFAULT_POLL_INTERVAL_S
            ),
            page_size=page_size,
            store_path=os.getenv("MINT_LEDGER_STORE", "").strip()
            or DEFAULT_STORE_PATH,
        )


# ---------------------------------------------------------------------------
# Amount conversion (fixed point, smallest on-chain unit)
# ---------------------------------------------------------------------------


def to_base_units(value: Any, decimals: int, what: str = "amount") -> int:
    """
    Convert a human-denominated amount ("100", 0.5, 1000000) into integer
    base units. Rejects values that cannot be represented exactly.
    """
    if isinstance(value, bool) or value is None:
        raise ConfigError(f"{what}: expected a number, got {value!r}")
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ConfigError(f"{what}: not a number: {value!r}")
    if not amount.is_finite():
        raise ConfigError(f"{what}: not a finite number: {value!r}")
    if amount < 0:
        raise ConfigError(f"{what}: must not be negative, got {value!r}")

    scaled = amount.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise ConfigError(
            f"{what}: {value} has more than {decimals} decimal places"
        )
    return int(scaled)


def from_base_units(raw: int, decimals: int) -> Decimal:
    return Decimal(int(raw)).scaleb(-decimals)


def format_amount(raw: int, decimals: int) -> str:
    """Plain decimal string without exponent or trailing zeros."""
    value = from_base_units(raw, decimals).normalize()
    return format(value, "f")


# ---------------------------------------------------------------------------
# Collection config
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Currency:
    symbol: str = DEFAULT_CURRENCY
    decimals: int = DEFAULT_CURRENCY_DECIMALS


@dataclass(frozen=True)
class Phase:
    """
    One pricing phase over the half-open mint-count range [start, end).

    Prices are in base units. A flat phase has price_start == price_end;
    otherwise the price moves from price_start to price_end along
    progress ** exponent.
    """

    name: str
    start: int
    end: int
    price_start: int
    price_end: int
    exponent: int = 1

    @property
    def is_flat(self) -> bool:
        return self.price_start == self.price_end


@dataclass(frozen=True)
class Trait:
    name: str
    weight: int


@dataclass(frozen=True)
class TraitLayer:
    name: str
    traits: Tuple[Trait, ...]


@dataclass(frozen=True)
class RarityTier:
    """Contiguous ordinal range [start, end) mapped to a tier and token allocation."""

    name: str
    start: int
    end: int
    token_allocation: int
    trait_layers: Tuple[TraitLayer, ...] = ()

    @property
    def size(self) -> int:
        return self.end - self.start


@dataclass(frozen=True)
class GatingConfig:
    """
    Gating token and discount floors. Floors are whole-token amounts;
    comparisons always happen on raw integers via the *_raw properties.
    """

    mint: str
    decimals: int
    full_discount_floor: Decimal
    partial_discount_floor: Decimal
    partial_discount_pct: int = DEFAULT_PARTIAL_DISCOUNT_PCT
    symbol: str = "TOKEN"
    # Free tier only applies in this phase (None: the first phase), and only
    # for a wallet's first `free_mints_per_wallet` mints in it.
    free_phase: Optional[str] = None
    free_mints_per_wallet: int = 1

    @property
    def full_floor_raw(self) -> int:
        return to_base_units(self.full_discount_floor, self.decimals, "full_discount_floor")

    @property
    def partial_floor_raw(self) -> int:
        return to_base_units(
            self.partial_discount_floor, self.decimals, "partial_discount_floor"
        )


@dataclass(frozen=True)
class CollectionConfig:
    """
    Immutable collection parameters. Constructing one validates every
    invariant, so a CollectionConfig that exists is a valid one. Updates go
    through the with_* methods, which return a new version.
    """

    collection_id: str
    name: str
    scan_address: str
    total_supply: int
    phases: Tuple[Phase, ...]
    tiers: Tuple[RarityTier, ...]
    gating: Optional[GatingConfig] = None
    currency: Currency = field(default_factory=Currency)
    reveal_seed: Optional[str] = None
    trait_layers: Tuple[TraitLayer, ...] = ()
    version: int = 1

    def __post_init__(self) -> None:
        if not self.collection_id:
            raise ConfigError("collection_id must not be empty")
        if not self.scan_address:
            raise ConfigError(f"{self.collection_id}: scan_address must not be empty")
        if self.total_supply <= 0:
            raise ConfigError(
                f"{self.collection_id}: total_supply must be positive, got {self.total_supply}"
            )
        if self.version < 1:
            raise ConfigError(f"{self.collection_id}: version must be >= 1")
        if not 0 <= self.currency.decimals <= 18:
            raise ConfigError(
                f"{self.collection_id}: currency decimals out of range: {self.currency.decimals}"
            )
        _validate_phases(self.collection_id, self.phases, self.total_supply)
        _validate_tiers(self.collection_id, self.tiers, self.total_supply)
        _validate_trait_layers(self.collection_id, self.trait_layers)
        for tier in self.tiers:
            _validate_trait_layers(f"{self.collection_id}/{tier.name}", tier.trait_layers)
        if self.gating is not None:
            _validate_gating(self.collection_id, self.gating)
            free_phase = self.gating.free_phase
            if free_phase is not None and free_phase not in {p.name for p in self.phases}:
                raise ConfigError(
                    f"{self.collection_id}: gating free_phase {free_phase!r} is not a phase"
                )

    @property
    def free_phase(self) -> Optional[str]:
        """Phase in which the gating free tier applies; None without gating."""
        if self.gating is None:
            return None
        return self.gating.free_phase or self.phases[0].name

    # -- explicit updates; each yields a new validated version ------------

    def with_phases(self, phases: Iterable[Phase]) -> "CollectionConfig":
        return replace(self, phases=tuple(phases), version=self.version + 1)

    def with_total_supply(
        self, total_supply: int, tiers: Optional[Iterable[RarityTier]] = None
    ) -> "CollectionConfig":
        new_tiers = tuple(tiers) if tiers is not None else self.tiers
        return replace(
            self, total_supply=total_supply, tiers=new_tiers, version=self.version + 1
        )

    def with_prices(
        self, phase_name: str, price_start: int, price_end: Optional[int] = None
    ) -> "CollectionConfig":
        if phase_name not in {p.name for p in self.phases}:
            raise ConfigError(f"{self.collection_id}: unknown phase {phase_name!r}")
        end = price_start if price_end is None else price_end
        phases = tuple(
            replace(p, price_start=price_start, price_end=end) if p.name == phase_name else p
            for p in self.phases
        )
        return self.with_phases(phases)

    # -- (de)serialization ------------------------------------------------

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "CollectionConfig":
        try:
            currency_raw = data.get("currency") or {}
            currency = Currency(
                symbol=str(currency_raw.get("symbol", DEFAULT_CURRENCY)),
                decimals=int(currency_raw.get("decimals", DEFAULT_CURRENCY_DECIMALS)),
            )
            cid = str(data["collection_id"])

            phases = tuple(
                _phase_from_dict(p, currency.decimals, f"{cid}: phases[{i}]")
                for i, p in enumerate(data["phases"])
            )
            tiers = tuple(
                RarityTier(
                    name=str(t["name"]),
                    start=int(t["start"]),
                    end=int(t["end"]),
                    token_allocation=int(t.get("token_allocation", 0)),
                    trait_layers=_layers_from_list(t.get("trait_layers") or []),
                )
                for t in data["tiers"]
            )

            gating = None
            gating_raw = data.get("gating")
            if gating_raw:
                gating = GatingConfig(
                    mint=str(gating_raw["mint"]),
                    decimals=int(gating_raw["decimals"]),
                    full_discount_floor=_decimal(
                        gating_raw["full_discount_floor"], f"{cid}: full_discount_floor"
                    ),
                    partial_discount_floor=_decimal(
                        gating_raw["partial_discount_floor"],
                        f"{cid}: partial_discount_floor",
                    ),
                    partial_discount_pct=int(
                        gating_raw.get("partial_discount_pct", DEFAULT_PARTIAL_DISCOUNT_PCT)
                    ),
                    symbol=str(gating_raw.get("symbol", "TOKEN")),
                    free_phase=None
                    if gating_raw.get("free_phase") is None
                    else str(gating_raw["free_phase"]),
                    free_mints_per_wallet=int(gating_raw.get("free_mints_per_wallet", 1)),
                )

            return CollectionConfig(
                collection_id=cid,
                name=str(data.get("name", cid)),
                scan_address=str(data["scan_address"]),
                total_supply=int(data["total_supply"]),
                phases=phases,
                tiers=tiers,
                gating=gating,
                currency=currency,
                reveal_seed=data.get("reveal_seed"),
                trait_layers=_layers_from_list(data.get("trait_layers") or []),
                version=int(data.get("version", 1)),
            )
        except KeyError as e:
            raise ConfigError(f"Collection config is missing required key {e}")
        except (AttributeError, TypeError, ValueError) as e:
            if isinstance(e, ConfigError):
                raise
            raise ConfigError(f"Collection config has an invalid value: {e}")

    def to_dict(self) -> Dict[str, Any]:
        d = self.currency.decimals
        out: Dict[str, Any] = {
            "collection_id": self.collection_id,
            "name": self.name,
            "scan_address": self.scan_address,
            "total_supply": self.total_supply,
            "version": self.version,
            "currency": {"symbol": self.currency.symbol, "decimals": d},
            "phases": [
                {
                    "name": p.name,
                    "start": p.start,
                    "end": p.end,
                    "price_start": format_amount(p.price_start, d),
                    "price_end": format_amount(p.price_end, d),
                    "exponent": p.exponent,
                }
                for p in self.phases
            ],
            "tiers": [
                {
                    "name": t.name,
                    "start": t.start,
                    "end": t.end,
                    "token_allocation": t.token_allocation,
                    "trait_layers": _layers_to_list(t.trait_layers),
                }
                for t in self.tiers
            ],
            "trait_layers": _layers_to_list(self.trait_layers),
            "reveal_seed": self.reveal_seed,
        }
        if self.gating is not None:
            out["gating"] = {
                "mint": self.gating.mint,
                "symbol": self.gating.symbol,
                "decimals": self.gating.decimals,
                "full_discount_floor": str(self.gating.full_discount_floor),
                "partial_discount_floor": str(self.gating.partial_discount_floor),
                "partial_discount_pct": self.gating.partial_discount_pct,
                "free_phase": self.gating.free_phase,
                "free_mints_per_wallet": self.gating.free_mints_per_wallet,
            }
        return out


def _decimal(value: Any, what: str) -> Decimal:
    if isinstance(value, bool):
        raise ConfigError(f"{what}: expected a number, got {value!r}")
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ConfigError(f"{what}: not a number: {value!r}")
    if not amount.is_finite():
        raise ConfigError(f"{what}: not a finite number: {value!r}")
    return amount


def _phase_from_dict(p: Mapping[str, Any], decimals: int, where: str) -> Phase:
    # "price" is shorthand for a flat phase.
    if "price" in p:
        start_price = end_price = to_base_units(p["price"], decimals, f"{where}.price")
    else:
        start_price = to_base_units(p["price_start"], decimals, f"{where}.price_start")
        end_price = to_base_units(p["price_end"], decimals, f"{where}.price_end")
    return Phase(
        name=str(p["name"]),
        start=int(p["start"]),
        end=int(p["end"]),
        price_start=start_price,
        price_end=end_price,
        exponent=int(p.get("exponent", 1)),
    )


def _layers_from_list(items: List[Mapping[str, Any]]) -> Tuple[TraitLayer, ...]:
    return tuple(
        TraitLayer(
            name=str(layer["name"]),
            traits=tuple(
                Trait(name=str(t["name"]), weight=int(t["weight"]))
                for t in layer["traits"]
            ),
        )
        for layer in items
    )


def _layers_to_list(layers: Tuple[TraitLayer, ...]) -> List[Dict[str, Any]]:
    return [
        {
            "name": layer.name,
            "traits": [{"name": t.name, "weight": t.weight} for t in layer.traits],
        }
        for layer in layers
    ]


def _validate_phases(cid: str, phases: Tuple[Phase, ...], total_supply: int) -> None:
    if not phases:
        raise ConfigError(f"{cid}: at least one pricing phase is required")

    names = set()
    prev: Optional[Phase] = None
    for phase in phases:
        if phase.name in names:
            raise ConfigError(f"{cid}: duplicate phase name {phase.name!r}")
        names.add(phase.name)

        if phase.start < 0 or phase.start >= phase.end:
            raise ConfigError(
                f"{cid}: phase {phase.name!r} has an empty or negative range "
                f"[{phase.start}, {phase.end})"
            )
        if phase.exponent < 1:
            raise ConfigError(
                f"{cid}: phase {phase.name!r} exponent must be >= 1, got {phase.exponent}"
            )
        if phase.price_start < 0 or phase.price_end < 0:
            raise ConfigError(f"{cid}: phase {phase.name!r} has a negative price")
        if phase.price_start > phase.price_end:
            raise ConfigError(
                f"{cid}: phase {phase.name!r} price decreases "
                f"({phase.price_start} -> {phase.price_end})"
            )

        if prev is not None:
            if phase.start != prev.end:
                kind = "overlaps" if phase.start < prev.end else "leaves a gap after"
                raise ConfigError(
                    f"{cid}: phase {phase.name!r} {kind} phase {prev.name!r}"
                )
            if prev.price_end > phase.price_start:
                raise ConfigError(
                    f"{cid}: price drops from phase {prev.name!r} ({prev.price_end}) "
                    f"to phase {phase.name!r} ({phase.price_start})"
                )
        prev = phase

    if phases[-1].end > total_supply:
        raise ConfigError(
            f"{cid}: final phase ends at {phases[-1].end}, beyond total supply {total_supply}"
        )


def _validate_tiers(cid: str, tiers: Tuple[RarityTier, ...], total_supply: int) -> None:
    if not tiers:
        raise ConfigError(f"{cid}: at least one rarity tier is required")

    names = set()
    expected_start = 0
    for tier in tiers:
        if tier.name in names:
            raise ConfigError(f"{cid}: duplicate tier name {tier.name!r}")
        names.add(tier.name)

        if tier.start != expected_start:
            kind = "overlaps" if tier.start < expected_start else "leaves a gap before"
            raise ConfigError(
                f"{cid}: tier {tier.name!r} [{tier.start}, {tier.end}) {kind} "
                f"ordinal {expected_start}"
            )
        if tier.end <= tier.start:
            raise ConfigError(
                f"{cid}: tier {tier.name!r} has an empty range [{tier.start}, {tier.end})"
            )
        if tier.token_allocation < 0:
            raise ConfigError(f"{cid}: tier {tier.name!r} has a negative allocation")
        expected_start = tier.end

    if expected_start != total_supply:
        raise ConfigError(
            f"{cid}: tiers cover [0, {expected_start}) but total supply is {total_supply}"
        )


def _validate_trait_layers(where: str, layers: Tuple[TraitLayer, ...]) -> None:
    for layer in layers:
        if not layer.traits:
            raise ConfigError(f"{where}: trait layer {layer.name!r} is empty")
        seen = set()
        for trait in layer.traits:
            if trait.weight <= 0:
                raise ConfigError(
                    f"{where}: trait {layer.name}/{trait.name} weight must be positive"
                )
            if trait.name in seen:
                raise ConfigError(f"{where}: duplicate trait {layer.name}/{trait.name}")
            seen.add(trait.name)


def _validate_gating(cid: str, gating: GatingConfig) -> None:
    if not gating.mint:
        raise ConfigError(f"{cid}: gating mint must not be empty")
    if not 0 <= gating.decimals <= 255:
        raise ConfigError(f"{cid}: gating decimals out of range: {gating.decimals}")
    if gating.partial_discount_floor < 0:
        raise ConfigError(f"{cid}: partial_discount_floor must not be negative")
    if gating.full_discount_floor < gating.partial_discount_floor:
        raise ConfigError(
            f"{cid}: full_discount_floor ({gating.full_discount_floor}) is below "
            f"partial_discount_floor ({gating.partial_discount_floor})"
        )
    if not 0 <= gating.partial_discount_pct <= 100:
        raise ConfigError(
            f"{cid}: partial_discount_pct must be within 0..100, got {gating.partial_discount_pct}"
        )
    if gating.free_mints_per_wallet < 0:
        raise ConfigError(f"{cid}: free_mints_per_wallet must not be negative")
    # Both floors must be exactly representable in raw units.
    to_base_units(gating.full_discount_floor, gating.decimals, f"{cid}: full_discount_floor")
    to_base_units(
        gating.partial_discount_floor, gating.decimals, f"{cid}: partial_discount_floor"
    )


def load_collection_config(path: str) -> CollectionConfig:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"{path}: not valid JSON: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a JSON object")
    return CollectionConfig.from_dict(data)


def load_collection_configs(paths: Iterable[str]) -> Dict[str, CollectionConfig]:
    configs: Dict[str, CollectionConfig] = {}
    for path in paths:
        cfg = load_collection_config(path)
        if cfg.collection_id in configs:
            raise ConfigError(f"{path}: duplicate collection_id {cfg.collection_id!r}")
        configs[cfg.collection_id] = cfg
    return configs
