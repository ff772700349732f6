"""
Rarity tiers, token allocations and seeded trait selection.

Tier assignment is a plain range lookup: the Nth mint always gets the same
tier. Trait selection is replayable by anyone holding the reveal seed:

    block_i = SHA-256(utf8(seed) || ordinal as 8-byte big-endian || i as 4-byte big-endian)

Each draw consumes blocks until one falls below the largest multiple of the
bound (rejection sampling), then takes it modulo the bound.
"""

from __future__ import annotations

import hashlib
from bisect import bisect_right
from dataclasses import dataclass
from itertools import accumulate
from typing import Any, Dict, List, Tuple

from .config import CollectionConfig, ConfigError, RarityTier, Trait, TraitLayer

_BLOCK_SPACE = 1 << 256


class OrdinalOutOfRange(ConfigError):
    """Ordinal is outside [0, total_supply)."""


@dataclass(frozen=True)
class RarityAssignment:
    ordinal: int
    tier: str
    token_allocation: int


def find_tier(tiers: Tuple[RarityTier, ...], ordinal: int) -> RarityTier:
    ends = [t.end for t in tiers]
    idx = bisect_right(ends, ordinal)
    if idx < 0 or idx >= len(tiers):
        raise OrdinalOutOfRange(f"Ordinal {ordinal} is not covered by any tier")
    return tiers[idx]


def assign(ordinal: int, config: CollectionConfig) -> RarityAssignment:
    if not 0 <= ordinal < config.total_supply:
        raise OrdinalOutOfRange(
            f"{config.collection_id}: ordinal {ordinal} outside [0, {config.total_supply})"
        )
    tier = find_tier(config.tiers, ordinal)
    return RarityAssignment(
        ordinal=ordinal, tier=tier.name, token_allocation=tier.token_allocation
    )


class SeededStream:
    """Per-mint pseudo-random stream. Holds no global state; one per (seed, ordinal)."""

    def __init__(self, seed: str, ordinal: int) -> None:
        if ordinal < 0:
            raise OrdinalOutOfRange(f"Ordinal must not be negative, got {ordinal}")
        self._prefix = seed.encode("utf-8") + ordinal.to_bytes(8, "big")
        self.counter = 0

    def next_block(self) -> bytes:
        block = hashlib.sha256(self._prefix + self.counter.to_bytes(4, "big")).digest()
        self.counter += 1
        return block

    def below(self, bound: int) -> int:
        """Uniform integer in [0, bound)."""
        if bound <= 0:
            raise ValueError(f"bound must be positive, got {bound}")
        limit = (_BLOCK_SPACE // bound) * bound
        while True:
            value = int.from_bytes(self.next_block(), "big")
            if value < limit:
                return value % bound


def sample_trait(stream: SeededStream, layer: TraitLayer) -> Trait:
    """First trait whose cumulative weight exceeds the draw."""
    cumulative = list(accumulate(t.weight for t in layer.traits))
    draw = stream.below(cumulative[-1])
    return layer.traits[bisect_right(cumulative, draw)]


def sample_traits(stream: SeededStream, layers: Tuple[TraitLayer, ...]) -> Dict[str, str]:
    return {layer.name: sample_trait(stream, layer).name for layer in layers}


def traits_for(ordinal: int, config: CollectionConfig) -> Dict[str, str]:
    """
    Trait set for a mint. Uses the tier's own layers when it has any,
    otherwise the collection-wide layers.
    """
    if config.reveal_seed is None:
        raise ConfigError(f"{config.collection_id}: collection is not revealed (no reveal_seed)")
    assignment = assign(ordinal, config)
    tier = next(t for t in config.tiers if t.name == assignment.tier)
    layers = tier.trait_layers or config.trait_layers
    return sample_traits(SeededStream(config.reveal_seed, ordinal), layers)


def tier_distribution(config: CollectionConfig) -> List[Dict[str, Any]]:
    total = config.total_supply
    return [
        {
            "tier": t.name,
            "start": t.start,
            "end": t.end,
            "count": t.size,
            "share_pct": round(t.size * 100 / total, 4),
            "token_allocation": t.token_allocation,
        }
        for t in config.tiers
    ]
