from decimal import Decimal

import pytest

from mint_ledger.config import CollectionConfig, Phase
from mint_ledger.pricing import find_phase, phase_price, price, price_curve

from conftest import LOS


class TestPrice:
    def test_whitelist_and_public_curve(self, pricing_config: CollectionConfig) -> None:
        assert price(50, pricing_config).amount == 0
        assert price(100, pricing_config).amount == 100 * LOS
        assert price(1050, pricing_config).amount == 550 * LOS
        assert price(2000, pricing_config).amount == 1000 * LOS

    def test_phase_names_and_boundaries(self, pricing_config: CollectionConfig) -> None:
        assert price(0, pricing_config).phase_name == "whitelist"
        assert price(99, pricing_config).phase_name == "whitelist"
        assert price(100, pricing_config).phase_name == "public"
        # Past the last phase the final phase's end price holds.
        assert price(5000, pricing_config).amount == 1000 * LOS
        assert price(5000, pricing_config).phase_name == "public"

    def test_one_before_end_is_below_end_price(self, pricing_config: CollectionConfig) -> None:
        p = price(1999, pricing_config).amount
        assert 999 * LOS < p < 1000 * LOS

    def test_free_price(self, pricing_config: CollectionConfig) -> None:
        p = price(0, pricing_config)
        assert p.is_free
        assert p.to_dict() == {
            "price": "0",
            "price_raw": 0,
            "currency": "LOS",
            "phase_name": "whitelist",
        }

    def test_ui_amount(self, pricing_config: CollectionConfig) -> None:
        assert price(1050, pricing_config).ui_amount == Decimal("550")
        assert price(1050, pricing_config).to_dict()["price"] == "550"

    def test_negative_count_rejected(self, pricing_config: CollectionConfig) -> None:
        with pytest.raises(ValueError):
            price(-1, pricing_config)

    def test_non_decreasing_over_whole_supply(self, pricing_config: CollectionConfig) -> None:
        amounts = [price(n, pricing_config).amount for n in range(0, 2001)]
        assert all(a <= b for a, b in zip(amounts, amounts[1:]))


class TestPhasePrice:
    def test_quadratic_curve(self) -> None:
        phase = Phase("q", 0, 100, 0, 100, exponent=2)

        assert phase_price(phase, 0) == 0
        assert phase_price(phase, 50) == 25
        assert phase_price(phase, 100) == 100
        assert phase_price(phase, 10) == 1

    def test_rounds_down_to_base_unit(self) -> None:
        phase = Phase("r", 0, 3, 0, 10)
        assert [phase_price(phase, n) for n in range(4)] == [0, 3, 6, 10]

    def test_flat_phase_ignores_count(self) -> None:
        phase = Phase("flat", 10, 20, 7, 7)
        assert phase_price(phase, 0) == phase_price(phase, 15) == phase_price(phase, 99) == 7

    def test_progress_is_clamped(self) -> None:
        phase = Phase("c", 10, 20, 100, 200)
        assert phase_price(phase, 0) == 100
        assert phase_price(phase, 30) == 200


class TestFindPhase:
    def test_lookup(self) -> None:
        phases = (Phase("a", 5, 10, 1, 1), Phase("b", 10, 20, 2, 2), Phase("c", 20, 30, 3, 3))

        assert find_phase(0, phases).name == "a"
        assert find_phase(9, phases).name == "a"
        assert find_phase(10, phases).name == "b"
        assert find_phase(29, phases).name == "c"
        assert find_phase(30, phases).name == "c"


class TestPriceCurve:
    def test_endpoints_and_spacing(self, pricing_config: CollectionConfig) -> None:
        curve = price_curve(pricing_config, points=20)

        counts = [n for n, _ in curve]
        assert counts[0] == 0
        assert counts[-1] == 2000
        assert len(counts) == 21
        assert curve[-1][1].amount == 1000 * LOS

    def test_points_must_be_positive(self, pricing_config: CollectionConfig) -> None:
        with pytest.raises(ValueError):
            price_curve(pricing_config, points=0)
