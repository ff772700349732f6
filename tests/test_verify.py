import json
from dataclasses import replace

import pytest

from mint_ledger.config import CollectionConfig
from mint_ledger.reconciler import Reconciler
from mint_ledger.store import InMemoryLedgerStore
from mint_ledger.verify import AuditMismatch, build_audit, export_ledger, verify_audit_data, verify_ledger

from conftest import LOS, FakeChainReader


@pytest.fixture
def ledger(small_config: CollectionConfig, reader: FakeChainReader) -> InMemoryLedgerStore:
    store = InMemoryLedgerStore()
    for n in (1, 2, 3, 4):
        reader.add_mint(f"s{n}", n, f"m{n}", f"w{n}")
    Reconciler(small_config, reader, store).scan()
    return store


class TestExportAndVerify:
    def test_round_trip_through_file(self, tmp_path, small_config, ledger) -> None:
        path = str(tmp_path / "audit.json")
        audit = export_ledger(small_config, ledger.records("mini"), path)

        assert audit["metadata"]["record_count"] == 4
        assert audit["metadata"]["reveal_seed"] == "mini-seed"
        assert "traits" in audit["records"][0]

        result = verify_ledger(path)
        assert result["ok"]
        assert result["checked"] == 4
        assert result["skipped_other_version"] == 0

    def test_unrevealed_collection_has_no_traits(self, small_config, ledger) -> None:
        hidden = replace(small_config, reveal_seed=None)
        audit = build_audit(hidden, ledger.records("mini"))

        assert all("traits" not in row for row in audit["records"])
        assert verify_audit_data(audit)["checked"] == 4


class TestTampering:
    """Any edit to an exported audit is detected on verification."""

    def _audit(self, small_config, ledger) -> dict:
        return json.loads(json.dumps(build_audit(small_config, ledger.records("mini"))))

    def test_changed_tier(self, small_config, ledger) -> None:
        audit = self._audit(small_config, ledger)
        audit["records"][2]["rarity_tier"] = "Legendary"

        with pytest.raises(AuditMismatch, match="Rarity mismatch at #2"):
            verify_audit_data(audit)

    def test_changed_price(self, small_config, ledger) -> None:
        audit = self._audit(small_config, ledger)
        audit["records"][3]["list_price_raw"] = 1

        with pytest.raises(AuditMismatch, match="Price mismatch at #3"):
            verify_audit_data(audit)

    def test_changed_traits(self, small_config, ledger) -> None:
        audit = self._audit(small_config, ledger)
        audit["records"][0]["traits"] = {"Eyes": "Nope"}

        with pytest.raises(AuditMismatch, match="Traits mismatch"):
            verify_audit_data(audit)

    def test_dropped_record(self, small_config, ledger) -> None:
        audit = self._audit(small_config, ledger)
        del audit["records"][1]
        audit["metadata"]["record_count"] = 3

        with pytest.raises(AuditMismatch, match="Ordinal gap"):
            verify_audit_data(audit)

    def test_count_mismatch(self, small_config, ledger) -> None:
        audit = self._audit(small_config, ledger)
        audit["metadata"]["record_count"] = 10

        with pytest.raises(AuditMismatch, match="Record count"):
            verify_audit_data(audit)


class TestVersions:
    def test_older_records_not_recomputed(self, small_config, reader, ledger) -> None:
        newer = small_config.with_prices("public", 20 * LOS, 50 * LOS)
        reconciler = Reconciler(newer, reader, ledger)
        reader.add_mint("s5", 5, "m5", "w5")
        reconciler.scan()

        result = verify_audit_data(build_audit(newer, ledger.records("mini")))

        assert result["records"] == 5
        assert result["checked"] == 1
        assert result["skipped_other_version"] == 4
