import json

import pytest

from mint_ledger.cli import EX_TEMPFAIL, build_parser, main
from mint_ledger.config import CollectionConfig
from mint_ledger.models import DiscoveredVia, MintRecord
from mint_ledger.rpc import RpcUnavailable
from mint_ledger.service import MintLedgerService
from mint_ledger.verify import AuditMismatch, export_ledger

COLLECTION = {
    "collection_id": "cli",
    "name": "CLI",
    "scan_address": "Candy111",
    "total_supply": 2000,
    "phases": [
        {"name": "whitelist", "start": 0, "end": 100, "price": 0},
        {"name": "public", "start": 100, "end": 2000, "price_start": 100, "price_end": 1000},
    ],
    "tiers": [
        {"name": "Legendary", "start": 0, "end": 10, "token_allocation": 100000},
        {"name": "Common", "start": 10, "end": 2000, "token_allocation": 1000},
    ],
    "trait_layers": [{"name": "Eyes", "traits": [{"name": "Laser", "weight": 1}]}],
    "reveal_seed": "cli-seed",
}


@pytest.fixture
def config_path(tmp_path) -> str:
    path = tmp_path / "collection.json"
    path.write_text(json.dumps(COLLECTION), encoding="utf-8")
    return str(path)


def _run(argv) -> int:
    args = build_parser().parse_args(argv)
    return args.func(args)


class TestOfflineCommands:
    def test_price_at_given_count(self, config_path, capsys) -> None:
        assert _run(["price", "--config", config_path, "--minted", "1050"]) == 0

        out = capsys.readouterr().out
        assert "Price      : 550 LOS" in out
        assert "Phase      : public" in out

    def test_price_from_empty_ledger(self, config_path, tmp_path, capsys, monkeypatch) -> None:
        monkeypatch.delenv("RPC_URL", raising=False)
        monkeypatch.delenv("ANALOS_RPC_URL", raising=False)
        store = str(tmp_path / "ledger.json")

        assert _run(["--store", store, "price", "--config", config_path]) == 0
        assert "Minted     : 0 / 2000" in capsys.readouterr().out

    def test_curve(self, config_path, capsys) -> None:
        assert _run(["curve", "--config", config_path, "--points", "4"]) == 0

        rows = json.loads(capsys.readouterr().out)
        assert [r["minted"] for r in rows] == [0, 500, 1000, 1500, 2000]
        assert rows[-1]["price"] == "1000"

    def test_rarity(self, config_path, capsys) -> None:
        assert _run(["rarity", "--config", config_path, "--ordinal", "3"]) == 0
        assert json.loads(capsys.readouterr().out) == {
            "ordinal": 3,
            "tier": "Legendary",
            "token_allocation": 100000,
            "traits": {"Eyes": "Laser"},
        }

        assert _run(["rarity", "--config", config_path]) == 0
        assert [d["count"] for d in json.loads(capsys.readouterr().out)] == [10, 1990]

    def test_verify_detects_tampering(self, tmp_path, capsys) -> None:
        cfg = CollectionConfig.from_dict(COLLECTION)
        record = MintRecord(
            collection_id="cli",
            ordinal=0,
            mint="m0",
            owner="w0",
            signature="s0",
            slot=1,
            block_time=None,
            discovered_via=DiscoveredVia.SCAN,
            rarity_tier="Legendary",
            token_allocation=100000,
            list_price_raw=0,
            phase_name="whitelist",
        )
        path = tmp_path / "audit.json"
        export_ledger(cfg, [record], str(path))

        assert _run(["verify", "--audit", str(path)]) == 0
        assert "LEDGER AUDIT VERIFIED" in capsys.readouterr().out

        audit = json.loads(path.read_text(encoding="utf-8"))
        audit["records"][0]["list_price_raw"] = 5
        path.write_text(json.dumps(audit), encoding="utf-8")
        with pytest.raises(AuditMismatch):
            _run(["verify", "--audit", str(path)])


class TestParser:
    def test_subcommand_required(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_watch_accepts_several_configs(self) -> None:
        args = build_parser().parse_args(["--verbose", "watch", "--config", "a.json", "b.json"])
        assert args.config == ["a.json", "b.json"]
        assert args.verbose


class TestMain:
    def test_rpc_outage_exits_tempfail(self, config_path, tmp_path, monkeypatch) -> None:
        def _unreachable(self, collection_id: str) -> None:
            raise RpcUnavailable("getAccountInfo: gave up after 3 attempts: HTTP 503")

        monkeypatch.setattr(MintLedgerService, "verify_gating_mint", _unreachable)
        monkeypatch.setattr(
            "sys.argv",
            [
                "mint-ledger",
                "--rpc-url",
                "https://rpc.example",
                "--store",
                str(tmp_path / "ledger.json"),
                "scan",
                "--config",
                config_path,
                "--check-gating",
            ],
        )

        with pytest.raises(SystemExit) as exc:
            main()
        assert exc.value.code == EX_TEMPFAIL == 75
