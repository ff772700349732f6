from __future__ import annotations

import argparse
import json
import logging
import signal
import threading
from dataclasses import replace
from typing import Any, Dict, List

from .config import ConfigError, Settings, format_amount, load_collection_config, load_collection_configs
from .eligibility import EligibilityStatus
from .pricing import price, price_curve
from .rarity import assign, tier_distribution, traits_for
from .reconciler import ScanInProgress
from .rpc import RpcUnavailable
from .service import MintLedgerService
from .store import JsonFileLedgerStore
from .verify import AuditMismatch, export_ledger, verify_ledger

# sysexits.h: temporary failure, worth retrying
EX_TEMPFAIL = 75


def setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")


def _settings(args: argparse.Namespace, require_rpc: bool = True) -> Settings:
    settings = Settings.from_env(rpc_url_override=args.rpc_url, require_rpc=require_rpc)
    if args.timeout is not None:
        settings = replace(settings, rpc_timeout_s=args.timeout)
    if args.store:
        settings = replace(settings, store_path=args.store)
    return settings


def _service(args: argparse.Namespace, paths: List[str]) -> MintLedgerService:
    settings = _settings(args)
    return MintLedgerService.from_settings(settings, load_collection_configs(paths).values())


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def cmd_price(args: argparse.Namespace) -> int:
    config = load_collection_config(args.config)
    minted = args.minted
    if minted is None:
        store = JsonFileLedgerStore(_settings(args, require_rpc=False).store_path)
        minted = store.count(config.collection_id)

    p = price(minted, config)
    print(f"Collection : {config.name} ({config.collection_id}, v{config.version})")
    print(f"Minted     : {minted} / {config.total_supply}")
    print(f"Phase      : {p.phase_name}")
    print(f"Price      : {format_amount(p.amount, p.decimals)} {p.currency}")
    return 0


def cmd_curve(args: argparse.Namespace) -> int:
    config = load_collection_config(args.config)
    rows: List[Dict[str, Any]] = []
    for minted, p in price_curve(config, points=args.points):
        row = p.to_dict()
        row["minted"] = minted
        rows.append(row)
    _print_json(rows)
    return 0


def cmd_rarity(args: argparse.Namespace) -> int:
    config = load_collection_config(args.config)
    if args.ordinal is None:
        _print_json(tier_distribution(config))
        return 0

    a = assign(args.ordinal, config)
    out: Dict[str, Any] = {
        "ordinal": a.ordinal,
        "tier": a.tier,
        "token_allocation": a.token_allocation,
    }
    if config.reveal_seed is not None:
        out["traits"] = traits_for(args.ordinal, config)
    _print_json(out)
    return 0


def cmd_eligibility(args: argparse.Namespace) -> int:
    config = load_collection_config(args.config)
    service = _service(args, [args.config])
    try:
        if args.quote:
            _print_json(service.quote_for_wallet(config.collection_id, args.wallet))
            return 0
        result = service.get_eligibility(config.collection_id, args.wallet)
    finally:
        service.close()

    _print_json(result.to_dict())
    return EX_TEMPFAIL if result.status is EligibilityStatus.UNAVAILABLE else 0


def cmd_scan(args: argparse.Namespace) -> int:
    log = logging.getLogger("scan")
    config = load_collection_config(args.config)
    service = _service(args, [args.config])
    try:
        if args.check_gating:
            service.verify_gating_mint(config.collection_id)
        if args.signature:
            summary = service.submit_mint(config.collection_id, args.signature)
        else:
            summary = service.force_rescan(config.collection_id, from_genesis=args.genesis)
    finally:
        service.close()

    if args.out:
        with open(args.out, "w", encoding="utf-8") as f:
            json.dump(summary.to_dict(), f, indent=2)
        log.info("Wrote scan summary: %s", args.out)

    print("========================================")
    print(f"🔍 MINT LEDGER SCAN ({summary.mode})")
    print("========================================")
    print(f"Collection     : {config.collection_id}")
    print(f"Signatures     : {summary.signatures_seen}")
    print(f"New records    : {len(summary.new_records)}")
    print(f"Failed tx      : {summary.chain_errors}")
    print(f"Non-mint tx    : {summary.unrecognized}")
    print(f"Cursor advanced: {summary.cursor_advanced}")
    for record in summary.new_records:
        print(f"  #{record.ordinal:<6} {record.mint}  {record.owner}  {record.rarity_tier}")
    for sig in summary.missing_on_chain:
        print(f"⚠️  recorded but not seen on chain: {sig}")
    for err in summary.errors:
        print(f"❌ {err}")
    if summary.cancelled:
        print("❌ scan cancelled")
    return 0 if summary.ok else 1


def cmd_records(args: argparse.Namespace) -> int:
    config = load_collection_config(args.config)
    store = JsonFileLedgerStore(_settings(args, require_rpc=False).store_path)
    records = store.records(config.collection_id, args.since)

    if args.export:
        export_ledger(config, store.records(config.collection_id), args.export)
        print(f"🧾 Wrote audit: {args.export}")
        return 0

    _print_json([r.to_dict() for r in records])
    return 0


def cmd_watch(args: argparse.Namespace) -> int:
    log = logging.getLogger("watch")
    service = _service(args, args.config)
    done = threading.Event()

    def _stop(signum: int, frame: Any) -> None:
        log.info("Signal %d received, stopping...", signum)
        done.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)

    service.start()
    log.info("Watching %d collection(s): %s", len(service.collection_ids), ", ".join(service.collection_ids))
    try:
        while not done.wait(1.0):
            pass
    finally:
        service.close()
    return 0


def cmd_verify(args: argparse.Namespace) -> int:
    result = verify_ledger(args.audit)
    print("✅ LEDGER AUDIT VERIFIED")
    print(f"Collection    : {result['collection_id']}")
    print(f"Records       : {result['records']}")
    print(f"Recomputed    : {result['checked']}")
    if result["skipped_other_version"]:
        print(f"Other config versions (not recomputed): {result['skipped_other_version']}")
    print(f"Reveal seed   : {result['reveal_seed']}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="mint-ledger",
        description="Mint pricing, rarity, token gating and chain reconciliation for NFT launches.",
    )
    p.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    p.add_argument("--rpc-url", default=None, help="Override RPC URL (else use env).")
    p.add_argument("--timeout", type=float, default=None, help="RPC timeout seconds.")
    p.add_argument("--store", default=None, help="Ledger JSON path (else MINT_LEDGER_STORE).")

    sub = p.add_subparsers(dest="cmd", required=True)

    pr = sub.add_parser("price", help="Current (or hypothetical) mint price.")
    pr.add_argument("--config", required=True, help="Collection config JSON.")
    pr.add_argument("--minted", type=int, default=None, help="Mint count to price at (default: ledger count).")
    pr.set_defaults(func=cmd_price)

    cv = sub.add_parser("curve", help="Sampled price curve as JSON.")
    cv.add_argument("--config", required=True, help="Collection config JSON.")
    cv.add_argument("--points", type=int, default=100, help="Number of intervals.")
    cv.set_defaults(func=cmd_curve)

    ra = sub.add_parser("rarity", help="Tier/traits for an ordinal, or the tier distribution.")
    ra.add_argument("--config", required=True, help="Collection config JSON.")
    ra.add_argument("--ordinal", type=int, default=None, help="Mint ordinal (0-based).")
    ra.set_defaults(func=cmd_rarity)

    el = sub.add_parser("eligibility", help="Gating-token discount for a wallet.")
    el.add_argument("--config", required=True, help="Collection config JSON.")
    el.add_argument("--wallet", required=True, help="Wallet address.")
    el.add_argument("--quote", action="store_true", help="Also show the discounted price.")
    el.set_defaults(func=cmd_eligibility)

    sc = sub.add_parser("scan", help="Reconcile the ledger against the chain once.")
    sc.add_argument("--config", required=True, help="Collection config JSON.")
    sc.add_argument("--genesis", action="store_true", help="Full recovery scan from genesis.")
    sc.add_argument("--signature", default=None, help="Record one directly submitted mint signature.")
    sc.add_argument("--check-gating", action="store_true", help="Verify gating mint decimals first.")
    sc.add_argument("--out", default=None, help="Write the scan summary JSON here.")
    sc.set_defaults(func=cmd_scan)

    rc = sub.add_parser("records", help="List recorded mints or export an audit.")
    rc.add_argument("--config", required=True, help="Collection config JSON.")
    rc.add_argument("--since", type=int, default=None, help="First ordinal to list.")
    rc.add_argument("--export", default=None, help="Write a verifiable audit JSON here.")
    rc.set_defaults(func=cmd_records)

    wa = sub.add_parser("watch", help="Poll collections in the background until interrupted.")
    wa.add_argument("--config", required=True, nargs="+", help="Collection config JSON(s).")
    wa.set_defaults(func=cmd_watch)

    v = sub.add_parser("verify", help="Recompute and check an exported ledger audit.")
    v.add_argument("--audit", required=True, help="Path to audit JSON.")
    v.set_defaults(func=cmd_verify)

    return p


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    setup_logging(args.verbose)
    try:
        code = args.func(args)
    except ConfigError as e:
        raise SystemExit(f"Config error: {e}")
    except RpcUnavailable as e:
        logging.getLogger("cli").error("RPC unavailable: %s", e)
        raise SystemExit(EX_TEMPFAIL)
    except ScanInProgress as e:
        raise SystemExit(str(e))
    except AuditMismatch as e:
        raise SystemExit(f"❌ AUDIT MISMATCH: {e}")
    raise SystemExit(code)
