from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Sequence

from .config import CollectionConfig
from .models import MintRecord
from .pricing import price
from .rarity import assign, traits_for

AUDIT_TOOL = "mint-ledger"
AUDIT_VERSION = "1.0.0"


class AuditMismatch(RuntimeError):
    """A recomputed value disagrees with the exported ledger."""


def build_audit(config: CollectionConfig, records: Sequence[MintRecord]) -> Dict[str, Any]:
    rows: List[Dict[str, Any]] = []
    for r in sorted(records, key=lambda rec: rec.ordinal):
        row = r.to_dict()
        if config.reveal_seed is not None and r.ordinal < config.total_supply:
            row["traits"] = traits_for(r.ordinal, config)
        rows.append(row)

    return {
        "metadata": {
            "tool": AUDIT_TOOL,
            "version": AUDIT_VERSION,
            "generated_at_utc": datetime.now(timezone.utc).isoformat(),
            "collection_id": config.collection_id,
            "config_version": config.version,
            "total_supply": config.total_supply,
            "record_count": len(rows),
            "reveal_seed": config.reveal_seed,
        },
        # Full config so anyone can re-run the assignment without our service.
        "config": config.to_dict(),
        "records": rows,
    }


def export_ledger(
    config: CollectionConfig, records: Sequence[MintRecord], out_path: str
) -> Dict[str, Any]:
    audit = build_audit(config, records)
    with open(out_path, "w", encoding="utf-8") as f:
        json.dump(audit, f, indent=2)
    return audit


def verify_audit_data(audit: Dict[str, Any]) -> Dict[str, Any]:
    config = CollectionConfig.from_dict(audit["config"])
    meta = audit["metadata"]
    if int(meta["config_version"]) != config.version:
        raise AuditMismatch(
            f"Config version mismatch: metadata={meta['config_version']} config={config.version}"
        )

    rows = audit["records"]
    if int(meta["record_count"]) != len(rows):
        raise AuditMismatch(
            f"Record count mismatch: metadata={meta['record_count']} records={len(rows)}"
        )

    seen_signatures = set()
    checked = 0
    skipped_other_version = 0
    for expected_ordinal, row in enumerate(rows):
        record = MintRecord.from_dict(row)
        if record.ordinal != expected_ordinal:
            raise AuditMismatch(
                f"Ordinal gap: expected {expected_ordinal}, found {record.ordinal}"
            )
        if record.signature in seen_signatures:
            raise AuditMismatch(f"Duplicate signature {record.signature}")
        seen_signatures.add(record.signature)

        if "traits" in row:
            recomputed_traits = traits_for(record.ordinal, config)
            if recomputed_traits != row["traits"]:
                raise AuditMismatch(
                    f"Traits mismatch at #{record.ordinal}: audit={row['traits']} "
                    f"recomputed={recomputed_traits}"
                )

        # Tier and price depend on the config version in force at mint time.
        if record.config_version != config.version:
            skipped_other_version += 1
            continue

        assignment = assign(record.ordinal, config)
        if (assignment.tier, assignment.token_allocation) != (
            record.rarity_tier,
            record.token_allocation,
        ):
            raise AuditMismatch(
                f"Rarity mismatch at #{record.ordinal}: audit={record.rarity_tier}/"
                f"{record.token_allocation} recomputed={assignment.tier}/"
                f"{assignment.token_allocation}"
            )

        listed = price(record.ordinal, config)
        if (listed.amount, listed.phase_name) != (record.list_price_raw, record.phase_name):
            raise AuditMismatch(
                f"Price mismatch at #{record.ordinal}: audit={record.list_price_raw} "
                f"({record.phase_name}) recomputed={listed.amount} ({listed.phase_name})"
            )
        checked += 1

    return {
        "ok": True,
        "collection_id": config.collection_id,
        "records": len(rows),
        "checked": checked,
        "skipped_other_version": skipped_other_version,
        "reveal_seed": config.reveal_seed,
    }


def verify_ledger(audit_path: str) -> Dict[str, Any]:
    with open(audit_path, "r", encoding="utf-8") as f:
        audit = json.load(f)
    return verify_audit_data(audit)
