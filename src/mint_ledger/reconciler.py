"""
Mint ledger reconciler: rebuilds "who minted what, when" from chain history.

One Reconciler per collection. A cycle moves IDLE -> SCANNING (list
signatures back to the cursor) -> RECONCILING (fetch, decode, record) ->
IDLE. Any failure or cancellation passes through FAILED back to IDLE
without touching the cursor, so the next cycle retries the same range.

Ordinals come from the number of records already stored and signatures are
processed oldest first, so re-running a range (or recovering from genesis)
never renumbers an existing record.
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Any, Dict, List, Optional

from . import pricing, rarity
from .config import CollectionConfig, ConfigError
from .models import DiscoveredVia, MintEvent, MintRecord, ScanCursor, ScanSummary
from .project_constants import DEFAULT_PAGE_SIZE, DEFAULT_SUBMIT_WAIT_S, MAX_PAGE_SIZE
from .rpc import ChainReader, RpcUnavailable
from .store import LedgerStore
from .tx_parser import ChainError, Recognized, Unrecognized, account_keys, decode_transaction

log = logging.getLogger(__name__)


class ReconcilerState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    RECONCILING = "reconciling"
    FAILED = "failed"


class ScanInProgress(RuntimeError):
    """Another scan of the same collection is already running."""


class ScanCancelled(RuntimeError):
    """The scan was asked to stop before finishing its batch."""


class Reconciler:
    def __init__(
        self,
        config: CollectionConfig,
        reader: ChainReader,
        store: LedgerStore,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        if not 1 <= page_size <= MAX_PAGE_SIZE:
            raise ConfigError(f"page_size must be within 1..{MAX_PAGE_SIZE}, got {page_size}")
        self._config = config
        self.reader = reader
        self.store = store
        self.page_size = page_size
        self.state = ReconcilerState.IDLE
        self.last_summary: Optional[ScanSummary] = None
        self.cancel_event = threading.Event()
        self._scan_lock = threading.Lock()

    @property
    def collection_id(self) -> str:
        return self._config.collection_id

    @property
    def config(self) -> CollectionConfig:
        return self._config

    def update_config(self, config: CollectionConfig) -> None:
        """Swap in a newer config version. Takes effect from the next record on."""
        if config.collection_id != self.collection_id:
            raise ConfigError(
                f"Reconciler for {self.collection_id} cannot take config for {config.collection_id}"
            )
        if config.version < self._config.version:
            raise ConfigError(
                f"{self.collection_id}: config version {config.version} is older than "
                f"{self._config.version}"
            )
        self._config = config

    @property
    def is_busy(self) -> bool:
        return self._scan_lock.locked()

    def is_known(self, signature: str) -> bool:
        return signature in self.store.known_signatures(self.collection_id)

    # -- public entry points ------------------------------------------------

    def scan(
        self, cancel: Optional[threading.Event] = None, wait_s: float = 0.0
    ) -> ScanSummary:
        """
        Incremental scan from the stored cursor up to the newest signature.
        `wait_s` is how long to wait for a running scan before raising
        ScanInProgress.
        """
        return self._run(
            "incremental", DiscoveredVia.SCAN, from_genesis=False, cancel=cancel, wait_s=wait_s
        )

    def recover(self, cancel: Optional[threading.Event] = None) -> ScanSummary:
        """Full rescan from genesis. Converges to the same records as incremental scans."""
        return self._run("recovery", DiscoveredVia.RECOVERY, from_genesis=True, cancel=cancel)

    def submit_signature(
        self,
        signature: str,
        cancel: Optional[threading.Event] = None,
        wait_s: float = DEFAULT_SUBMIT_WAIT_S,
    ) -> ScanSummary:
        """
        Record a mint reported directly by the minting client. Catches up
        with the chain first so ordinals keep chain order; only if the
        signature is still unknown afterwards is it fetched on its own.

        A background scan already in flight is waited on for up to `wait_s`.
        """
        summary = self.scan(cancel=cancel, wait_s=wait_s)
        if not summary.ok or self.is_known(signature):
            return summary

        direct = ScanSummary(collection_id=self.collection_id, mode="direct")
        self._acquire(wait_s)
        try:
            self.state = ReconcilerState.RECONCILING
            self._process_direct(signature, direct)
            self.store.flush()
            self.state = ReconcilerState.IDLE
        except (RpcUnavailable, ConfigError) as e:
            self._fail(direct, f"{signature}: {e}")
        except Exception as e:
            self._fail(direct, f"{signature}: unexpected error: {e!r}")
            raise
        finally:
            self._scan_lock.release()

        summary.new_records.extend(direct.new_records)
        summary.errors.extend(direct.errors)
        summary.unrecognized += direct.unrecognized
        summary.chain_errors += direct.chain_errors
        return summary

    def stop(self) -> None:
        self.cancel_event.set()

    # -- cycle ----------------------------------------------------------------

    def _acquire(self, wait_s: float) -> None:
        if wait_s > 0:
            acquired = self._scan_lock.acquire(timeout=wait_s)
        else:
            acquired = self._scan_lock.acquire(blocking=False)
        if not acquired:
            raise ScanInProgress(f"{self.collection_id}: a scan is already running")

    def _run(
        self,
        mode: str,
        via: DiscoveredVia,
        from_genesis: bool,
        cancel: Optional[threading.Event],
        wait_s: float = 0.0,
    ) -> ScanSummary:
        self._acquire(wait_s)

        summary = ScanSummary(collection_id=self.collection_id, mode=mode)
        try:
            self._cycle(summary, via, from_genesis, cancel)
        except ScanCancelled:
            summary.cancelled = True
            self.state = ReconcilerState.FAILED
            log.warning("%s: %s scan cancelled; cursor left in place", self.collection_id, mode)
            self.state = ReconcilerState.IDLE
        except (RpcUnavailable, ConfigError) as e:
            self._fail(summary, str(e))
        except Exception as e:
            self._fail(summary, f"unexpected error: {e!r}")
            raise
        finally:
            self.last_summary = summary
            self._scan_lock.release()
        return summary

    def _fail(self, summary: ScanSummary, message: str) -> None:
        self.state = ReconcilerState.FAILED
        summary.errors.append(message)
        log.error("%s: %s scan failed: %s", self.collection_id, summary.mode, message)
        self.state = ReconcilerState.IDLE

    def _cycle(
        self,
        summary: ScanSummary,
        via: DiscoveredVia,
        from_genesis: bool,
        cancel: Optional[threading.Event],
    ) -> None:
        cid = self.collection_id
        cursor = self.store.get_cursor(cid)

        self.state = ReconcilerState.SCANNING
        stop_at = None if from_genesis else cursor
        batch = self._collect(stop_at, cancel)
        summary.signatures_seen = len(batch)
        log.info(
            "%s: %d signature(s) to reconcile (%s, cursor slot %d)",
            cid,
            len(batch),
            summary.mode,
            cursor.last_slot,
        )

        self.state = ReconcilerState.RECONCILING
        known = self.store.known_signatures(cid)
        for info in batch:
            self._check_cancel(cancel)
            sig = info["signature"]
            if sig in known:
                continue
            if info.get("err") is not None:
                summary.chain_errors += 1
                log.info("%s: skipping failed transaction %s: %s", cid, sig, info["err"])
                continue

            tx = self.reader.get_transaction(sig)
            if tx is None:
                raise RpcUnavailable(f"transaction {sig} is not available from the node yet")
            record = self._handle_outcome(decode_transaction(tx, sig), via, summary)
            if record is not None:
                known.add(sig)

        if from_genesis:
            seen = {info["signature"] for info in batch}
            summary.missing_on_chain = [
                r.signature for r in self.store.records(cid) if r.signature not in seen
            ]
            if summary.missing_on_chain:
                log.warning(
                    "%s: %d recorded mint(s) not found in chain history: %s",
                    cid,
                    len(summary.missing_on_chain),
                    ", ".join(summary.missing_on_chain[:5]),
                )

        # Whole batch done: only now may the cursor move.
        if batch:
            newest = batch[-1]
            new_cursor = ScanCursor(
                collection_id=cid,
                last_signature=newest["signature"],
                last_slot=int(newest.get("slot") or 0),
            )
            if new_cursor.last_slot >= cursor.last_slot and new_cursor != cursor:
                self.store.set_cursor(new_cursor)
                summary.cursor_advanced = True

        self.store.flush()
        self.state = ReconcilerState.IDLE
        log.info(
            "%s: %s scan done: %d new, %d failed tx, %d non-mint",
            cid,
            summary.mode,
            len(summary.new_records),
            summary.chain_errors,
            summary.unrecognized,
        )

    def _collect(
        self, cursor: Optional[ScanCursor], cancel: Optional[threading.Event]
    ) -> List[Dict[str, Any]]:
        """
        Page newest -> oldest until the cursor signature (or an older slot)
        is reached, or history runs out. Returns signature infos oldest
        first, deduplicated.
        """
        stop_sig = cursor.last_signature if cursor else None
        stop_slot = cursor.last_slot if cursor and cursor.last_signature else None

        collected: List[Dict[str, Any]] = []
        before: Optional[str] = None
        while True:
            self._check_cancel(cancel)
            page = self.reader.get_signatures_for_address(
                self.config.scan_address, limit=self.page_size, before=before
            )
            if not page:
                break

            reached = False
            for info in page:
                sig = info.get("signature") if isinstance(info, dict) else None
                if not isinstance(sig, str) or not sig:
                    log.warning("%s: ignoring malformed signature entry %r", self.collection_id, info)
                    continue
                slot = info.get("slot")
                if sig == stop_sig or (
                    stop_slot is not None and isinstance(slot, int) and slot < stop_slot
                ):
                    reached = True
                    break
                collected.append(info)

            last_sig = page[-1].get("signature") if isinstance(page[-1], dict) else None
            if reached or len(page) < self.page_size or not last_sig or last_sig == before:
                break
            before = last_sig

        collected.reverse()
        seen = set()
        ordered: List[Dict[str, Any]] = []
        for info in collected:
            if info["signature"] in seen:
                continue
            seen.add(info["signature"])
            ordered.append(info)
        # Stable: keeps node order within a slot.
        ordered.sort(key=lambda i: i.get("slot") if isinstance(i.get("slot"), int) else 0)
        return ordered

    def _handle_outcome(
        self, outcome: Any, via: DiscoveredVia, summary: ScanSummary
    ) -> Optional[MintRecord]:
        cid = self.collection_id
        if isinstance(outcome, ChainError):
            summary.chain_errors += 1
            log.info("%s: skipping failed transaction %s: %s", cid, outcome.signature, outcome.error)
            return None
        if isinstance(outcome, Unrecognized):
            summary.unrecognized += 1
            if outcome.suspicious:
                log.warning("%s: skipping %s: %s", cid, outcome.signature, outcome.reason)
            else:
                log.debug("%s: %s is not a mint: %s", cid, outcome.signature, outcome.reason)
            return None
        if not isinstance(outcome, Recognized):
            raise TypeError(f"unexpected decode outcome {outcome!r}")

        record = self._make_record(outcome.event, via)
        if not self.store.append(record):
            return None
        summary.new_records.append(record)
        log.info(
            "%s: #%d %s minted by %s (%s, %s)",
            cid,
            record.ordinal,
            record.mint,
            record.owner,
            record.rarity_tier,
            record.signature,
        )
        return record

    def _make_record(self, event: MintEvent, via: DiscoveredVia) -> MintRecord:
        config = self.config
        ordinal = self.store.count(config.collection_id)
        assignment = rarity.assign(ordinal, config)
        listed = pricing.price(ordinal, config)
        return MintRecord(
            collection_id=config.collection_id,
            ordinal=ordinal,
            mint=event.mint,
            owner=event.owner,
            signature=event.signature,
            slot=event.slot,
            block_time=event.block_time,
            discovered_via=via,
            rarity_tier=assignment.tier,
            token_allocation=assignment.token_allocation,
            list_price_raw=listed.amount,
            phase_name=listed.phase_name,
            config_version=config.version,
        )

    def _process_direct(self, signature: str, summary: ScanSummary) -> None:
        tx = self.reader.get_transaction(signature)
        if tx is None:
            summary.errors.append(f"{signature}: transaction not found")
            return
        if self.config.scan_address not in account_keys(tx):
            summary.unrecognized += 1
            summary.errors.append(
                f"{signature}: does not involve collection address {self.config.scan_address}"
            )
            return
        self._handle_outcome(decode_transaction(tx, signature), DiscoveredVia.DIRECT, summary)

    def _check_cancel(self, cancel: Optional[threading.Event]) -> None:
        if self.cancel_event.is_set() or (cancel is not None and cancel.is_set()):
            raise ScanCancelled(f"{self.collection_id}: scan cancelled")
