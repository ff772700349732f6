from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Iterable, List, Optional

from .config import CollectionConfig, ConfigError, Settings
from .eligibility import (
    EligibilityResult,
    EligibilityStatus,
    apply_discount,
    check_eligibility,
    limit_free_tier,
    verify_gating_decimals,
)
from .models import MintRecord, ScanSummary
from .pricing import price
from .project_constants import DEFAULT_PAGE_SIZE, DEFAULT_POLL_INTERVAL_S, DEFAULT_SUBMIT_WAIT_S
from .reconciler import Reconciler, ScanInProgress
from .rpc import ChainReader, RpcClient
from .store import JsonFileLedgerStore, LedgerStore

log = logging.getLogger(__name__)


class UnknownCollection(KeyError):
    """No collection with that id is tracked by this service."""


class CollectionPoller(threading.Thread):
    """Runs one collection's incremental scan every `interval_s` until stopped."""

    def __init__(self, reconciler: Reconciler, interval_s: float) -> None:
        super().__init__(daemon=True, name=f"poller-{reconciler.collection_id}")
        self.reconciler = reconciler
        self.interval_s = interval_s
        self._stop_event = threading.Event()

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> None:
        cid = self.reconciler.collection_id
        log.info("Polling %s every %.1fs", cid, self.interval_s)
        while not self._stop_event.is_set():
            try:
                self.reconciler.scan(cancel=self._stop_event)
            except ScanInProgress:
                log.debug("%s: previous scan still running; skipping this tick", cid)
            except Exception:
                # Keep polling; the next tick retries from the same cursor.
                log.exception("%s: unexpected error in scan cycle", cid)
            self._stop_event.wait(self.interval_s)
        log.info("Stopped polling %s", cid)


class MintLedgerService:
    """
    What UI and admin collaborators call. Owns one Reconciler per collection;
    the store and chain readers are passed in so tests can use fakes.

    Eligibility goes through its own reader, so an interactive balance check
    never queues behind a background scan.
    """

    def __init__(
        self,
        configs: Iterable[CollectionConfig],
        scan_reader: ChainReader,
        store: LedgerStore,
        eligibility_reader: Optional[ChainReader] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        poll_interval_s: float = DEFAULT_POLL_INTERVAL_S,
    ) -> None:
        self.scan_reader = scan_reader
        self.eligibility_reader = eligibility_reader or scan_reader
        self.store = store
        self.poll_interval_s = poll_interval_s
        self._config_lock = threading.Lock()
        self._reconcilers: Dict[str, Reconciler] = {}
        self._pollers: Dict[str, CollectionPoller] = {}

        for cfg in configs:
            if cfg.collection_id in self._reconcilers:
                raise ConfigError(f"duplicate collection_id {cfg.collection_id!r}")
            self._reconcilers[cfg.collection_id] = Reconciler(
                cfg, scan_reader, store, page_size=page_size
            )

    @staticmethod
    def from_settings(
        settings: Settings, configs: Iterable[CollectionConfig]
    ) -> "MintLedgerService":
        scan_rpc = RpcClient(
            settings.rpc_url,
            timeout_s=settings.rpc_timeout_s,
            max_attempts=settings.rpc_retries,
        )
        eligibility_rpc = RpcClient(
            settings.rpc_url,
            timeout_s=settings.eligibility_timeout_s,
            max_attempts=settings.rpc_retries,
        )
        return MintLedgerService(
            configs,
            scan_reader=scan_rpc,
            store=JsonFileLedgerStore(settings.store_path),
            eligibility_reader=eligibility_rpc,
            page_size=settings.page_size,
            poll_interval_s=settings.poll_interval_s,
        )

    def _reconciler(self, collection_id: str) -> Reconciler:
        try:
            return self._reconcilers[collection_id]
        except KeyError:
            raise UnknownCollection(collection_id)

    @property
    def collection_ids(self) -> List[str]:
        return sorted(self._reconcilers)

    def config(self, collection_id: str) -> CollectionConfig:
        return self._reconciler(collection_id).config

    def update_config(self, config: CollectionConfig) -> CollectionConfig:
        """Install a new config version (from CollectionConfig.with_*)."""
        reconciler = self._reconciler(config.collection_id)
        with self._config_lock:
            current = reconciler.config
            if config.version <= current.version:
                raise ConfigError(
                    f"{config.collection_id}: new config must have a version above "
                    f"{current.version}, got {config.version}"
                )
            minted = self.store.count(config.collection_id)
            if minted > config.total_supply:
                raise ConfigError(
                    f"{config.collection_id}: {minted} already minted, cannot shrink "
                    f"supply to {config.total_supply}"
                )
            reconciler.update_config(config)
        log.info("%s: now on config version %d", config.collection_id, config.version)
        return config

    # -- queries ------------------------------------------------------------

    def get_current_price(self, collection_id: str) -> Dict[str, Any]:
        cfg = self.config(collection_id)
        minted = self.store.count(collection_id)
        out = price(minted, cfg).to_dict()
        out["minted"] = minted
        out["total_supply"] = cfg.total_supply
        out["sold_out"] = minted >= cfg.total_supply
        return out

    def get_eligibility(self, collection_id: str, wallet: str) -> EligibilityResult:
        cfg = self.config(collection_id)
        if cfg.gating is None:
            return EligibilityResult(
                wallet=wallet,
                mint="",
                symbol="",
                status=EligibilityStatus.FULL_PRICE,
                discount_pct=0,
                reason="Collection has no gating token",
            )
        return check_eligibility(self.eligibility_reader, wallet, cfg.gating)

    def free_mints_claimed(self, collection_id: str, wallet: str) -> int:
        """Mints this wallet already owns from the free phase, per the ledger."""
        free_phase = self.config(collection_id).free_phase
        return sum(
            1
            for r in self.store.records(collection_id)
            if r.owner == wallet and r.phase_name == free_phase
        )

    def quote_for_wallet(self, collection_id: str, wallet: str) -> Dict[str, Any]:
        """
        Price of this wallet's next mint. Unlike get_eligibility, the free
        tier here is limited to the free phase and to the wallet's unclaimed
        free mints.
        """
        cfg = self.config(collection_id)
        base = price(self.store.count(collection_id), cfg)
        result = self.get_eligibility(collection_id, wallet)
        claimed = 0
        if cfg.gating is not None and cfg.free_phase is not None:
            claimed = self.free_mints_claimed(collection_id, wallet)
            result = limit_free_tier(result, cfg.gating, base.phase_name, cfg.free_phase, claimed)
        final = apply_discount(base, result)
        return {
            "base": base.to_dict(),
            "final": final.to_dict(),
            "eligibility": result.to_dict(),
            "free_mints_claimed": claimed,
        }

    def get_mint_records(
        self, collection_id: str, since_ordinal: Optional[int] = None
    ) -> List[MintRecord]:
        self._reconciler(collection_id)
        return self.store.records(collection_id, since_ordinal)

    def verify_gating_mint(self, collection_id: str) -> None:
        cfg = self.config(collection_id)
        if cfg.gating is not None:
            verify_gating_decimals(self.eligibility_reader, cfg.gating)

    # -- scans --------------------------------------------------------------

    def force_rescan(self, collection_id: str, from_genesis: bool = False) -> ScanSummary:
        reconciler = self._reconciler(collection_id)
        if from_genesis:
            return reconciler.recover()
        return reconciler.scan()

    def submit_mint(
        self, collection_id: str, signature: str, wait_s: float = DEFAULT_SUBMIT_WAIT_S
    ) -> ScanSummary:
        """Record a mint reported by the minting UI; waits up to `wait_s` for a running scan."""
        return self._reconciler(collection_id).submit_signature(signature, wait_s=wait_s)

    def start(self) -> None:
        for cid, reconciler in self._reconcilers.items():
            if cid in self._pollers and self._pollers[cid].is_alive():
                continue
            reconciler.cancel_event.clear()
            poller = CollectionPoller(reconciler, self.poll_interval_s)
            self._pollers[cid] = poller
            poller.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        for poller in self._pollers.values():
            poller.stop()
        for reconciler in self._reconcilers.values():
            reconciler.stop()
        for poller in self._pollers.values():
            poller.join(timeout)
        self._pollers.clear()

    def close(self) -> None:
        self.stop()
        self.store.flush()
        readers = [self.scan_reader]
        if self.eligibility_reader is not self.scan_reader:
            readers.append(self.eligibility_reader)
        for reader in readers:
            close = getattr(reader, "close", None)
            if close is not None:
                close()
