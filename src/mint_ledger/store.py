from __future__ import annotations

import json
import logging
import os
import threading
from typing import Any, Dict, List, Optional, Protocol, Set, Tuple

from .models import MintRecord, ScanCursor

log = logging.getLogger(__name__)

STORE_FORMAT_VERSION = 1


class LedgerStore(Protocol):
    """
    Where the reconciler hands its records and cursor. Append-only for
    records. Changes are durable once flush() returns.
    """

    def known_signatures(self, collection_id: str) -> Set[str]: ...

    def count(self, collection_id: str) -> int: ...

    def append(self, record: MintRecord) -> bool: ...

    def records(
        self, collection_id: str, since_ordinal: Optional[int] = None
    ) -> List[MintRecord]: ...

    def get_cursor(self, collection_id: str) -> ScanCursor: ...

    def set_cursor(self, cursor: ScanCursor) -> None: ...

    def flush(self) -> bool: ...


class InMemoryLedgerStore:
    """Thread-safe in-process store. Created once and passed to whoever needs it."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._records: Dict[str, List[MintRecord]] = {}
        self._signatures: Dict[str, Set[str]] = {}
        self._mints: Dict[str, Set[str]] = {}
        self._cursors: Dict[str, ScanCursor] = {}

    def known_signatures(self, collection_id: str) -> Set[str]:
        with self._lock:
            return set(self._signatures.get(collection_id, ()))

    def has_signature(self, collection_id: str, signature: str) -> bool:
        with self._lock:
            return signature in self._signatures.get(collection_id, ())

    def count(self, collection_id: str) -> int:
        with self._lock:
            return len(self._records.get(collection_id, ()))

    def append(self, record: MintRecord) -> bool:
        """
        Add a record. Returns False (and changes nothing) when its signature
        or mint is already known. Ordinals must arrive gap-free.
        """
        with self._lock:
            cid = record.collection_id
            sigs = self._signatures.setdefault(cid, set())
            mints = self._mints.setdefault(cid, set())
            if record.signature in sigs:
                return False
            if record.mint in mints:
                log.warning(
                    "%s: mint %s already recorded under another signature; ignoring %s",
                    cid,
                    record.mint,
                    record.signature,
                )
                return False

            rows = self._records.setdefault(cid, [])
            if record.ordinal != len(rows):
                raise ValueError(
                    f"{cid}: record ordinal {record.ordinal} does not follow {len(rows) - 1}"
                )
            rows.append(record)
            sigs.add(record.signature)
            mints.add(record.mint)
            self._changed()
            return True

    def records(
        self, collection_id: str, since_ordinal: Optional[int] = None
    ) -> List[MintRecord]:
        with self._lock:
            rows = self._records.get(collection_id, [])
            if since_ordinal is None:
                return list(rows)
            return rows[max(since_ordinal, 0) :]

    def get_cursor(self, collection_id: str) -> ScanCursor:
        with self._lock:
            return self._cursors.get(collection_id) or ScanCursor(collection_id)

    def set_cursor(self, cursor: ScanCursor) -> None:
        with self._lock:
            current = self._cursors.get(cursor.collection_id)
            if current is not None and cursor.last_slot < current.last_slot:
                raise ValueError(
                    f"{cursor.collection_id}: cursor would move back from slot "
                    f"{current.last_slot} to {cursor.last_slot}"
                )
            self._cursors[cursor.collection_id] = cursor
            self._changed()

    def collection_ids(self) -> List[str]:
        with self._lock:
            return sorted(set(self._records) | set(self._cursors))

    def flush(self) -> bool:
        """Nothing to write; kept in memory only."""
        return False

    def _changed(self) -> None:
        """Hook for durable subclasses; called with the lock held."""


class JsonFileLedgerStore(InMemoryLedgerStore):
    """
    InMemoryLedgerStore mirrored to a JSON file. Changes stay in memory until
    flush(), which rewrites the file through a temp file + os.replace, so a
    crash leaves either the old or the new state on disk.

    The reconciler flushes once per batch. The data lock is only held while
    taking a snapshot; encoding and disk I/O happen outside it, so readers
    never wait on the disk.
    """

    def __init__(self, path: str) -> None:
        super().__init__()
        self.path = path
        self._dirty = False
        self._write_lock = threading.Lock()
        if os.path.exists(path):
            self._load()

    def _load(self) -> None:
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if data.get("format_version") != STORE_FORMAT_VERSION:
            raise RuntimeError(
                f"{self.path}: unsupported ledger format {data.get('format_version')!r}"
            )

        for cid, section in (data.get("collections") or {}).items():
            rows = sorted(
                (MintRecord.from_dict(r) for r in section.get("records") or []),
                key=lambda r: r.ordinal,
            )
            for expected, rec in enumerate(rows):
                if rec.ordinal != expected:
                    raise RuntimeError(
                        f"{self.path}: {cid} ordinals are not contiguous at {expected}"
                    )
            self._records[cid] = rows
            self._signatures[cid] = {r.signature for r in rows}
            self._mints[cid] = {r.mint for r in rows}
            if section.get("cursor"):
                self._cursors[cid] = ScanCursor.from_dict(section["cursor"])

        log.info("Loaded ledger %s (%d collections)", self.path, len(self._records))

    def _changed(self) -> None:
        self._dirty = True

    def flush(self) -> bool:
        """Write pending changes to disk. Returns False when there was nothing to write."""
        with self._write_lock:
            with self._lock:
                if not self._dirty:
                    return False
                # Records are frozen, so copying the lists is a consistent snapshot.
                snapshot = {
                    cid: (list(self._records.get(cid, [])), self._cursors.get(cid))
                    for cid in set(self._records) | set(self._cursors)
                }
                self._dirty = False

            try:
                self._write(snapshot)
            except OSError:
                with self._lock:
                    self._dirty = True
                raise
            return True

    def _write(self, snapshot: Dict[str, Tuple[List[MintRecord], Optional[ScanCursor]]]) -> None:
        collections: Dict[str, Any] = {}
        for cid, (rows, cursor) in snapshot.items():
            collections[cid] = {
                "records": [r.to_dict() for r in rows],
                "cursor": cursor.to_dict() if cursor else None,
            }
        payload = {"format_version": STORE_FORMAT_VERSION, "collections": collections}

        tmp = f"{self.path}.tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2, sort_keys=True)
        os.replace(tmp, self.path)
        log.debug("Flushed ledger %s", self.path)
