"""
local_store.py - Local Identity Store

Durable JSON collection of IdentityRecords keyed by account_key, kept in
registration order.  Holds the raw descriptors, so it can do threshold
matching that the ledger cannot.

File layout:
  {
    "version": 1,
    "records": {
      "<account_key>": {account_id, account_key, descriptor, digest,
                        registered_on, registered_at, confirmation},
      ...
    }
  }

Each write goes to its own temp file that replaces the store with
os.replace(), and the in-memory snapshot is swapped only once the file is on
disk.  Readers work on the current snapshot and never see a half-written
record.  Stored descriptors are validated on load; a malformed store is a
StorageError.
"""

import asyncio
import json
import logging
import os
import tempfile
from types import MappingProxyType
from typing import Dict, List, Optional

from client.config import DESCRIPTOR_DIM, LOCAL_STORE_PATH, MATCH_THRESHOLD
from client.matcher import find_best_match
from common.codec import validate_descriptor
from common.errors import DuplicateAccount, InvalidDescriptor, StorageError
from common.models import IdentityRecord, Match, RegisteredOn
from common.utils import ensure_dir

logger = logging.getLogger(__name__)

STORE_VERSION = 1


class LocalStoreBackend:
    """Always-reachable, non-authoritative backend."""

    name = "local"

    def __init__(self, path: str = LOCAL_STORE_PATH, threshold: float = MATCH_THRESHOLD,
                 descriptor_dim: int = DESCRIPTOR_DIM):
        self.path = path
        self.threshold = threshold
        self.descriptor_dim = descriptor_dim
        self._records: MappingProxyType = MappingProxyType({})
        self._write_lock = asyncio.Lock()
        self._loaded = False

    # ──────────────────────────────────────────
    # LOADING
    # ──────────────────────────────────────────
    def load(self):
        """Read the store from disk.  A missing file is an empty store."""
        self._records = MappingProxyType(self._read_file())
        self._loaded = True
        logger.info(f"Local store loaded: {len(self._records)} record(s) from {self.path}")
        return self

    def _ensure_loaded(self):
        if not self._loaded:
            self.load()

    def _read_file(self) -> Dict[str, IdentityRecord]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, encoding="utf-8") as f:
                payload = json.load(f)
            if not isinstance(payload, dict) or not isinstance(payload.get("records"), dict):
                raise ValueError("expected an object with a 'records' mapping")
            records = {}
            for key, entry in payload["records"].items():
                if not isinstance(entry, dict):
                    raise ValueError(f"record '{key}' is not an object")
                # every later threshold scan relies on well-formed descriptors
                validate_descriptor(entry.get("descriptor"), self.descriptor_dim)
                record = IdentityRecord.from_dict(entry)
                if record.account_key != key:
                    raise ValueError(f"record key mismatch for '{key}'")
                records[key] = record
            return records
        except InvalidDescriptor as e:
            raise StorageError("Local identity store holds a malformed descriptor",
                               {"path": self.path, "reason": e.message, **e.context}) from e
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            raise StorageError("Local identity store is unreadable",
                               {"path": self.path, "reason": str(e)}) from e

    def _write_file(self, records: Dict[str, IdentityRecord]):
        payload = {
            "version": STORE_VERSION,
            "records": {k: r.to_dict() for k, r in records.items()},
        }
        tmp_path = None
        try:
            directory = os.path.dirname(self.path)
            ensure_dir(directory)
            with tempfile.NamedTemporaryFile("w", encoding="utf-8", dir=directory or ".",
                                             prefix=f"{os.path.basename(self.path)}.",
                                             suffix=".tmp", delete=False) as f:
                tmp_path = f.name
                json.dump(payload, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except OSError as e:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise StorageError("Failed to write local identity store",
                               {"path": self.path, "reason": str(e)}) from e

    async def _locked_update(self, mutate):
        async with self._write_lock:
            self._ensure_loaded()
            records = dict(self._records)
            result, changed = mutate(records)
            if changed:
                await asyncio.to_thread(self._write_file, records)
                self._records = MappingProxyType(records)
            return result

    async def _update(self, mutate):
        """
        Apply *mutate* to a copy of the records and commit it under the write
        lock.  *mutate* returns (result, changed).

        A cancelled caller still waits for the commit to land before the
        CancelledError propagates, so neither this lock nor any lock the
        caller holds is released while a write is in flight.
        """
        task = asyncio.ensure_future(self._locked_update(mutate))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            while not task.done():
                try:
                    await asyncio.wait({task})
                except asyncio.CancelledError:
                    continue
            if not task.cancelled() and task.exception() is not None:
                logger.error(f"Local write after cancellation failed: {task.exception()}")
            raise

    # ──────────────────────────────────────────
    # BACKEND OPERATIONS
    # ──────────────────────────────────────────
    async def register_identity(self, record: IdentityRecord) -> IdentityRecord:
        if record.descriptor is None:
            raise StorageError("Local records must carry the raw descriptor",
                               {"account_key": record.account_key})

        def add(records):
            if record.account_key in records:
                raise DuplicateAccount(record.account_key, self.name)
            records[record.account_key] = record
            return record, True

        await self._update(add)
        logger.info(f"✔ Stored '{record.account_key}' locally "
                    f"(registered_on={record.registered_on.value})")
        return record

    async def verify_identity(self, descriptor) -> Optional[Match]:
        self._ensure_loaded()
        snapshot = self._records
        candidates = ((k, r.descriptor) for k, r in snapshot.items() if r.descriptor is not None)
        return find_best_match(descriptor, candidates, self.threshold)

    async def identity_exists_by_account(self, account_key: str) -> bool:
        self._ensure_loaded()
        return account_key in self._records

    async def mark_ledger_confirmed(self, account_key: str, confirmation: Optional[str]) -> IdentityRecord:
        """The single allowed mutation: local_only → ledger."""

        def upgrade(records):
            current = records.get(account_key)
            if current is None:
                raise StorageError("No local record to upgrade", {"account_key": account_key})
            if current.registered_on is RegisteredOn.LEDGER:
                return current, False
            records[account_key] = IdentityRecord(
                account_id=current.account_id,
                account_key=current.account_key,
                digest=current.digest,
                registered_on=RegisteredOn.LEDGER,
                descriptor=current.descriptor,
                registered_at=current.registered_at,
                confirmation=confirmation,
            )
            return records[account_key], True

        upgraded = await self._update(upgrade)
        logger.info(f"✔ '{account_key}' registered_on={upgraded.registered_on.value}")
        return upgraded

    # ──────────────────────────────────────────
    # READS
    # ──────────────────────────────────────────
    def get(self, account_key: str) -> Optional[IdentityRecord]:
        self._ensure_loaded()
        return self._records.get(account_key)

    def records(self) -> List[IdentityRecord]:
        """All records in registration order."""
        self._ensure_loaded()
        return list(self._records.values())

    def pending(self) -> List[IdentityRecord]:
        return [r for r in self.records() if r.registered_on is RegisteredOn.LOCAL_ONLY]
