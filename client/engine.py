"""
engine.py - Identity Resolution Engine

Public entry point for registration and face login.  Combines the matcher,
the codec and the BackendResolver, and enforces one face ↔ one account.

Registration is serialised twice over: a lock per account_key, and one
global enrollment lock held across the duplicate scan and the write (the
biometric scan has no natural key).  Reads take no lock; the local store
only ever exposes fully-written records.

Known limitation: the ledger stores digests only, so a face that is
*similar but not identical* to one that exists only on the ledger is not
caught by the duplicate scan.  Only an identical descriptor (same digest)
is.
"""

import asyncio
import logging
from typing import Dict, List, Optional

from client.config import DESCRIPTOR_DIM
from client.resolver import BackendResolver, ResolutionState
from common import codec
from common.errors import BackendError, DuplicateAccount, DuplicateBiometric
from common.models import (
    Backend, Identity, IdentityRecord, LedgerStatus, RegistrationOutcome,
    RegisteredOn, SyncReport, VerificationOutcome,
)
from common.utils import generate_account_id

logger = logging.getLogger(__name__)


class IdentityResolutionEngine:

    def __init__(self, ledger, local, descriptor_dim: int = DESCRIPTOR_DIM):
        self.ledger = ledger
        self.local = local
        self.resolver = BackendResolver(ledger, local)
        self.descriptor_dim = descriptor_dim
        self._account_locks: Dict[str, asyncio.Lock] = {}
        self._enrollment_lock = asyncio.Lock()

    def _lock_for(self, account_key: str) -> asyncio.Lock:
        if account_key not in self._account_locks:
            self._account_locks[account_key] = asyncio.Lock()
        return self._account_locks[account_key]

    # ──────────────────────────────────────────
    # REGISTER
    # ──────────────────────────────────────────
    async def register(self, account_key: str, descriptor) -> RegistrationOutcome:
        """
        Enroll *account_key* with *descriptor*.

        Raises DuplicateAccount if the key is known to either backend,
        DuplicateBiometric if the face is, StorageError if the local store
        cannot be written.  Ledger trouble is not an error: the account is
        then stored with registered_on=local_only.
        """
        d = codec.validate_descriptor(descriptor, self.descriptor_dim)
        digest = codec.digest_hex(d)

        async with self._lock_for(account_key):
            async with self._enrollment_lock:
                # 1. account uniqueness (fail closed on "exists", open on errors)
                existing = await self.resolver.exists(account_key)
                if existing.found:
                    backend = ("ledger" if existing.state is ResolutionState.LEDGER_CONFIRMED
                               else "local")
                    logger.warning(f"Registration refused: '{account_key}' exists on {backend}")
                    raise DuplicateAccount(account_key, backend)

                # 2. biometric uniqueness across both backends
                await self._check_biometric_duplicate(d, digest)

                # 3. write
                res = await self.resolver.register(generate_account_id(), account_key, d, digest)

        record: IdentityRecord = res.value
        confirmed_by = ((Backend.LEDGER, Backend.LOCAL)
                        if record.registered_on is RegisteredOn.LEDGER else (Backend.LOCAL,))
        logger.info(f"✔ Registered '{account_key}' "
                    f"(registered_on={record.registered_on.value}, digest={digest[:12]}…)")
        return RegistrationOutcome(
            account_id=record.account_id,
            account_key=record.account_key,
            digest=record.digest,
            registered_on=record.registered_on,
            confirmed_by=confirmed_by,
            confirmation=record.confirmation,
        )

    async def _check_biometric_duplicate(self, descriptor, digest: str):
        # Identical descriptors reproduce the same digest, so an exact ledger
        # hit counts as a match.
        if await self.resolver.digest_on_ledger(digest):
            logger.warning("Registration refused: face digest already on ledger")
            raise DuplicateBiometric("ledger", 0.0)
        match = await self.local.verify_identity(descriptor)
        if match is not None:
            logger.warning(f"Registration refused: face matches '{match.candidate_id}' "
                           f"locally (distance={match.distance:.4f})")
            raise DuplicateBiometric("local", match.distance)

    # ──────────────────────────────────────────
    # VERIFY
    # ──────────────────────────────────────────
    async def verify(self, account_key: str, descriptor) -> VerificationOutcome:
        """
        Face login.  The decision is biometric only; *account_key* just picks
        which user to report.  If the face is verified but there is no local
        record for the key, an anonymous identity is reported.
        """
        d = codec.validate_descriptor(descriptor, self.descriptor_dim)
        res = await self.resolver.verify(d, codec.digest_hex(d))

        if not res.found:
            logger.warning(f"🔴 Verification failed for '{account_key}'")
            return VerificationOutcome(verified=False)

        record = self.local.get(account_key)
        if record is not None:
            identity = Identity(account_key=record.account_key, account_id=record.account_id)
        else:
            identity = Identity(account_key=account_key, anonymous=True)

        if res.state is ResolutionState.LEDGER_CONFIRMED:
            confirmed_by, distance = Backend.LEDGER, 0.0
        else:
            confirmed_by, distance = Backend.LOCAL, res.value.distance

        logger.info(f"🟢 Verified '{account_key}' via {confirmed_by.value}"
                    + (" (anonymous)" if identity.anonymous else ""))
        return VerificationOutcome(
            verified=True, confirmed_by=confirmed_by, identity=identity, distance=distance,
        )

    # ──────────────────────────────────────────
    # EXISTS
    # ──────────────────────────────────────────
    async def account_exists(self, account_key: str) -> bool:
        return (await self.resolver.exists(account_key)).found

    # ──────────────────────────────────────────
    # DEFERRED LEDGER WRITES
    # ──────────────────────────────────────────
    async def sync_pending(self) -> SyncReport:
        """
        Replay every local_only record to the ledger, in registration order,
        and upgrade the ones the ledger accepts.
        """
        report = SyncReport()
        for record in self.local.pending():
            async with self._lock_for(record.account_key):
                upgraded = await self._sync_one(record)
            (report.upgraded if upgraded else report.still_pending).append(record.account_key)
        logger.info(f"Sync done: {len(report.upgraded)} upgraded, "
                    f"{len(report.still_pending)} still pending")
        return report

    async def _sync_one(self, record: IdentityRecord) -> bool:
        try:
            confirmation = await self.ledger.register_identity(record.account_key, record.digest)
        except DuplicateAccount as e:
            # An earlier attempt that timed out on our side may have landed.
            if not e.context.get("digest_matches"):
                logger.error(f"'{record.account_key}' is held on the ledger by a different face")
                return False
            confirmation = None
        except BackendError as e:
            logger.warning(f"'{record.account_key}' still pending: {e.message}")
            return False
        await self.local.mark_ledger_confirmed(record.account_key, confirmation)
        return True

    # ──────────────────────────────────────────
    # INSPECTION
    # ──────────────────────────────────────────
    async def ledger_status(self) -> LedgerStatus:
        return await self.ledger.status()

    def list_identities(self) -> List[IdentityRecord]:
        return self.local.records()

    def get_identity(self, account_key: str) -> Optional[IdentityRecord]:
        return self.local.get(account_key)
