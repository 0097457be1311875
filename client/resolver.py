"""
resolver.py - Backend Resolution

Runs one logical operation across the ledger and the local store with a
fixed precedence:

    TRY_LEDGER ──success──▶ LEDGER_CONFIRMED
        │
        └─ false / transient error ──▶ TRY_LOCAL ──▶ LOCAL_CONFIRMED | NOT_FOUND

The ledger is always tried first and the local store only after the ledger
has answered or failed; the two are never raced.  Only transient backend
errors (BackendError) trigger the fallback.  Duplicate and storage errors
propagate, and so does cancellation, so an abandoned ledger call leaves no
local effect.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional

from common.errors import BackendError
from common.models import BiometricDescriptor, IdentityRecord, RegisteredOn

logger = logging.getLogger(__name__)


class ResolutionState(str, Enum):
    TRY_LEDGER = "try_ledger"
    TRY_LOCAL = "try_local"
    LEDGER_CONFIRMED = "ledger_confirmed"
    LOCAL_CONFIRMED = "local_confirmed"
    NOT_FOUND = "not_found"


TERMINAL_STATES = frozenset({
    ResolutionState.LEDGER_CONFIRMED,
    ResolutionState.LOCAL_CONFIRMED,
    ResolutionState.NOT_FOUND,
})


@dataclass
class Resolution:
    state: ResolutionState = ResolutionState.TRY_LEDGER
    value: Any = None
    trace: List[ResolutionState] = field(default_factory=lambda: [ResolutionState.TRY_LEDGER])
    ledger_error: Optional[str] = None

    def advance(self, state: ResolutionState, value: Any = None) -> "Resolution":
        if self.state in TERMINAL_STATES:
            raise RuntimeError(f"Resolution already finished in {self.state.value}")
        self.state = state
        self.trace.append(state)
        if value is not None:
            self.value = value
        return self

    @property
    def done(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def found(self) -> bool:
        return self.state in (ResolutionState.LEDGER_CONFIRMED, ResolutionState.LOCAL_CONFIRMED)


class BackendResolver:
    """Reconciles the ledger and local store into one decision per operation."""

    def __init__(self, ledger, local):
        self.ledger = ledger
        self.local = local

    def _ledger_failed(self, res: Resolution, op: str, err: BackendError):
        res.ledger_error = str(err)
        logger.warning(f"Ledger {op} failed ({err.error_code}): {err.message} – falling back to local store")

    # ──────────────────────────────────────────
    # VERIFY (OR-combined)
    # ──────────────────────────────────────────
    async def verify(self, descriptor: BiometricDescriptor, digest: str) -> Resolution:
        """
        A ledger True is conclusive.  A ledger False is not: the ledger only
        knows exact digests, the local store matches under the threshold.
        """
        res = Resolution()
        try:
            if await self.ledger.verify_identity(digest):
                logger.info("✔ Verified on ledger (exact digest)")
                return res.advance(ResolutionState.LEDGER_CONFIRMED, True)
            logger.info("Ledger has no exact digest – checking local store")
        except BackendError as e:
            self._ledger_failed(res, "verify", e)

        res.advance(ResolutionState.TRY_LOCAL)
        match = await self.local.verify_identity(descriptor)
        if match is None:
            return res.advance(ResolutionState.NOT_FOUND, False)
        logger.info(f"✔ Verified in local store (distance={match.distance:.4f})")
        return res.advance(ResolutionState.LOCAL_CONFIRMED, match)

    # ──────────────────────────────────────────
    # REGISTER (ledger first, always persisted locally)
    # ──────────────────────────────────────────
    async def register(self, account_id: str, account_key: str,
                       descriptor: BiometricDescriptor, digest: str) -> Resolution:
        res = Resolution()
        confirmation = None
        registered_on = RegisteredOn.LOCAL_ONLY
        try:
            confirmation = await self.ledger.register_identity(account_key, digest)
            registered_on = RegisteredOn.LEDGER
            logger.info(f"✔ '{account_key}' registered on ledger")
        except BackendError as e:
            self._ledger_failed(res, "register", e)

        if registered_on is RegisteredOn.LOCAL_ONLY:
            res.advance(ResolutionState.TRY_LOCAL)

        record = IdentityRecord(
            account_id=account_id,
            account_key=account_key,
            digest=digest,
            registered_on=registered_on,
            descriptor=descriptor,
            confirmation=confirmation,
        )
        await self.local.register_identity(record)

        final = (ResolutionState.LEDGER_CONFIRMED if registered_on is RegisteredOn.LEDGER
                 else ResolutionState.LOCAL_CONFIRMED)
        return res.advance(final, record)

    # ──────────────────────────────────────────
    # EXISTS (OR-combined, fail open on backend errors)
    # ──────────────────────────────────────────
    async def exists(self, account_key: str) -> Resolution:
        res = Resolution()
        try:
            if await self.ledger.identity_exists_by_account(account_key):
                return res.advance(ResolutionState.LEDGER_CONFIRMED, True)
        except BackendError as e:
            self._ledger_failed(res, "exists", e)

        res.advance(ResolutionState.TRY_LOCAL)
        if await self.local.identity_exists_by_account(account_key):
            return res.advance(ResolutionState.LOCAL_CONFIRMED, True)
        return res.advance(ResolutionState.NOT_FOUND, False)

    # ──────────────────────────────────────────
    # DUPLICATE SCAN HELPERS
    # ──────────────────────────────────────────
    async def digest_on_ledger(self, digest: str) -> bool:
        """Exact digest lookup on the ledger; unreachable counts as absent."""
        try:
            return await self.ledger.verify_identity(digest)
        except BackendError as e:
            logger.warning(f"Ledger digest lookup failed ({e.error_code}) – treating as absent")
            return False
