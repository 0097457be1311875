"""
models.py - Shared Data Models
Common: Shared utilities and models
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Optional, Tuple
import time


class RegisteredOn(str, Enum):
    """Which backend holds the authoritative copy of a record."""
    LEDGER = "ledger"
    LOCAL_ONLY = "local_only"


class Backend(str, Enum):
    LEDGER = "ledger"
    LOCAL = "local"


@dataclass(frozen=True)
class BiometricDescriptor:
    """Immutable, ordered face descriptor (128 floats by default)."""
    values: Tuple[float, ...]

    def __len__(self):
        return len(self.values)

    def __iter__(self):
        return iter(self.values)

    def __getitem__(self, i):
        return self.values[i]

    def to_list(self) -> list:
        return list(self.values)


@dataclass
class IdentityRecord:
    account_id: str
    account_key: str
    digest: str                                    # hex SHA-256
    registered_on: RegisteredOn
    descriptor: Optional[BiometricDescriptor] = None
    registered_at: int = field(default_factory=lambda: int(time.time()))
    confirmation: Optional[str] = None             # ledger confirmation token

    def to_dict(self) -> dict:
        return {
            "account_id": self.account_id,
            "account_key": self.account_key,
            "descriptor": self.descriptor.to_list() if self.descriptor else None,
            "digest": self.digest,
            "registered_on": self.registered_on.value,
            "registered_at": self.registered_at,
            "confirmation": self.confirmation,
        }

    @staticmethod
    def from_dict(d: dict) -> "IdentityRecord":
        raw = d.get("descriptor")
        return IdentityRecord(
            account_id=d["account_id"],
            account_key=d["account_key"],
            digest=d["digest"],
            registered_on=RegisteredOn(d["registered_on"]),
            descriptor=BiometricDescriptor(tuple(float(v) for v in raw)) if raw else None,
            registered_at=d.get("registered_at", int(time.time())),
            confirmation=d.get("confirmation"),
        )


@dataclass(frozen=True)
class Match:
    """Closest stored descriptor under the threshold."""
    candidate_id: str
    distance: float


@dataclass
class RegistrationOutcome:
    account_id: str
    account_key: str
    digest: str
    registered_on: RegisteredOn
    confirmed_by: Tuple[Backend, ...]
    confirmation: Optional[str] = None

    @property
    def local_only(self) -> bool:
        return self.registered_on is RegisteredOn.LOCAL_ONLY

    def to_dict(self):
        d = asdict(self)
        d["registered_on"] = self.registered_on.value
        d["confirmed_by"] = [b.value for b in self.confirmed_by]
        return d


@dataclass
class Identity:
    """Who to report after a successful verification."""
    account_key: str
    account_id: Optional[str] = None
    anonymous: bool = False


@dataclass
class VerificationOutcome:
    verified: bool
    confirmed_by: Optional[Backend] = None
    identity: Optional[Identity] = None
    distance: Optional[float] = None
    timestamp: int = field(default_factory=lambda: int(time.time()))

    def __bool__(self):
        return self.verified

    def to_dict(self):
        d = asdict(self)
        d["confirmed_by"] = self.confirmed_by.value if self.confirmed_by else None
        return d


@dataclass
class LedgerStatus:
    reachable: bool
    height: Optional[int] = None
    network: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self):
        return asdict(self)


@dataclass
class SyncReport:
    upgraded: list = field(default_factory=list)
    still_pending: list = field(default_factory=list)

    def to_dict(self):
        return asdict(self)
