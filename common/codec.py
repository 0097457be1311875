"""
codec.py - Descriptor Codec
Common: Shared utilities and models

Canonical serialisation of a biometric descriptor and its one-way digest.

The canonical form is the big-endian IEEE-754 float64 encoding of every
coordinate, in order.  No float-to-text formatting is involved, so the bytes
(and therefore the digest) do not depend on locale or print precision.
"""

import hashlib
import logging
import math
from numbers import Real
from typing import Iterable, Optional

import numpy as np

from common.errors import InvalidDescriptor
from common.models import BiometricDescriptor

logger = logging.getLogger(__name__)

# ─────────────────────────────────────────────
# CONSTANTS
# ─────────────────────────────────────────────
CANONICAL_DTYPE = np.dtype(">f8")
DIGEST_SIZE     = 32          # SHA-256
DIGEST_HEX_LEN  = DIGEST_SIZE * 2


# ─────────────────────────────────────────────
# VALIDATION
# ─────────────────────────────────────────────
def validate_descriptor(values: Iterable, expected_dim: Optional[int] = None) -> BiometricDescriptor:
    """
    Build a BiometricDescriptor from any sequence of numbers.

    Raises InvalidDescriptor for an empty vector, a length other than
    *expected_dim*, non-numeric entries, or NaN / infinity.
    """
    if isinstance(values, BiometricDescriptor):
        coords = values.values
    else:
        if values is None or isinstance(values, (str, bytes)):
            raise InvalidDescriptor("Descriptor must be a sequence of numbers")
        coords = tuple(values)

    if len(coords) == 0:
        raise InvalidDescriptor("Descriptor is empty")
    if expected_dim is not None and len(coords) != expected_dim:
        raise InvalidDescriptor(
            "Descriptor has the wrong length",
            {"expected": expected_dim, "actual": len(coords)},
        )

    floats = []
    for i, v in enumerate(coords):
        if isinstance(v, bool) or not isinstance(v, (Real, np.floating, np.integer)):
            raise InvalidDescriptor("Descriptor coordinate is not a number", {"index": i})
        f = float(v)
        if not math.isfinite(f):
            raise InvalidDescriptor("Descriptor coordinate is not finite", {"index": i})
        floats.append(f)
    return BiometricDescriptor(tuple(floats))


# ─────────────────────────────────────────────
# SERIALISATION
# ─────────────────────────────────────────────
def serialize(descriptor, expected_dim: Optional[int] = None) -> bytes:
    """Return the canonical byte form (8 bytes per coordinate, big-endian)."""
    d = validate_descriptor(descriptor, expected_dim)
    return np.asarray(d.values, dtype=CANONICAL_DTYPE).tobytes()


def deserialize(raw: bytes, expected_dim: Optional[int] = None) -> BiometricDescriptor:
    if not raw or len(raw) % CANONICAL_DTYPE.itemsize:
        raise InvalidDescriptor("Canonical descriptor bytes are malformed",
                                {"length": len(raw or b"")})
    arr = np.frombuffer(raw, dtype=CANONICAL_DTYPE)
    return validate_descriptor(arr.tolist(), expected_dim)


# ─────────────────────────────────────────────
# DIGEST
# ─────────────────────────────────────────────
def digest(descriptor, expected_dim: Optional[int] = None) -> bytes:
    """One-way SHA-256 of the canonical serialisation (32 bytes)."""
    return hashlib.sha256(serialize(descriptor, expected_dim)).digest()


def digest_hex(descriptor, expected_dim: Optional[int] = None) -> str:
    h = digest(descriptor, expected_dim).hex()
    logger.debug(f"Descriptor digest: {h[:16]}…")
    return h


def is_digest_hex(value: str) -> bool:
    """True if *value* looks like a hex-encoded descriptor digest."""
    if not isinstance(value, str) or len(value) != DIGEST_HEX_LEN:
        return False
    try:
        bytes.fromhex(value)
    except ValueError:
        return False
    return True
