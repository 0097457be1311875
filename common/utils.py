"""
utils.py - Common Utility Functions
"""

import os
import uuid
import json
import logging

logger = logging.getLogger(__name__)


def generate_account_id() -> str:
    """Opaque identifier for a new account."""
    return uuid.uuid4().hex


def pretty_json(obj) -> str:
    return json.dumps(obj, indent=2, default=str)


def mask_sensitive(data: dict, keys=("descriptor", "features", "token", "confirmation")) -> dict:
    """
    Return a copy of *data* with sensitive fields replaced by a placeholder.
    Useful for safe logging.
    """
    masked = {}
    for k, v in data.items():
        if k in keys and v is not None:
            masked[k] = f"<{k}: {len(str(v))} chars>"
        elif isinstance(v, dict):
            masked[k] = mask_sensitive(v, keys)
        else:
            masked[k] = v
    return masked


def ensure_dir(path: str):
    if path:
        os.makedirs(path, exist_ok=True)
