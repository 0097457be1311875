"""
config.py - Client / Engine Configuration

Defaults only.  The engine receives its backends and policy values as
constructor arguments; these constants are what the CLI wires in.
"""

import os

# ─────────────────────────────────────────────
# DESCRIPTORS & MATCHING
# ─────────────────────────────────────────────
DESCRIPTOR_DIM  = int(os.environ.get("DESCRIPTOR_DIM", "128"))
MATCH_THRESHOLD = float(os.environ.get("MATCH_THRESHOLD", "0.5"))   # strict <

# ─────────────────────────────────────────────
# LEDGER NODE
# ─────────────────────────────────────────────
LEDGER_URL         = os.environ.get("LEDGER_URL", "http://127.0.0.1:5000")
LEDGER_TIMEOUT_SEC = float(os.environ.get("LEDGER_TIMEOUT_SEC", "2.0"))
LEDGER_SUBMITTER   = os.environ.get("LEDGER_SUBMITTER", "local-wallet")
LEDGER_VERIFY_TLS  = os.environ.get("LEDGER_VERIFY_TLS", "false").lower() == "true"

# ─────────────────────────────────────────────
# LOCAL STORE
# ─────────────────────────────────────────────
LOCAL_STORE_PATH = os.environ.get(
    "LOCAL_STORE_PATH",
    os.path.join(os.path.dirname(__file__), "identity_store.json"),
)
