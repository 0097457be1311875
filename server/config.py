"""
config.py - Ledger Node Configuration
"""

import os
import secrets

# ─────────────────────────────────────────────
# JWT CONFIG
# ─────────────────────────────────────────────
JWT_SECRET_KEY = os.environ.get("JWT_SECRET", secrets.token_hex(32))
JWT_ALGORITHM  = "HS256"
JWT_EXPIRY_SEC = 300       # 5 minutes

# ─────────────────────────────────────────────
# SERVER
# ─────────────────────────────────────────────
SERVER_HOST = os.environ.get("LEDGER_HOST", "127.0.0.1")
SERVER_PORT = int(os.environ.get("LEDGER_PORT", "5000"))
DEBUG       = False

# ─────────────────────────────────────────────
# TLS - set LEDGER_USE_HTTPS=true to serve HTTPS with a self-signed cert
# ─────────────────────────────────────────────
USE_HTTPS = os.environ.get("LEDGER_USE_HTTPS", "false").lower() == "true"
CERT_DIR  = os.path.join(os.path.dirname(__file__), "certs")
CERT_FILE = os.path.join(CERT_DIR, "server.crt")
KEY_FILE  = os.path.join(CERT_DIR, "server.key")

# ─────────────────────────────────────────────
# LEDGER PARAMS
# ─────────────────────────────────────────────
NETWORK_NAME = os.environ.get("LEDGER_NETWORK", "local-devnet")
TX_BUDGET    = int(os.environ.get("LEDGER_TX_BUDGET", "1000"))   # per submitter
TX_COST      = int(os.environ.get("LEDGER_TX_COST", "10"))       # per registration
GENESIS_HASH = "0" * 64

# ─────────────────────────────────────────────
# SECURITY PARAMS
# ─────────────────────────────────────────────
NONCE_TTL_SEC = 60
