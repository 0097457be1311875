"""
api.py - Ledger Node REST API (Flask)

The ledger only ever sees descriptor digests, never raw descriptors.  It can
tell whether an exact digest or an account_key is on the chain; it cannot do
approximate face matching.

  GET  /api/health                          chain height + network
  POST /api/token                           short-lived JWT for a submitter
  POST /api/identities                      append (account_key, digest)  [JWT]
  GET  /api/identities/verify/<digest>      exact digest lookup
  GET  /api/identities/exists/<account_key> account lookup
  GET  /api/chain                           latest entries
  GET  /api/chain/verify                    recompute the hash chain
  GET  /api/logs                            audit log
"""

import logging
import time
import uuid
from functools import wraps

from flask import Flask, request, jsonify, g
import jwt as pyjwt

from common.codec import is_digest_hex
from server import database as db
from server.certs import generate_tls_cert
from server.config import (
    JWT_SECRET_KEY, JWT_ALGORITHM, JWT_EXPIRY_SEC,
    SERVER_HOST, SERVER_PORT, CERT_FILE, KEY_FILE,
    NONCE_TTL_SEC, DEBUG, USE_HTTPS, NETWORK_NAME, TX_COST,
)

logger = logging.getLogger("ledger_api")

app = Flask(__name__)
used_nonces: dict = {}


# ─── HELPERS ──────────────────────────────────────────────────────────────────

def _purge_expired_nonces():
    now = time.time()
    expired = [k for k, v in used_nonces.items() if v < now]
    for k in expired:
        del used_nonces[k]


def _issue_token(submitter: str) -> str:
    payload = {
        "sub": submitter,
        "iat": int(time.time()),
        "exp": int(time.time()) + JWT_EXPIRY_SEC,
        "nonce": str(uuid.uuid4()),
    }
    return pyjwt.encode(payload, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)


def _verify_token(token: str) -> dict:
    payload = pyjwt.decode(token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
    nonce = payload.get("nonce", "")
    _purge_expired_nonces()
    if nonce in used_nonces:
        raise ValueError("Replay detected: nonce already used.")
    used_nonces[nonce] = payload["exp"] + NONCE_TTL_SEC
    return payload


def _issue_confirmation(entry: dict) -> str:
    """Signed receipt handed back to the submitter for an appended entry."""
    payload = {
        "sub": entry["account_key"],
        "height": entry["height"],
        "entry_hash": entry["entry_hash"],
        "digest": entry["digest"],
        "network": NETWORK_NAME,
        "iat": entry["timestamp"],
    }
    return pyjwt.encode(payload, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)


def require_jwt(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            return jsonify({"error": "Missing or malformed Authorization header"}), 401
        token = auth_header[7:]
        try:
            payload = _verify_token(token)
            g.submitter = payload["sub"]
        except pyjwt.ExpiredSignatureError:
            return jsonify({"error": "Token expired"}), 401
        except (pyjwt.InvalidTokenError, ValueError) as e:
            return jsonify({"error": f"Token invalid: {str(e)}"}), 401
        return f(*args, **kwargs)
    return decorated


def client_ip() -> str:
    return request.remote_addr or ""


# ─── ROUTES ───────────────────────────────────────────────────────────────────

@app.route("/api/health", methods=["GET"])
def health():
    return jsonify({
        "status": "ok",
        "network": NETWORK_NAME,
        "height": db.chain_height(),
        "timestamp": int(time.time()),
    }), 200


@app.route("/api/token", methods=["POST"])
def issue_token():
    data = request.get_json(force=True, silent=True) or {}
    submitter = str(data.get("submitter", "")).strip()
    if not submitter:
        return jsonify({"error": "submitter required"}), 400
    db.ensure_submitter(submitter)
    token = _issue_token(submitter)
    logger.info(f"[TOKEN] Issued for '{submitter}' from {client_ip()}")
    return jsonify({"token": token, "expires_in": JWT_EXPIRY_SEC}), 200


@app.route("/api/identities", methods=["POST"])
@require_jwt
def register_identity():
    data = request.get_json(force=True, silent=True) or {}
    account_key = str(data.get("account_key", ""))
    digest = str(data.get("digest", "")).lower()
    if not account_key or not is_digest_hex(digest):
        return jsonify({"error": "account_key and a 64-char hex digest required"}), 400

    now = int(time.time())
    try:
        entry = db.append_entry(account_key, digest, g.submitter, TX_COST, now)
    except db.AccountTaken as e:
        db.log_event(account_key, "rejected", now, "account taken", client_ip())
        logger.warning(f"[REGISTER] '{account_key}' already on ledger")
        return jsonify({
            "error": "Account already registered",
            "digest_matches": e.digest == digest,
        }), 409
    except db.BudgetExhausted as e:
        db.log_event(account_key, "rejected", now, "budget exhausted", client_ip())
        logger.warning(f"[REGISTER] {e}")
        return jsonify({
            "error": "Insufficient transaction budget",
            "balance": e.balance,
            "cost": e.cost,
        }), 402

    db.log_event(account_key, "register", now, f"height={entry['height']}", client_ip())
    logger.info(f"[REGISTER] '{account_key}' at height {entry['height']}")
    return jsonify({
        "confirmation": _issue_confirmation(entry),
        "height": entry["height"],
        "entry_hash": entry["entry_hash"],
    }), 201


@app.route("/api/identities/verify/<digest>", methods=["GET"])
def verify_identity(digest: str):
    digest = digest.lower()
    if not is_digest_hex(digest):
        return jsonify({"error": "digest must be 64 hex chars"}), 400
    verified = db.digest_exists(digest)
    db.log_event(None, "verify", int(time.time()), f"verified={verified}", client_ip())
    return jsonify({"verified": verified}), 200


@app.route("/api/identities/exists/<path:account_key>", methods=["GET"])
def identity_exists(account_key: str):
    exists = db.account_exists(account_key)
    db.log_event(account_key, "exists", int(time.time()), f"exists={exists}", client_ip())
    return jsonify({"exists": exists}), 200


@app.route("/api/chain", methods=["GET"])
def chain():
    limit = request.args.get("limit", 50, type=int)
    entries = db.get_entries(limit=limit)
    return jsonify({"entries": entries, "count": len(entries), "height": db.chain_height()}), 200


@app.route("/api/chain/verify", methods=["GET"])
def chain_verify():
    return jsonify(db.verify_chain()), 200


@app.route("/api/logs", methods=["GET"])
def audit_logs():
    account_key = request.args.get("account_key")
    limit = request.args.get("limit", 50, type=int)
    logs = db.get_audit_logs(account_key=account_key, limit=limit)
    return jsonify({"logs": logs, "count": len(logs)}), 200


# ─── ERROR HANDLERS ───────────────────────────────────────────────────────────

@app.errorhandler(404)
def not_found(e):
    return jsonify({"error": "Endpoint not found"}), 404


@app.errorhandler(500)
def internal(e):
    logger.exception("Internal server error")
    return jsonify({"error": "Internal server error"}), 500


# ─── STARTUP ──────────────────────────────────────────────────────────────────

def main():
    logging.basicConfig(
        level=logging.INFO,
        format="[%(asctime)s] [%(levelname)s] %(name)s - %(message)s",
        datefmt="%H:%M:%S",
    )
    db.init_db()
    ssl_context = None
    if USE_HTTPS:
        generate_tls_cert()
        ssl_context = (CERT_FILE, KEY_FILE)
        protocol = "https"
        logger.info(f"TLS enabled - using {CERT_FILE}")
    else:
        protocol = "http"
        logger.info("Running in HTTP mode")

    logger.info(f"Ledger network '{NETWORK_NAME}' at height {db.chain_height()}")
    logger.info(f"API health check: {protocol}://{SERVER_HOST}:{SERVER_PORT}/api/health")
    app.run(host=SERVER_HOST, port=SERVER_PORT, ssl_context=ssl_context, debug=DEBUG)


if __name__ == "__main__":
    main()
