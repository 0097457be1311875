"""
database.py - Append-only Ledger Storage (SQLite)

Tables:
  entries      - hash-chained identity entries (account_key, digest)
  budgets      - remaining transaction budget per submitter
  audit_logs   - request event log

Entries are only ever inserted.  Each entry carries the hash of the previous
one, so any rewrite of history breaks verify_chain().
"""

import hashlib
import logging
import os
import sqlite3

from server.config import GENESIS_HASH, TX_BUDGET

logger = logging.getLogger(__name__)

DB_PATH = os.environ.get("LEDGER_DB_PATH", os.path.join(os.path.dirname(__file__), "ledger.db"))


class AccountTaken(Exception):
    """account_key already has an entry on the ledger."""

    def __init__(self, account_key: str, digest: str):
        self.account_key = account_key
        self.digest = digest
        super().__init__(f"Account '{account_key}' already on ledger")


class BudgetExhausted(Exception):
    def __init__(self, submitter: str, balance: int, cost: int):
        self.submitter = submitter
        self.balance = balance
        self.cost = cost
        super().__init__(f"Submitter '{submitter}' has {balance}, needs {cost}")


def get_connection() -> sqlite3.Connection:
    conn = sqlite3.connect(DB_PATH, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode = WAL;")
    return conn


def init_db():
    """Create tables if they don't already exist."""
    with get_connection() as conn:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS entries (
                height       INTEGER PRIMARY KEY AUTOINCREMENT,
                account_key  TEXT NOT NULL UNIQUE,
                digest       TEXT NOT NULL,
                submitter    TEXT NOT NULL,
                prev_hash    TEXT NOT NULL,
                entry_hash   TEXT NOT NULL,
                timestamp    INTEGER NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_entries_digest ON entries(digest);

            CREATE TABLE IF NOT EXISTS budgets (
                submitter   TEXT PRIMARY KEY,
                balance     INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS audit_logs (
                id          INTEGER PRIMARY KEY AUTOINCREMENT,
                account_key TEXT,
                event_type  TEXT,         -- 'register' | 'rejected' | 'verify' | 'exists'
                detail      TEXT,
                timestamp   INTEGER,
                client_ip   TEXT
            );
        """)
    logger.info("Ledger database initialised.")


# ─────────────────────────────────────────────
# HASH CHAIN
# ─────────────────────────────────────────────
def compute_entry_hash(prev_hash: str, height: int, account_key: str,
                       digest: str, submitter: str, timestamp: int) -> str:
    material = "|".join([prev_hash, str(height), account_key, digest, submitter, str(timestamp)])
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def _tip(conn: sqlite3.Connection):
    row = conn.execute(
        "SELECT height, entry_hash FROM entries ORDER BY height DESC LIMIT 1"
    ).fetchone()
    if row is None:
        return 0, GENESIS_HASH
    return row["height"], row["entry_hash"]


def append_entry(account_key: str, digest: str, submitter: str, cost: int, timestamp: int) -> dict:
    """
    Charge *submitter* and append one entry, atomically.

    Raises AccountTaken if the account already has an entry and
    BudgetExhausted if the submitter cannot pay *cost*.
    """
    conn = get_connection()
    try:
        conn.execute("BEGIN IMMEDIATE")
        existing = conn.execute(
            "SELECT digest FROM entries WHERE account_key=?", (account_key,)
        ).fetchone()
        if existing is not None:
            raise AccountTaken(account_key, existing["digest"])

        balance = _balance(conn, submitter)
        if balance < cost:
            raise BudgetExhausted(submitter, balance, cost)

        height, prev_hash = _tip(conn)
        height += 1
        entry_hash = compute_entry_hash(prev_hash, height, account_key, digest, submitter, timestamp)
        conn.execute(
            """INSERT INTO entries(height, account_key, digest, submitter, prev_hash, entry_hash, timestamp)
               VALUES(?,?,?,?,?,?,?)""",
            (height, account_key, digest, submitter, prev_hash, entry_hash, timestamp),
        )
        conn.execute("UPDATE budgets SET balance=? WHERE submitter=?", (balance - cost, submitter))
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()

    logger.info(f"Entry #{height} appended for '{account_key}' by '{submitter}'")
    return {
        "height": height,
        "account_key": account_key,
        "digest": digest,
        "submitter": submitter,
        "prev_hash": prev_hash,
        "entry_hash": entry_hash,
        "timestamp": timestamp,
    }


def digest_exists(digest: str) -> bool:
    with get_connection() as conn:
        row = conn.execute("SELECT 1 FROM entries WHERE digest=? LIMIT 1", (digest,)).fetchone()
    return row is not None


def account_exists(account_key: str) -> bool:
    with get_connection() as conn:
        row = conn.execute("SELECT 1 FROM entries WHERE account_key=?", (account_key,)).fetchone()
    return row is not None


def chain_height() -> int:
    with get_connection() as conn:
        return _tip(conn)[0]


def get_entries(limit: int = 50) -> list:
    with get_connection() as conn:
        rows = conn.execute(
            "SELECT * FROM entries ORDER BY height DESC LIMIT ?", (limit,)
        ).fetchall()
    return [dict(r) for r in rows]


def verify_chain() -> dict:
    """Recompute every entry hash from genesis; report the first break."""
    prev_hash = GENESIS_HASH
    checked = 0
    with get_connection() as conn:
        rows = conn.execute("SELECT * FROM entries ORDER BY height ASC").fetchall()
    for row in rows:
        expected = compute_entry_hash(prev_hash, row["height"], row["account_key"],
                                      row["digest"], row["submitter"], row["timestamp"])
        if row["prev_hash"] != prev_hash or row["entry_hash"] != expected:
            return {"valid": False, "broken_at": row["height"], "checked": checked}
        prev_hash = row["entry_hash"]
        checked += 1
    return {"valid": True, "broken_at": None, "checked": checked}


# ─────────────────────────────────────────────
# BUDGETS
# ─────────────────────────────────────────────
def _balance(conn: sqlite3.Connection, submitter: str) -> int:
    row = conn.execute("SELECT balance FROM budgets WHERE submitter=?", (submitter,)).fetchone()
    return row["balance"] if row is not None else 0


def ensure_submitter(submitter: str, initial_budget: int = TX_BUDGET):
    with get_connection() as conn:
        conn.execute(
            "INSERT OR IGNORE INTO budgets(submitter, balance) VALUES(?,?)",
            (submitter, initial_budget),
        )


def get_balance(submitter: str) -> int:
    with get_connection() as conn:
        return _balance(conn, submitter)


# ─────────────────────────────────────────────
# AUDIT LOG
# ─────────────────────────────────────────────
def log_event(account_key: str, event_type: str, timestamp: int,
              detail: str = "", client_ip: str = ""):
    with get_connection() as conn:
        conn.execute(
            """INSERT INTO audit_logs(account_key, event_type, detail, timestamp, client_ip)
               VALUES(?,?,?,?,?)""",
            (account_key, event_type, detail, timestamp, client_ip),
        )


def get_audit_logs(account_key: str = None, limit: int = 50) -> list:
    query = "SELECT * FROM audit_logs"
    params: tuple = ()
    if account_key:
        query += " WHERE account_key=?"
        params = (account_key,)
    query += " ORDER BY id DESC LIMIT ?"
    params += (limit,)
    with get_connection() as conn:
        rows = conn.execute(query, params).fetchall()
    return [dict(r) for r in rows]
