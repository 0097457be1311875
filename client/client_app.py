"""
client_app.py - Client Application Interface
Orchestrates registration and face login against the ledger node with the
local store as fallback.

Usage:
  python -m client.client_app enroll  --user alice@example.com
  python -m client.client_app auth    --user alice@example.com
  python -m client.client_app exists  --user alice@example.com
  python -m client.client_app list
  python -m client.client_app sync
  python -m client.client_app status

--face SEED picks which simulated face to capture (defaults to --user), so
  enroll --user bob@example.com --face alice@example.com
shows the duplicate-face rejection.
"""

import argparse
import asyncio
import logging
import sys

from client.capture import capture_descriptor
from client.config import LEDGER_URL, LEDGER_TIMEOUT_SEC, LEDGER_SUBMITTER, LOCAL_STORE_PATH
from client.engine import IdentityResolutionEngine
from client.ledger_backend import LedgerBackend, LedgerClient
from client.local_store import LocalStoreBackend
from common.errors import RegistrationError, StorageError
from common.utils import mask_sensitive, pretty_json

logger = logging.getLogger(__name__)


def build_engine(ledger_url: str = LEDGER_URL, store_path: str = LOCAL_STORE_PATH,
                 timeout: float = LEDGER_TIMEOUT_SEC) -> IdentityResolutionEngine:
    client = LedgerClient(base_url=ledger_url, submitter=LEDGER_SUBMITTER)
    ledger = LedgerBackend(client, timeout=timeout)
    local = LocalStoreBackend(store_path).load()
    return IdentityResolutionEngine(ledger, local)


def _capture(args):
    descriptor = capture_descriptor(args.face or args.user, use_simulation=not args.webcam)
    if descriptor is None:
        logger.error("No face detected – try again.")
        sys.exit(2)
    logger.info(f"✔ Descriptor captured ({len(descriptor)}-D)")
    return descriptor


# ──────────────────────────────────────────────
# COMMANDS
# ──────────────────────────────────────────────
async def enroll(engine: IdentityResolutionEngine, args) -> int:
    logger.info("=" * 55)
    logger.info(f"REGISTRATION  (account='{args.user}')")
    logger.info("=" * 55)
    descriptor = _capture(args)
    try:
        outcome = await engine.register(args.user, descriptor)
    except RegistrationError as e:
        logger.error(f"✘ {e.message}")
        return 1
    print(pretty_json(mask_sensitive(outcome.to_dict())))
    if outcome.local_only:
        logger.warning("Ledger unavailable – stored locally, run 'sync' later.")
    return 0


async def authenticate(engine: IdentityResolutionEngine, args) -> int:
    logger.info("=" * 55)
    logger.info(f"FACE LOGIN  (account='{args.user}')")
    logger.info("=" * 55)
    descriptor = _capture(args)
    outcome = await engine.verify(args.user, descriptor)
    print(pretty_json(outcome.to_dict()))
    return 0 if outcome.verified else 1


async def exists(engine: IdentityResolutionEngine, args) -> int:
    found = await engine.account_exists(args.user)
    print(f"{args.user}: {'registered' if found else 'not registered'}")
    return 0


async def list_users(engine: IdentityResolutionEngine, args) -> int:
    records = engine.list_identities()
    if not records:
        print("No identities stored locally.")
        return 0
    print("Locally stored identities:")
    for r in records:
        print(f"  • {r.account_key:<32} {r.registered_on.value:<10} digest={r.digest[:12]}…")
    return 0


async def sync(engine: IdentityResolutionEngine, args) -> int:
    report = await engine.sync_pending()
    print(pretty_json(report.to_dict()))
    return 0 if not report.still_pending else 1


async def status(engine: IdentityResolutionEngine, args) -> int:
    st = await engine.ledger_status()
    print(pretty_json(st.to_dict()))
    return 0 if st.reachable else 1


COMMANDS = {
    "enroll": enroll,
    "auth": authenticate,
    "exists": exists,
    "list": list_users,
    "sync": sync,
    "status": status,
}


# ──────────────────────────────────────────────
# CLI
# ──────────────────────────────────────────────
def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Face ledger identity client")
    parser.add_argument("--ledger", default=LEDGER_URL, help="ledger node base URL")
    parser.add_argument("--store", default=LOCAL_STORE_PATH, help="local identity store path")
    parser.add_argument("--timeout", type=float, default=LEDGER_TIMEOUT_SEC)
    sub = parser.add_subparsers(dest="cmd")

    for name, text in (("enroll", "Register a new account"), ("auth", "Face login")):
        p = sub.add_parser(name, help=text)
        p.add_argument("--user", required=True, help="account key (e-mail)")
        p.add_argument("--face", help="simulated face seed (defaults to --user)")
        p.add_argument("--webcam", action="store_true")

    p_exists = sub.add_parser("exists", help="Check whether an account is registered")
    p_exists.add_argument("--user", required=True)

    sub.add_parser("list", help="List locally stored identities")
    sub.add_parser("sync", help="Push local-only registrations to the ledger")
    sub.add_parser("status", help="Ledger node connectivity")
    return parser


def main(argv=None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="[%(asctime)s] [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.cmd not in COMMANDS:
        parser.print_help()
        return 2

    try:
        engine = build_engine(args.ledger, args.store, args.timeout)
        return asyncio.run(COMMANDS[args.cmd](engine, args))
    except StorageError as e:
        logger.error(f"Local store failure: {e}")
        return 3


if __name__ == "__main__":
    sys.exit(main())
