"""
test_ledger_node.py - Ledger Node Tests
Tests for: Flask ledger API, append-only hash chain, transaction budget,
LedgerClient over HTTP, engine end-to-end against the node
"""

import sys
import os
import sqlite3
import tempfile
import unittest
from urllib.parse import urlsplit

from cryptography import x509
from cryptography.x509.oid import NameOID
import jwt as pyjwt
import requests
from requests.adapters import BaseAdapter
from requests.structures import CaseInsensitiveDict

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from client.engine import IdentityResolutionEngine
from client.ledger_backend import LedgerBackend, LedgerClient
from client.local_store import LocalStoreBackend
from common import codec
from common.errors import BackendUnavailable, DuplicateAccount, DuplicateBiometric, InsufficientResources
from common.models import Backend, RegisteredOn
from server import api
from server import database as db
from server.certs import generate_tls_cert
from server.config import JWT_SECRET_KEY, JWT_ALGORITHM, TX_BUDGET, TX_COST

DIM = 128
LEDGER_BASE = "http://ledger.test"


def vec(*head, dim=DIM):
    values = list(head) + [0.0] * (dim - len(head))
    return codec.validate_descriptor(values, dim)


class FlaskAdapter(BaseAdapter):
    """Routes requests.Session traffic into a Flask test client."""

    def __init__(self, app):
        super().__init__()
        self.client = app.test_client()

    def send(self, request, **kwargs):
        url = urlsplit(request.url)
        path = url.path + (f"?{url.query}" if url.query else "")
        headers = {k: v for k, v in request.headers.items() if k.lower() != "content-length"}
        resp = self.client.open(path, method=request.method, data=request.body, headers=headers)

        out = requests.Response()
        out.status_code = resp.status_code
        out._content = resp.get_data()
        out.headers = CaseInsensitiveDict(resp.headers.items())
        out.encoding = "utf-8"
        out.url = request.url
        out.request = request
        return out

    def close(self):
        pass


class LedgerNodeTestCase(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self._orig_db = db.DB_PATH
        db.DB_PATH = os.path.join(self.tmp.name, "ledger.db")
        db.init_db()
        api.used_nonces.clear()
        api.app.config["TESTING"] = True
        self.http = api.app.test_client()

    def tearDown(self):
        db.DB_PATH = self._orig_db
        self.tmp.cleanup()

    def token(self, submitter="wallet-1"):
        resp = self.http.post("/api/token", json={"submitter": submitter})
        self.assertEqual(resp.status_code, 200)
        return resp.get_json()["token"]

    def register(self, account_key, digest, submitter="wallet-1", token=None):
        token = token or self.token(submitter)
        return self.http.post(
            "/api/identities",
            json={"account_key": account_key, "digest": digest},
            headers={"Authorization": f"Bearer {token}"},
        )

    def ledger_client(self, submitter="wallet-1"):
        session = requests.Session()
        session.mount(LEDGER_BASE, FlaskAdapter(api.app))
        return LedgerClient(base_url=LEDGER_BASE, submitter=submitter, session=session)


# ─────────────────────────────────────────────
class TestLedgerApi(LedgerNodeTestCase):

    def test_health_reports_height(self):
        body = self.http.get("/api/health").get_json()
        self.assertEqual(body["status"], "ok")
        self.assertEqual(body["height"], 0)
        self.register("a@x.com", codec.digest_hex(vec(0.1)))
        self.assertEqual(self.http.get("/api/health").get_json()["height"], 1)

    def test_register_requires_token(self):
        resp = self.http.post("/api/identities",
                              json={"account_key": "a@x.com", "digest": "0" * 64})
        self.assertEqual(resp.status_code, 401)

    def test_token_cannot_be_replayed(self):
        token = self.token()
        self.assertEqual(self.register("a@x.com", "1" * 64, token=token).status_code, 201)
        self.assertEqual(self.register("b@y.com", "2" * 64, token=token).status_code, 401)

    def test_register_returns_signed_confirmation(self):
        digest = codec.digest_hex(vec(0.1))
        resp = self.register("a@x.com", digest)
        self.assertEqual(resp.status_code, 201)
        receipt = pyjwt.decode(resp.get_json()["confirmation"], JWT_SECRET_KEY,
                               algorithms=[JWT_ALGORITHM])
        self.assertEqual(receipt["sub"], "a@x.com")
        self.assertEqual(receipt["digest"], digest)
        self.assertEqual(receipt["height"], 1)

    def test_rejects_malformed_digest(self):
        self.assertEqual(self.register("a@x.com", "not-a-digest").status_code, 400)

    def test_duplicate_account_conflict(self):
        digest = codec.digest_hex(vec(0.1))
        self.register("a@x.com", digest)
        same = self.register("a@x.com", digest)
        other = self.register("a@x.com", codec.digest_hex(vec(0.2)))
        self.assertEqual(same.status_code, 409)
        self.assertTrue(same.get_json()["digest_matches"])
        self.assertFalse(other.get_json()["digest_matches"])

    def test_ledger_does_not_check_biometric_uniqueness(self):
        digest = codec.digest_hex(vec(0.1))
        self.assertEqual(self.register("a@x.com", digest).status_code, 201)
        self.assertEqual(self.register("b@y.com", digest).status_code, 201)

    def test_budget_is_charged_and_enforced(self):
        self.register("a@x.com", "1" * 64)
        self.assertEqual(db.get_balance("wallet-1"), TX_BUDGET - TX_COST)
        db.ensure_submitter("empty-wallet", 0)
        resp = self.register("b@y.com", "2" * 64, submitter="empty-wallet")
        self.assertEqual(resp.status_code, 402)
        self.assertFalse(db.account_exists("b@y.com"))

    def test_verify_and_exists(self):
        digest = codec.digest_hex(vec(0.1))
        self.register("a@x.com", digest)
        self.assertTrue(self.http.get(f"/api/identities/verify/{digest}").get_json()["verified"])
        other = codec.digest_hex(vec(0.2))
        self.assertFalse(self.http.get(f"/api/identities/verify/{other}").get_json()["verified"])
        self.assertTrue(self.http.get("/api/identities/exists/a@x.com").get_json()["exists"])
        self.assertFalse(self.http.get("/api/identities/exists/A@x.com").get_json()["exists"])

    def test_audit_log_records_events(self):
        self.register("a@x.com", "1" * 64)
        self.register("a@x.com", "1" * 64)
        events = [e["event_type"] for e in self.http.get("/api/logs?account_key=a@x.com").get_json()["logs"]]
        self.assertEqual(events, ["rejected", "register"])

    def test_unknown_endpoint(self):
        self.assertEqual(self.http.get("/api/nope").status_code, 404)


# ─────────────────────────────────────────────
class TestHashChain(LedgerNodeTestCase):

    def test_chain_links_entries(self):
        for i in range(3):
            self.register(f"user{i}@x.com", str(i) * 64)
        entries = sorted(self.http.get("/api/chain").get_json()["entries"], key=lambda e: e["height"])
        self.assertEqual(entries[0]["prev_hash"], "0" * 64)
        self.assertEqual(entries[1]["prev_hash"], entries[0]["entry_hash"])
        self.assertEqual(entries[2]["prev_hash"], entries[1]["entry_hash"])
        self.assertEqual(self.http.get("/api/chain/verify").get_json(),
                         {"valid": True, "broken_at": None, "checked": 3})

    def test_rewritten_history_is_detected(self):
        for i in range(3):
            self.register(f"user{i}@x.com", str(i) * 64)
        conn = sqlite3.connect(db.DB_PATH)
        with conn:
            conn.execute("UPDATE entries SET digest=? WHERE height=2", ("f" * 64,))
        conn.close()
        result = db.verify_chain()
        self.assertFalse(result["valid"])
        self.assertEqual(result["broken_at"], 2)


# ─────────────────────────────────────────────
class TestLedgerClient(LedgerNodeTestCase):

    def test_register_verify_exists(self):
        client = self.ledger_client()
        digest = codec.digest_hex(vec(0.1))
        confirmation = client.register_identity("a@x.com", digest)
        self.assertTrue(confirmation)
        self.assertTrue(client.verify_identity(digest))
        self.assertTrue(client.identity_exists("a@x.com"))
        self.assertFalse(client.identity_exists("b@y.com"))
        self.assertEqual(client.status()["height"], 1)

    def test_conflict_maps_to_duplicate_account(self):
        client = self.ledger_client()
        digest = codec.digest_hex(vec(0.1))
        client.register_identity("a@x.com", digest)
        with self.assertRaises(DuplicateAccount) as ctx:
            client.register_identity("a@x.com", digest)
        self.assertTrue(ctx.exception.context["digest_matches"])

    def test_budget_maps_to_insufficient_resources(self):
        db.ensure_submitter("empty-wallet", 0)
        client = self.ledger_client(submitter="empty-wallet")
        with self.assertRaises(InsufficientResources):
            client.register_identity("a@x.com", "1" * 64)

    def test_unreachable_node(self):
        client = LedgerClient(base_url="http://127.0.0.1:9", request_timeout=0.5)
        with self.assertRaises(BackendUnavailable):
            client.identity_exists("a@x.com")


# ─────────────────────────────────────────────
class TestEngineAgainstNode(LedgerNodeTestCase, unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        super().setUp()
        self.ledger = LedgerBackend(self.ledger_client(), timeout=5.0)

    def engine(self, name="store.json"):
        local = LocalStoreBackend(os.path.join(self.tmp.name, name)).load()
        return IdentityResolutionEngine(self.ledger, local)

    async def test_register_and_login(self):
        engine = self.engine()
        outcome = await engine.register("a@x.com", vec(0.1))
        self.assertIs(outcome.registered_on, RegisteredOn.LEDGER)
        self.assertTrue(db.account_exists("a@x.com"))

        exact = await engine.verify("a@x.com", vec(0.1))
        self.assertIs(exact.confirmed_by, Backend.LEDGER)
        noisy = await engine.verify("a@x.com", vec(0.13))
        self.assertIs(noisy.confirmed_by, Backend.LOCAL)

    async def test_second_device_sees_ledger_records(self):
        await self.engine("device1.json").register("a@x.com", vec(0.1))
        device2 = self.engine("device2.json")
        self.assertTrue(await device2.account_exists("a@x.com"))
        with self.assertRaises(DuplicateBiometric):
            await device2.register("b@y.com", vec(0.1))

    async def test_out_of_budget_falls_back_then_syncs(self):
        db.ensure_submitter("wallet-2", 0)
        local = LocalStoreBackend(os.path.join(self.tmp.name, "poor.json")).load()
        poor = LedgerBackend(self.ledger_client(submitter="wallet-2"), timeout=5.0)
        engine = IdentityResolutionEngine(poor, local)

        outcome = await engine.register("c@z.com", vec(0.7))
        self.assertTrue(outcome.local_only)
        self.assertFalse(db.account_exists("c@z.com"))

        conn = sqlite3.connect(db.DB_PATH)
        with conn:
            conn.execute("UPDATE budgets SET balance=100 WHERE submitter='wallet-2'")
        conn.close()
        report = await engine.sync_pending()
        self.assertEqual(report.upgraded, ["c@z.com"])
        self.assertTrue(db.account_exists("c@z.com"))

    async def test_unreachable_ledger_registers_locally(self):
        local = LocalStoreBackend(os.path.join(self.tmp.name, "offline.json")).load()
        offline = LedgerBackend(LedgerClient(base_url="http://127.0.0.1:9", request_timeout=0.5),
                                timeout=2.0)
        engine = IdentityResolutionEngine(offline, local)
        outcome = await engine.register("c@z.com", vec(0.7))
        self.assertTrue(outcome.local_only)
        self.assertTrue((await engine.verify("c@z.com", vec(0.7))).verified)
        self.assertFalse((await engine.ledger_status()).reachable)


# ─────────────────────────────────────────────
class TestTlsCert(unittest.TestCase):

    def test_generates_once(self):
        with tempfile.TemporaryDirectory() as tmp:
            cert_file = os.path.join(tmp, "certs", "server.crt")
            key_file = os.path.join(tmp, "certs", "server.key")
            self.assertTrue(generate_tls_cert(cert_file, key_file))
            self.assertFalse(generate_tls_cert(cert_file, key_file))
            with open(cert_file, "rb") as f:
                cert = x509.load_pem_x509_certificate(f.read())
            cn = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value
            self.assertEqual(cn, "127.0.0.1")

    def test_san_follows_common_name(self):
        with tempfile.TemporaryDirectory() as tmp:
            cert_file = os.path.join(tmp, "node.crt")
            self.assertTrue(generate_tls_cert(cert_file, os.path.join(tmp, "node.key"),
                                              common_name="ledger.local", extra_hosts=("10.0.0.7",)))
            with open(cert_file, "rb") as f:
                cert = x509.load_pem_x509_certificate(f.read())
            san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
            self.assertEqual(san.get_values_for_type(x509.DNSName), ["ledger.local"])
            self.assertEqual([str(ip) for ip in san.get_values_for_type(x509.IPAddress)], ["10.0.0.7"])


# ─────────────────────────────────────────────
if __name__ == "__main__":
    unittest.main(verbosity=2)
