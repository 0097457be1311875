"""
ledger_backend.py - Ledger Backend

LedgerClient is the HTTP client for the ledger node.  LedgerBackend wraps
any object with the same four methods and bounds every call with a timeout:
the blocking call runs in a worker thread and races a timer, whichever
settles first wins.  A timeout is reported as BackendUnavailable, never as
a yes/no answer.
"""

import asyncio
import logging
from urllib.parse import quote

import requests

from client.config import (
    LEDGER_URL, LEDGER_TIMEOUT_SEC, LEDGER_SUBMITTER, LEDGER_VERIFY_TLS,
)
from common.errors import (
    BackendError, BackendUnavailable, DuplicateAccount, InsufficientResources,
)
from common.models import LedgerStatus

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────
# HTTP CLIENT (external collaborator)
# ──────────────────────────────────────────────
class LedgerClient:
    """Blocking client for the ledger node REST API."""

    def __init__(self, base_url: str = LEDGER_URL, submitter: str = LEDGER_SUBMITTER,
                 session: requests.Session = None, verify_tls: bool = LEDGER_VERIFY_TLS,
                 request_timeout: float = LEDGER_TIMEOUT_SEC):
        self.base_url = base_url.rstrip("/")
        self.submitter = submitter
        self.session = session or requests.Session()
        self.verify_tls = verify_tls
        self.request_timeout = request_timeout

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(
                method, url, verify=self.verify_tls, timeout=self.request_timeout, **kwargs
            )
        except requests.exceptions.RequestException as e:
            raise BackendUnavailable("Cannot reach ledger node",
                                     {"url": url, "reason": e.__class__.__name__}) from e
        if resp.status_code >= 500:
            raise BackendUnavailable("Ledger node error", {"url": url, "status": resp.status_code})
        return resp

    @staticmethod
    def _json(resp: requests.Response) -> dict:
        try:
            return resp.json()
        except ValueError as e:
            raise BackendUnavailable("Ledger node sent a malformed response",
                                     {"status": resp.status_code}) from e

    def _token(self) -> str:
        resp = self._request("POST", "/api/token", json={"submitter": self.submitter})
        if resp.status_code != 200:
            raise BackendUnavailable("Ledger refused to issue a token", {"status": resp.status_code})
        return self._json(resp)["token"]

    def register_identity(self, account_key: str, digest: str) -> str:
        """Append (account_key, digest); returns the ledger confirmation token."""
        token = self._token()
        resp = self._request(
            "POST", "/api/identities",
            json={"account_key": account_key, "digest": digest},
            headers={"Authorization": f"Bearer {token}"},
        )
        body = self._json(resp)
        if resp.status_code == 201:
            return body["confirmation"]
        if resp.status_code == 402:
            raise InsufficientResources(
                "Insufficient transaction budget on ledger",
                {"balance": body.get("balance"), "cost": body.get("cost")},
            )
        if resp.status_code == 409:
            err = DuplicateAccount(account_key, "ledger")
            err.context["digest_matches"] = bool(body.get("digest_matches"))
            raise err
        raise BackendUnavailable("Ledger rejected the registration",
                                 {"status": resp.status_code, "error": body.get("error")})

    def verify_identity(self, digest: str) -> bool:
        resp = self._request("GET", f"/api/identities/verify/{digest}")
        if resp.status_code != 200:
            raise BackendUnavailable("Ledger verify failed", {"status": resp.status_code})
        return bool(self._json(resp)["verified"])

    def identity_exists(self, account_key: str) -> bool:
        resp = self._request("GET", f"/api/identities/exists/{quote(account_key, safe='')}")
        if resp.status_code != 200:
            raise BackendUnavailable("Ledger lookup failed", {"status": resp.status_code})
        return bool(self._json(resp)["exists"])

    def status(self) -> dict:
        resp = self._request("GET", "/api/health")
        if resp.status_code != 200:
            raise BackendUnavailable("Ledger health check failed", {"status": resp.status_code})
        return self._json(resp)


# ──────────────────────────────────────────────
# ASYNC BACKEND ADAPTER
# ──────────────────────────────────────────────
class LedgerBackend:
    """Authoritative backend; digest-exact only, possibly unreachable."""

    name = "ledger"

    def __init__(self, client, timeout: float = LEDGER_TIMEOUT_SEC):
        self.client = client
        self.timeout = timeout

    async def _call(self, op: str, fn, *args):
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Ledger {op} timed out after {self.timeout}s")
            raise BackendUnavailable("Ledger call timed out",
                                     {"op": op, "timeout": self.timeout}) from None

    async def register_identity(self, account_key: str, digest: str) -> str:
        return await self._call("register", self.client.register_identity, account_key, digest)

    async def verify_identity(self, digest: str) -> bool:
        return await self._call("verify", self.client.verify_identity, digest)

    async def identity_exists_by_account(self, account_key: str) -> bool:
        return await self._call("exists", self.client.identity_exists, account_key)

    async def status(self) -> LedgerStatus:
        try:
            info = await self._call("status", self.client.status)
        except BackendError as e:
            return LedgerStatus(reachable=False, error=str(e))
        return LedgerStatus(reachable=True, height=info.get("height"), network=info.get("network"))
