# herbionyx/services/ledger/ledger_gateway.py
"""
Client side of the ledger contract.

Two calls, both single-attempt:
  invoke(function, args) -> TransactionReceipt   (raises TransactionError)
  query(function, args)  -> data                  (raises NotFoundError / QueryError)

Wire shape on both endpoints:
  request  {"function": str, "args": [str, ...]}
  response {"success": bool, "data"?: any, "error"?: str}

Retrying is the caller's business; see RetryingLedgerGateway.
"""

from __future__ import annotations

import logging
import secrets
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

import requests

from herbionyx.errors import (
    LedgerError,
    LedgerTimeoutError,
    NotFoundError,
    QueryError,
    TransactionError,
)

logger = logging.getLogger(__name__)

# -------------------------------------------------------------------
# Chaincode function names
# -------------------------------------------------------------------
FN_CREATE_BATCH = "CreateBatch"
FN_CREATE_COLLECTION = "CreateCollectionEvent"
FN_CREATE_QUALITY_TEST = "CreateQualityTestEvent"
FN_CREATE_PROCESSING = "CreateProcessingEvent"
FN_CREATE_MANUFACTURING = "CreateManufacturingEvent"
FN_GET_BATCH = "GetBatch"
FN_GET_BATCH_EVENTS = "GetBatchEvents"
FN_GET_PROVENANCE = "GetProvenance"

STAGE_INVOKE_FUNCTIONS = {
    "collection": FN_CREATE_COLLECTION,
    "quality-test": FN_CREATE_QUALITY_TEST,
    "processing": FN_CREATE_PROCESSING,
    "manufacturing": FN_CREATE_MANUFACTURING,
}

_NOT_FOUND_MARKERS = ("not found", "does not exist")


# -------------------------------------------------------------------
# Receipts & session log
# -------------------------------------------------------------------
@dataclass
class TransactionReceipt:
    id: str
    function: str
    args: List[str]
    timestamp: str
    status: str                         # "success" | "failed"
    blockNumber: Optional[Any] = None   # opaque ledger sequence marker
    data: Any = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def new_receipt(
    function: str,
    args: Sequence[str],
    status: str,
    block_number: Any = None,
    data: Any = None,
    error: Optional[str] = None,
) -> TransactionReceipt:
    return TransactionReceipt(
        id=f"tx_{int(time.time() * 1000)}_{secrets.token_hex(4)}",
        function=function,
        args=list(args),
        timestamp=datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
        status=status,
        blockNumber=block_number,
        data=data,
        error=error,
    )


@dataclass
class LedgerSession:
    """
    Transaction log owned by one caller (a consumer verification, a
    collector's minting session...). Newest receipt first.
    """

    session_id: str = field(default_factory=lambda: f"ls_{uuid.uuid4().hex[:12]}")
    network_status: str = "connected"
    transactions: List[TransactionReceipt] = field(default_factory=list)

    def record(self, receipt: TransactionReceipt) -> None:
        self.transactions.insert(0, receipt)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "networkStatus": self.network_status,
            "transactions": [t.to_dict() for t in self.transactions],
        }


class LedgerGateway(Protocol):
    session: LedgerSession

    def invoke(self, function_name: str, args: Sequence[Any]) -> TransactionReceipt:
        ...

    def query(self, function_name: str, args: Sequence[Any]) -> Any:
        ...


def wire_args(args: Sequence[Any]) -> List[str]:
    return [a if isinstance(a, str) else str(a) for a in (args or [])]


def looks_not_found(message: Optional[str]) -> bool:
    m = (message or "").lower()
    return any(marker in m for marker in _NOT_FOUND_MARKERS)


def _safe_json(resp: requests.Response) -> Optional[Dict[str, Any]]:
    """JSON dict if the body is JSON, else None (HTML gateway pages etc.)."""
    try:
        data = resp.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else {"success": True, "data": data}


def _block_marker(body: Dict[str, Any]) -> Any:
    inner = body.get("data")
    if isinstance(inner, dict) and inner.get("blockNumber") is not None:
        return inner.get("blockNumber")
    return body.get("blockNumber")


# -------------------------------------------------------------------
# HTTP gateway
# -------------------------------------------------------------------
class HttpLedgerGateway:
    """Talks to the ledger's REST bridge (/api/fabric/invoke, /api/fabric/query)."""

    def __init__(
        self,
        base_url: str,
        session: Optional[LedgerSession] = None,
        timeout: float = 20,
        http: Optional[requests.Session] = None,
    ):
        if not base_url:
            raise ValueError("ledger base_url is required")
        self.base_url = base_url.rstrip("/")
        self.session = session or LedgerSession()
        self.timeout = timeout
        self.http = http or requests.Session()

    def _post(self, path: str, function_name: str, args: List[str]) -> requests.Response:
        url = f"{self.base_url}{path}"
        return self.http.post(url, json={"function": function_name, "args": args}, timeout=self.timeout)

    # -------------------------
    # invoke
    # -------------------------
    def invoke(self, function_name: str, args: Sequence[Any]) -> TransactionReceipt:
        wire = wire_args(args)
        logger.info("Invoking chaincode function: %s %s", function_name, wire)

        try:
            resp = self._post("/api/fabric/invoke", function_name, wire)
        except requests.RequestException as e:
            self.session.network_status = "disconnected"
            reason = f"transport failure invoking {function_name}: {e}"
            receipt = new_receipt(function_name, wire, "failed", error=reason)
            self.session.record(receipt)
            logger.error(reason)
            raise TransactionError(reason, receipt=receipt, transport=True) from e

        self.session.network_status = "connected"
        body = _safe_json(resp)

        if body is None or resp.status_code >= 400 or not body.get("success"):
            if body is None:
                snippet = (resp.text or "").strip().replace("\n", " ")[:240]
                reason = f"ledger returned non-JSON response ({resp.status_code}) for {function_name}: {snippet}"
            else:
                reason = str(body.get("error") or f"ledger rejected {function_name} ({resp.status_code})")
            receipt = new_receipt(function_name, wire, "failed", error=reason)
            self.session.record(receipt)
            logger.error("Chaincode invocation error: %s", reason)
            raise TransactionError(reason, receipt=receipt, transport=resp.status_code in (502, 503, 504))

        receipt = new_receipt(
            function_name,
            wire,
            "success",
            block_number=_block_marker(body),
            data=body.get("data"),
        )
        self.session.record(receipt)
        return receipt

    # -------------------------
    # query
    # -------------------------
    def query(self, function_name: str, args: Sequence[Any]) -> Any:
        wire = wire_args(args)
        logger.info("Querying chaincode function: %s %s", function_name, wire)

        try:
            resp = self._post("/api/fabric/query", function_name, wire)
        except requests.Timeout as e:
            self.session.network_status = "disconnected"
            raise LedgerTimeoutError(f"ledger query {function_name} timed out: {e}", transport=True) from e
        except requests.RequestException as e:
            self.session.network_status = "disconnected"
            raise QueryError(f"ledger unreachable for {function_name}: {e}", transport=True) from e

        self.session.network_status = "connected"
        body = _safe_json(resp)

        if resp.status_code == 404 and (body is None or not body.get("success")):
            reason = (body or {}).get("error") or f"{function_name}{wire} not found"
            raise NotFoundError(str(reason))

        if body is None:
            snippet = (resp.text or "").strip().replace("\n", " ")[:240]
            raise QueryError(
                f"ledger returned non-JSON response ({resp.status_code}) for {function_name}: {snippet}",
                transport=resp.status_code in (502, 503, 504),
            )

        if resp.status_code >= 400 or not body.get("success"):
            reason = str(body.get("error") or f"ledger query {function_name} failed ({resp.status_code})")
            # a 5xx is the ledger failing, whatever its message says
            if resp.status_code < 500 and looks_not_found(reason):
                raise NotFoundError(reason)
            raise QueryError(reason, transport=resp.status_code in (502, 503, 504))

        data = body.get("data")
        if data is None:
            raise NotFoundError(f"{function_name}{wire} returned no data")
        return data


# -------------------------------------------------------------------
# Caller-side retry policy
# -------------------------------------------------------------------
class RetryingLedgerGateway:
    """
    Wraps another gateway and retries transport failures only.
    Not-found answers and ledger rejections are returned straight away.
    Invokes are not retried unless retry_invokes=True (a retried write can
    land twice if the first one actually reached the ledger).
    """

    def __init__(
        self,
        inner: LedgerGateway,
        max_retries: int = 3,
        backoff: float = 0.6,
        retry_invokes: bool = False,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.inner = inner
        self.max_retries = max(1, int(max_retries))
        self.backoff = backoff
        self.retry_invokes = retry_invokes
        self._sleep = sleep

    @property
    def session(self) -> LedgerSession:
        return self.inner.session

    def _attempt(self, call: Callable[[], Any], label: str) -> Any:
        for attempt in range(1, self.max_retries + 1):
            try:
                return call()
            except LedgerError as e:
                if not e.transport or attempt == self.max_retries:
                    raise
                delay = self.backoff * (2 ** (attempt - 1))
                logger.warning("%s failed (attempt %d/%d): %s; retrying in %.1fs",
                               label, attempt, self.max_retries, e.reason, delay)
                self._sleep(delay)

    def invoke(self, function_name: str, args: Sequence[Any]) -> TransactionReceipt:
        if not self.retry_invokes:
            return self.inner.invoke(function_name, args)
        return self._attempt(lambda: self.inner.invoke(function_name, args), function_name)

    def query(self, function_name: str, args: Sequence[Any]) -> Any:
        return self._attempt(lambda: self.inner.query(function_name, args), function_name)
