# herbionyx/services/ledger/memory_gateway.py
"""
In-process stand-in for the ledger, speaking the same invoke/query contract
as HttpLedgerGateway. Used for local runs (LEDGER_BACKEND=memory) and tests.
"""

from __future__ import annotations

import copy
import json
import threading
import uuid
from typing import Any, Dict, Iterable, List, Optional, Sequence

from herbionyx.errors import NotFoundError, QueryError, TransactionError
from herbionyx.services.ledger.ledger_gateway import (
    FN_CREATE_BATCH,
    FN_GET_BATCH,
    FN_GET_BATCH_EVENTS,
    FN_GET_PROVENANCE,
    STAGE_INVOKE_FUNCTIONS,
    LedgerSession,
    TransactionReceipt,
    wire_args,
    new_receipt,
)

_INVOKE_STAGE_TYPES = {fn: stage for stage, fn in STAGE_INVOKE_FUNCTIONS.items()}


class InMemoryLedgerGateway:
    def __init__(self, session: Optional[LedgerSession] = None):
        self.session = session or LedgerSession()
        self._lock = threading.Lock()
        self._batches: Dict[str, Dict[str, Any]] = {}
        self._events: Dict[str, List[Dict[str, Any]]] = {}
        self._block_ref = [1000]   # shared with bound views

    def bind(self, session: LedgerSession) -> "InMemoryLedgerGateway":
        """Same ledger contents, different caller-owned transaction log."""
        other = InMemoryLedgerGateway(session=session)
        other._lock = self._lock
        other._batches = self._batches
        other._events = self._events
        other._block_ref = self._block_ref
        return other

    # -------------------------
    # seeding helpers
    # -------------------------
    def seed_batch(self, batch: Dict[str, Any], events: Iterable[Dict[str, Any]] = ()) -> None:
        batch_id = batch["batchId"]
        with self._lock:
            self._batches[batch_id] = copy.deepcopy(batch)
            self._events.setdefault(batch_id, []).extend(copy.deepcopy(list(events)))

    # -------------------------
    # invoke
    # -------------------------
    def invoke(self, function_name: str, args: Sequence[Any]) -> TransactionReceipt:
        wire = wire_args(args)
        try:
            data = self._apply(function_name, wire)
        except TransactionError as e:
            receipt = new_receipt(function_name, wire, "failed", error=e.reason)
            self.session.record(receipt)
            e.receipt = receipt
            raise

        with self._lock:
            self._block_ref[0] += 1
            block = self._block_ref[0]
        receipt = new_receipt(function_name, wire, "success", block_number=block, data=data)
        self.session.record(receipt)
        return receipt

    def _apply(self, function_name: str, wire: List[str]) -> Dict[str, Any]:
        if function_name == FN_CREATE_BATCH:
            batch = self._json_arg(function_name, wire, 0)
            batch_id = batch.get("batchId")
            if not batch_id:
                raise TransactionError(f"{function_name}: batchId is required")
            with self._lock:
                if batch_id in self._batches:
                    raise TransactionError(f"{function_name}: batch {batch_id} already exists")
                self._batches[batch_id] = batch
                self._events.setdefault(batch_id, [])
            return {"batchId": batch_id}

        stage_type = _INVOKE_STAGE_TYPES.get(function_name)
        if stage_type is None:
            raise TransactionError(f"unknown chaincode function {function_name}")

        if not wire:
            raise TransactionError(f"{function_name}: batchId is required")
        batch_id = wire[0]
        event = self._json_arg(function_name, wire, 1)
        event.setdefault("type", stage_type)
        event.setdefault("eventId", f"EVT_{uuid.uuid4().hex[:12].upper()}")

        with self._lock:
            if batch_id not in self._batches:
                raise TransactionError(f"{function_name}: batch {batch_id} not found")
            self._events.setdefault(batch_id, []).append(event)
        return {"batchId": batch_id, "eventId": event["eventId"]}

    @staticmethod
    def _json_arg(function_name: str, wire: List[str], idx: int) -> Dict[str, Any]:
        try:
            value = json.loads(wire[idx])
        except (IndexError, ValueError) as e:
            raise TransactionError(f"{function_name}: argument {idx} must be a JSON object") from e
        if not isinstance(value, dict):
            raise TransactionError(f"{function_name}: argument {idx} must be a JSON object")
        return value

    # -------------------------
    # query
    # -------------------------
    def query(self, function_name: str, args: Sequence[Any]) -> Any:
        wire = wire_args(args)
        if not wire:
            raise QueryError(f"{function_name}: batchId is required")
        batch_id = wire[0]

        with self._lock:
            batch = self._batches.get(batch_id)
            events = self._events.get(batch_id, [])
            if batch is None:
                raise NotFoundError(f"batch {batch_id} not found")

            if function_name == FN_GET_BATCH:
                return copy.deepcopy(batch)
            if function_name == FN_GET_BATCH_EVENTS:
                return copy.deepcopy(events)
            if function_name == FN_GET_PROVENANCE:
                out = copy.deepcopy(batch)
                out["journey"] = copy.deepcopy(events)
                return out

        raise QueryError(f"unknown chaincode function {function_name}")
