# herbionyx/services/verification/orchestrator.py
"""
Consumer verification flow: scan -> decode -> query -> present.

    IDLE --start_scan--> SCANNING --payload--> DECODING --ok--> QUERYING --ok--> PRESENTING
                                                   |                  |
                                                   +------ fail ------+--> ERROR
    reset() from anywhere -> IDLE

Only one attempt is live at a time. Every start_scan()/reset() bumps the
generation; a result that comes back for an older generation is dropped
instead of being applied. Ledger calls are left to finish on their thread,
nothing is aborted mid-flight.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from herbionyx.errors import (
    HerbionyxError,
    InvalidTransitionError,
    LedgerTimeoutError,
    NotFoundError,
    ScanError,
    StructureError,
    ValidationError,
)
from herbionyx.models.provenance.provenance_models import Batch
from herbionyx.services.provenance.provenance_service import ProvenanceAssembler
from herbionyx.services.provenance.provisional import build_provisional_batch
from herbionyx.services.qr.qr_service import QRService
from herbionyx.services.qr.scan_sources import FutureScanSource, ScanSource

logger = logging.getLogger(__name__)

executor = ThreadPoolExecutor(max_workers=5)

DEFAULT_QUERY_TIMEOUT = 10.0


class VerificationState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    DECODING = "decoding"
    QUERYING = "querying"
    PRESENTING = "presenting"
    ERROR = "error"


_ALLOWED = {
    VerificationState.IDLE: {VerificationState.SCANNING},
    VerificationState.SCANNING: {VerificationState.SCANNING, VerificationState.DECODING, VerificationState.ERROR},
    VerificationState.DECODING: {VerificationState.SCANNING, VerificationState.QUERYING, VerificationState.ERROR},
    VerificationState.QUERYING: {VerificationState.SCANNING, VerificationState.PRESENTING, VerificationState.ERROR},
    VerificationState.PRESENTING: set(),
    VerificationState.ERROR: set(),
}


@dataclass
class VerificationView:
    state: VerificationState = VerificationState.IDLE
    generation: int = 0
    raw: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    batch: Optional[Batch] = None
    provisional: bool = False
    notice: Optional[str] = None
    error: Optional[Dict[str, str]] = None
    updatedAt: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["state"] = self.state.value
        return out


Listener = Callable[[VerificationView], None]


class VerificationOrchestrator:
    def __init__(
        self,
        assembler: ProvenanceAssembler,
        codec: Any = QRService,
        query_timeout: float = DEFAULT_QUERY_TIMEOUT,
        allow_provisional: bool = True,
        provisional_factory: Callable[[str], Batch] = build_provisional_batch,
        pool: Optional[ThreadPoolExecutor] = None,
    ):
        self.assembler = assembler
        self.codec = codec
        self.query_timeout = query_timeout
        self.allow_provisional = allow_provisional
        self.provisional_factory = provisional_factory
        self.pool = pool or executor

        self._view = VerificationView()
        self._generation = 0
        self._source: Optional[ScanSource] = None
        self._task: Optional[asyncio.Task] = None
        self._listeners: List[Listener] = []

    # -------------------------
    # observation
    # -------------------------
    @property
    def state(self) -> VerificationState:
        return self._view.state

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def view(self) -> VerificationView:
        return self._view

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._view)
            except Exception:
                logger.exception("verification listener failed")

    # -------------------------
    # transitions
    # -------------------------
    def _move(self, gen: int, new_state: VerificationState, **changes: Any) -> bool:
        """Apply a transition for attempt `gen`; stale attempts are ignored."""
        if gen != self._generation:
            logger.debug("dropping %s from stale attempt %d (current %d)", new_state.value, gen, self._generation)
            return False
        if new_state not in _ALLOWED[self._view.state]:
            raise InvalidTransitionError(f"cannot move from {self._view.state.value} to {new_state.value}")

        self._view = replace(
            self._view,
            state=new_state,
            updatedAt=datetime.now(timezone.utc).isoformat(),
            **changes,
        )
        self._notify()
        return True

    def _fail(self, gen: int, err: HerbionyxError) -> None:
        if self._move(gen, VerificationState.ERROR, error=err.to_dict()):
            logger.warning("verification attempt %d failed (%s): %s", gen, err.kind, err.reason)

    # -------------------------
    # public actions
    # -------------------------
    def start_scan(self, source: Optional[ScanSource] = None) -> asyncio.Task:
        """
        Begin a new attempt. Any attempt still scanning, decoding or querying
        is superseded; its result will be discarded when it arrives.
        Without a source, a push-style source is created and fed through
        payload_received().
        """
        loop = asyncio.get_running_loop()
        state = self._view.state
        if VerificationState.SCANNING not in _ALLOWED[state]:
            raise InvalidTransitionError(f"cannot start a scan while {state.value}; reset first")

        self._release_source()
        self._generation += 1
        gen = self._generation
        self._source = source or FutureScanSource()

        self._view = VerificationView(state=VerificationState.SCANNING, generation=gen)
        self._notify()

        self._task = loop.create_task(self._run(gen, self._source))
        self._task.add_done_callback(functools.partial(self._attempt_done, gen))
        return self._task

    def _attempt_done(self, gen: int, task: asyncio.Task) -> None:
        """Collect the outcome of every attempt, superseded ones included."""
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        logger.error("verification attempt %d crashed", gen, exc_info=exc)
        if gen == self._generation and self._view.state not in (VerificationState.PRESENTING, VerificationState.ERROR):
            self._fail(gen, HerbionyxError(f"unexpected failure: {exc}"))

    def payload_received(self, raw: str) -> bool:
        if self._view.state != VerificationState.SCANNING:
            raise InvalidTransitionError(f"no scan in progress (state={self._view.state.value})")
        if not isinstance(self._source, FutureScanSource):
            raise InvalidTransitionError("current scan source does not accept pushed payloads")
        return self._source.deliver(raw)

    def reset(self) -> None:
        self._release_source()
        self._generation += 1
        self._source = None
        self._task = None
        self._view = VerificationView(state=VerificationState.IDLE, generation=self._generation)
        self._notify()

    async def verify(self, source: ScanSource) -> VerificationView:
        """Run one attempt to completion and return the final view."""
        task = self.start_scan(source)
        # failures are collected by _attempt_done and end up in the view
        await asyncio.wait({task})
        return self._view

    def _release_source(self) -> None:
        if isinstance(self._source, FutureScanSource):
            self._source.cancel()

    # -------------------------
    # pipeline
    # -------------------------
    async def _run(self, gen: int, source: ScanSource) -> None:
        try:
            raw = await source.read()
        except asyncio.CancelledError:
            if gen != self._generation:
                return
            raise
        except Exception as e:
            self._fail(gen, ScanError(f"scan failed: {e}"))
            return

        if not self._move(gen, VerificationState.DECODING, raw=raw):
            return

        try:
            payload = self.codec.decode(raw)
        except ValidationError as e:
            self._fail(gen, e)
            return

        batch_id = payload.batch_reference()
        if not batch_id:
            self._fail(gen, StructureError("QR payload carries no batch reference"))
            return

        if not self._move(gen, VerificationState.QUERYING, payload=payload.to_wire()):
            return

        loop = asyncio.get_running_loop()
        try:
            batch = await asyncio.wait_for(
                loop.run_in_executor(self.pool, self.assembler.assemble, batch_id),
                timeout=self.query_timeout,
            )
        except asyncio.TimeoutError:
            self._fail(gen, LedgerTimeoutError(f"timeout: ledger did not answer within {self.query_timeout:g}s"))
            return
        except NotFoundError as e:
            if gen != self._generation:
                return
            if not self.allow_provisional:
                self._fail(gen, e)
                return
            self._move(
                gen,
                VerificationState.PRESENTING,
                batch=self.provisional_factory(batch_id),
                provisional=True,
                notice=f"Provisional data: no ledger record for batch {batch_id}. Not verified.",
            )
            return
        except HerbionyxError as e:
            self._fail(gen, e)
            return

        self._move(gen, VerificationState.PRESENTING, batch=batch, provisional=batch.provisional)
