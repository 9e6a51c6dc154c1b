import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor

import anyio
import pytest

from herbionyx.errors import InvalidTransitionError, QueryError
from herbionyx.services.ledger.ledger_gateway import HttpLedgerGateway, LedgerSession
from herbionyx.services.provenance.provenance_service import ProvenanceAssembler
from herbionyx.services.qr.qr_service import QRService
from herbionyx.services.qr.scan_sources import FutureScanSource, StaticScanSource
from herbionyx.services.verification.orchestrator import VerificationOrchestrator, VerificationState

pytestmark = pytest.mark.anyio


def minted(batch_id, qr_type="final-product"):
    return QRService.mint({"type": qr_type, "batchId": batch_id}, render=False).data


class GatedGateway:
    """Holds queries for one batch until the test opens the gate."""

    def __init__(self, inner, gated_batch):
        self.inner = inner
        self.session = inner.session
        self.gated_batch = gated_batch
        self.gate = threading.Event()

    def query(self, function_name, args):
        if args and args[0] == self.gated_batch:
            self.gate.wait(5)
        return self.inner.query(function_name, args)

    def invoke(self, function_name, args):
        return self.inner.invoke(function_name, args)


class FailingSource:
    async def read(self):
        raise RuntimeError("camera unavailable")


@pytest.fixture
def pool():
    p = ThreadPoolExecutor(max_workers=4)
    yield p
    p.shutdown(wait=False)


@pytest.fixture
def orchestrator(gateway, pool):
    return VerificationOrchestrator(ProvenanceAssembler(gateway), pool=pool)


async def wait_for_state(orch, state):
    with anyio.fail_after(3):
        while orch.state != state:
            await anyio.sleep(0.01)


# ---------------------------------------------------------------------------
# happy path and failures
# ---------------------------------------------------------------------------
async def test_verify_presents_ledger_batch(orchestrator):
    seen = []
    orchestrator.subscribe(lambda view: seen.append(view.state))

    view = await orchestrator.verify(StaticScanSource(minted("BATCH_001")))

    assert view.state is VerificationState.PRESENTING
    assert view.batch.batchId == "BATCH_001"
    assert view.provisional is False
    assert view.notice is None
    assert view.error is None
    assert view.payload["batchId"] == "BATCH_001"
    assert seen == [
        VerificationState.SCANNING,
        VerificationState.DECODING,
        VerificationState.QUERYING,
        VerificationState.PRESENTING,
    ]


async def test_view_to_dict_is_plain(orchestrator):
    view = await orchestrator.verify(StaticScanSource(minted("BATCH_001")))
    out = view.to_dict()

    assert out["state"] == "presenting"
    assert out["batch"]["journey"][0]["stageType"] == "collection"
    json.dumps(out)


async def test_undecodable_scan_is_an_error(orchestrator):
    view = await orchestrator.verify(StaticScanSource("definitely not a qr payload"))

    assert view.state is VerificationState.ERROR
    assert view.error["kind"] == "parse"
    assert view.raw == "definitely not a qr payload"
    assert view.batch is None


async def test_foreign_network_is_an_error(orchestrator):
    raw = json.dumps({"id": "QR_1", "type": "collection", "batchId": "B", "network": "elsewhere"})
    view = await orchestrator.verify(StaticScanSource(raw))
    assert view.error["kind"] == "network_mismatch"


async def test_payload_without_batch_reference_is_an_error(orchestrator):
    raw = json.dumps({"id": "QR_1", "type": "unknown", "network": "herbionyx"})
    view = await orchestrator.verify(StaticScanSource(raw))

    assert view.state is VerificationState.ERROR
    assert view.error["kind"] == "structure"


async def test_scan_failure_is_an_error(orchestrator):
    view = await orchestrator.verify(FailingSource())

    assert view.state is VerificationState.ERROR
    assert view.error["kind"] == "scan"
    assert "camera unavailable" in view.error["reason"]


async def test_unknown_batch_gets_provisional_data(orchestrator):
    view = await orchestrator.verify(StaticScanSource(minted("BATCH_DOES_NOT_EXIST")))

    assert view.state is VerificationState.PRESENTING
    assert view.provisional is True
    assert view.batch.provisional is True
    assert view.batch.batchId == "BATCH_DOES_NOT_EXIST"
    assert "Not verified" in view.notice
    assert view.error is None


async def test_unknown_batch_without_provisional_fallback(gateway, pool):
    orch = VerificationOrchestrator(ProvenanceAssembler(gateway), allow_provisional=False, pool=pool)

    view = await orch.verify(StaticScanSource(minted("BATCH_DOES_NOT_EXIST")))

    assert view.state is VerificationState.ERROR
    assert view.error["kind"] == "not_found"
    assert view.batch is None


async def test_slow_ledger_times_out(gateway, pool):
    gated = GatedGateway(gateway, "BATCH_001")
    orch = VerificationOrchestrator(ProvenanceAssembler(gated), query_timeout=0.05, pool=pool)
    try:
        view = await orch.verify(StaticScanSource(minted("BATCH_001")))
    finally:
        gated.gate.set()

    assert view.state is VerificationState.ERROR
    assert view.error["kind"] == "timeout"
    assert view.error["reason"].startswith("timeout")
    assert view.provisional is False


async def test_deeply_nested_scan_is_a_parse_error(orchestrator):
    raw = '{"a":' * 100_000 + "1" + "}" * 100_000

    view = await orchestrator.verify(StaticScanSource(raw))

    assert view.state is VerificationState.ERROR
    assert view.error["kind"] == "parse"


class OutageResponse:
    status_code = 503
    text = '{"success":false}'

    def json(self):
        return {"success": False, "error": "dial tcp: lookup peer0.org1.herbionyx.com: no such host"}


class OutageHttp:
    def post(self, url, json=None, timeout=None):
        return OutageResponse()


async def test_ledger_outage_is_an_error_not_provisional(pool):
    gw = HttpLedgerGateway("http://ledger.local", session=LedgerSession(), http=OutageHttp())
    orch = VerificationOrchestrator(ProvenanceAssembler(gw), pool=pool)

    view = await orch.verify(StaticScanSource(minted("BATCH_001")))

    assert view.state is VerificationState.ERROR
    assert view.error["kind"] == "query"
    assert view.provisional is False
    assert view.batch is None
    assert view.notice is None


class UnreachableGateway:
    session = None

    def query(self, function_name, args):
        raise QueryError("ledger unreachable", transport=True)

    def invoke(self, function_name, args):
        raise AssertionError("verification never writes")


async def test_unreachable_ledger_is_an_error(pool):
    orch = VerificationOrchestrator(ProvenanceAssembler(UnreachableGateway()), pool=pool)

    view = await orch.verify(StaticScanSource(minted("BATCH_001")))

    assert view.state is VerificationState.ERROR
    assert view.error["kind"] == "query"
    assert view.error["reason"] == "ledger unreachable"
    assert view.provisional is False
    assert view.batch is None


async def test_malformed_ledger_record_is_an_error(ledger_store, orchestrator):
    ledger_store.seed_batch(
        {"batchId": "BATCH_BAD", "productName": "Broken"},
        [{"type": "collection", "timestamp": "2024-01-01T00:00:00Z"}],
    )

    view = await orchestrator.verify(StaticScanSource(minted("BATCH_BAD")))

    assert view.state is VerificationState.ERROR
    assert view.error["kind"] == "malformed_record"
    assert "organization" in view.error["reason"]
    assert view.provisional is False
    assert view.batch is None


class CrashingCodec:
    @staticmethod
    def decode(raw):
        raise RuntimeError("codec bug")


async def test_unexpected_crash_ends_in_error(gateway, pool, caplog):
    orch = VerificationOrchestrator(ProvenanceAssembler(gateway), codec=CrashingCodec, pool=pool)

    with caplog.at_level(logging.ERROR, logger="herbionyx.services.verification.orchestrator"):
        view = await orch.verify(StaticScanSource(minted("BATCH_001")))

    assert view.state is VerificationState.ERROR
    assert view.error["kind"] == "error"
    assert "codec bug" in view.error["reason"]
    assert "crashed" in caplog.text


def test_start_scan_outside_event_loop_leaves_state_alone(orchestrator):
    with pytest.raises(RuntimeError):
        orchestrator.start_scan(StaticScanSource(minted("BATCH_001")))

    assert orchestrator.state is VerificationState.IDLE
    assert orchestrator.generation == 0


# ---------------------------------------------------------------------------
# one live attempt at a time
# ---------------------------------------------------------------------------
async def test_newer_attempt_wins_over_stale_query(ledger_store, gateway, pool):
    ledger_store.seed_batch(
        {"batchId": "BATCH_SLOW", "productName": "Slow"},
        [{"type": "collection", "timestamp": "2024-01-01T00:00:00Z", "organization": "Org"}],
    )
    gated = GatedGateway(gateway, "BATCH_SLOW")
    orch = VerificationOrchestrator(ProvenanceAssembler(gated), pool=pool)

    first = orch.start_scan(StaticScanSource(minted("BATCH_SLOW")))
    await wait_for_state(orch, VerificationState.QUERYING)

    second = orch.start_scan(StaticScanSource(minted("BATCH_001")))
    await second
    assert orch.state is VerificationState.PRESENTING
    assert orch.view.batch.batchId == "BATCH_001"

    gated.gate.set()
    await first

    assert orch.generation == 2
    assert orch.view.batch.batchId == "BATCH_001"
    assert orch.view.generation == 2


async def test_rescan_while_scanning_drops_the_old_source(orchestrator):
    first = orchestrator.start_scan()
    second = orchestrator.start_scan(StaticScanSource(minted("BATCH_001")))

    await second
    await first

    assert orchestrator.state is VerificationState.PRESENTING
    assert orchestrator.view.generation == 2


async def test_payload_received_feeds_the_pending_scan(orchestrator):
    task = orchestrator.start_scan()
    raw = minted("BATCH_001", "collection")

    assert orchestrator.payload_received(raw) is True
    assert orchestrator.payload_received(raw) is False
    await task

    assert orchestrator.state is VerificationState.PRESENTING
    assert orchestrator.view.payload["type"] == "collection"


async def test_payload_received_without_scan(orchestrator):
    with pytest.raises(InvalidTransitionError):
        orchestrator.payload_received(minted("BATCH_001"))


async def test_payload_received_needs_push_source(orchestrator):
    task = orchestrator.start_scan(StaticScanSource(minted("BATCH_001"), delay=0.05))
    with pytest.raises(InvalidTransitionError):
        orchestrator.payload_received("x")
    await task


async def test_reset_during_scan_returns_to_idle(orchestrator):
    task = orchestrator.start_scan()
    orchestrator.reset()
    await task

    assert orchestrator.state is VerificationState.IDLE
    assert orchestrator.generation == 2


async def test_finished_attempt_needs_reset_before_rescan(orchestrator):
    await orchestrator.verify(StaticScanSource(minted("BATCH_001")))

    with pytest.raises(InvalidTransitionError):
        orchestrator.start_scan(StaticScanSource(minted("BATCH_001")))

    orchestrator.reset()
    assert orchestrator.state is VerificationState.IDLE
    assert orchestrator.view.batch is None

    view = await orchestrator.verify(StaticScanSource(minted("BATCH_DOES_NOT_EXIST")))
    assert view.provisional is True


async def test_broken_listener_does_not_stop_the_flow(orchestrator):
    def boom(view):
        raise RuntimeError("listener bug")

    orchestrator.subscribe(boom)
    view = await orchestrator.verify(StaticScanSource(minted("BATCH_001")))
    assert view.state is VerificationState.PRESENTING


async def test_unsubscribe(orchestrator):
    seen = []
    unsubscribe = orchestrator.subscribe(lambda view: seen.append(view.state))
    unsubscribe()
    await orchestrator.verify(StaticScanSource(minted("BATCH_001")))
    assert seen == []


async def test_future_source_cancel_before_read():
    source = FutureScanSource()
    source.cancel()
    assert source.deliver("late") is False
