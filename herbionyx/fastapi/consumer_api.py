# herbionyx/fastapi/consumer_api.py
# Consumer portal API: scan string in, verified (or provisional) journey out.

from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from herbionyx import app_config
from herbionyx.ledger import GatewayFactory, make_gateway_factory
from herbionyx.services.ledger.ledger_gateway import LedgerSession
from herbionyx.services.provenance.provenance_service import ProvenanceAssembler
from herbionyx.services.qr.scan_sources import StaticScanSource
from herbionyx.services.verification.orchestrator import VerificationOrchestrator

router = APIRouter(prefix="/api/v1/consumer", tags=["consumer"])

_factory: Optional[GatewayFactory] = None


def get_gateway_factory() -> GatewayFactory:
    global _factory
    if _factory is None:
        _factory = make_gateway_factory()
    return _factory


# ==========================================================
# MODELS
# ==========================================================
class VerifyRequest(BaseModel):
    data: str = Field(..., description="Raw string read from the QR code")


# ==========================================================
# ROUTES
# ==========================================================
@router.post("/verify")
async def verify(req: VerifyRequest, factory: GatewayFactory = Depends(get_gateway_factory)) -> Dict[str, Any]:
    """
    One full scan -> decode -> query -> present pass. Always 200: the
    outcome (including errors) is in `state` / `error`, as the portal
    renders it.
    """
    session = LedgerSession()
    orchestrator = VerificationOrchestrator(
        ProvenanceAssembler(factory(session)),
        query_timeout=app_config.LEDGER_QUERY_TIMEOUT,
        allow_provisional=app_config.ALLOW_PROVISIONAL,
    )
    view = await orchestrator.verify(StaticScanSource(req.data))

    return {
        "ok": view.error is None,
        **view.to_dict(),
        "session": session.to_dict(),
    }


@router.get("/_health")
def _health():
    return {"ok": True, "service": "consumer-api", "ts": int(datetime.now().timestamp())}
