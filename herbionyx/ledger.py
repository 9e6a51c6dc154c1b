# herbionyx/ledger.py
"""
Builds ledger gateways from configuration so routes and services never
construct HTTP clients themselves.

Also exposes init_ledger(app) used by app.py to attach the gateway factory
to the Flask app config.
"""

from __future__ import annotations

from typing import Any, Callable, Optional

from herbionyx import app_config
from herbionyx.services.ledger.ledger_gateway import (
    HttpLedgerGateway,
    LedgerGateway,
    LedgerSession,
    RetryingLedgerGateway,
)
from herbionyx.services.ledger.memory_gateway import InMemoryLedgerGateway

GatewayFactory = Callable[[Optional[LedgerSession]], LedgerGateway]

# one shared store for LEDGER_BACKEND=memory
_memory_ledger: Optional[InMemoryLedgerGateway] = None


def memory_ledger() -> InMemoryLedgerGateway:
    global _memory_ledger
    if _memory_ledger is None:
        _memory_ledger = InMemoryLedgerGateway()
        seed_demo_batch(_memory_ledger)
    return _memory_ledger


def make_gateway_factory(
    backend: str = app_config.LEDGER_BACKEND,
    base_url: str = app_config.LEDGER_API_BASE_URL,
    timeout: float = app_config.LEDGER_TIMEOUT,
    max_retries: int = app_config.LEDGER_MAX_RETRIES,
    store: Optional[InMemoryLedgerGateway] = None,
) -> GatewayFactory:
    """
    Returns a callable producing a gateway bound to a caller-owned session.
    Each verification gets its own session, so transaction logs never mix.
    """
    backend = (backend or "memory").lower()

    if backend == "memory":
        shared = store or memory_ledger()

        def _memory(session: Optional[LedgerSession] = None) -> LedgerGateway:
            return shared.bind(session or LedgerSession())

        return _memory

    if backend == "http":
        if not base_url:
            raise ValueError("LEDGER_API_BASE_URL is not set")

        def _http(session: Optional[LedgerSession] = None) -> LedgerGateway:
            gw = HttpLedgerGateway(base_url, session=session or LedgerSession(), timeout=timeout)
            if max_retries > 1:
                return RetryingLedgerGateway(gw, max_retries=max_retries)
            return gw

        return _http

    raise ValueError(f"unknown LEDGER_BACKEND {backend!r} (expected 'http' or 'memory')")


def init_ledger(app: Any, factory: Optional[GatewayFactory] = None) -> None:
    """
    Wire the gateway factory into Flask app.config.

    Called from app.py:
        from herbionyx.ledger import init_ledger
        init_ledger(app)
    """
    print("⧉ Initializing ledger gateway…")

    if factory is None:
        factory = make_gateway_factory(
            backend=app.config.get("LEDGER_BACKEND", app_config.LEDGER_BACKEND),
            base_url=app.config.get("LEDGER_API_BASE_URL", app_config.LEDGER_API_BASE_URL),
            timeout=app.config.get("LEDGER_TIMEOUT", app_config.LEDGER_TIMEOUT),
            max_retries=app.config.get("LEDGER_MAX_RETRIES", app_config.LEDGER_MAX_RETRIES),
        )
    app.config["LEDGER_GATEWAY_FACTORY"] = factory

    print("✓ Ledger gateway wired")
    print(f"  • Backend: {app.config.get('LEDGER_BACKEND')}")
    print(f"  • Base URL: {app.config.get('LEDGER_API_BASE_URL') or '-'}")


# -------------------------------------------------------------------
# Demo data for LEDGER_BACKEND=memory
# -------------------------------------------------------------------
def seed_demo_batch(ledger: InMemoryLedgerGateway) -> None:
    ledger.seed_batch(
        {
            "batchId": "BATCH_001",
            "productName": "Ashwagandha Root Powder",
            "species": "Withania somnifera",
            "manufacturingDate": "2024-03-20T09:00:00.000Z",
            "expiryDate": "2026-03-20T09:00:00.000Z",
            "qualityTests": {"moisture": 7.9, "pesticides": 0.004, "heavyMetals": 1.8},
        },
        [
            {
                "eventId": "EVT_MFG_001",
                "type": "manufacturing",
                "timestamp": "2024-03-20T09:00:00.000Z",
                "organization": "AyurMeds",
                "latitude": 26.94,
                "longitude": 75.80,
                "details": {"batchSize": "100 units", "formulation": "Pure Ashwagandha Root Powder"},
            },
            {
                "eventId": "EVT_COL_001",
                "type": "collection",
                "timestamp": "2024-03-01T06:30:00.000Z",
                "organization": "FarmersCoop",
                "latitude": 26.9124,
                "longitude": 75.7873,
                "details": {"weight": "25.5 kg", "collector": "Rajesh Kumar"},
                "imageHash": "QmYwAPJzv5CZsnA625s3Xf2nemtYgPpHdWEz79ojWnPbdG",
            },
            {
                "eventId": "EVT_QT_001",
                "type": "quality-test",
                "timestamp": "2024-03-05T11:00:00.000Z",
                "organization": "QualityLabs",
                "latitude": 26.92,
                "longitude": 75.79,
                "details": {"moisture": "7.9%", "pesticides": "0.004 mg/kg", "microbial": "Negative"},
            },
            {
                "eventId": "EVT_PRC_001",
                "type": "processing",
                "timestamp": "2024-03-10T08:00:00.000Z",
                "organization": "HerbProcessors",
                "latitude": 26.93,
                "longitude": 75.795,
                "details": {"processType": "Drying", "temperature": "60°C", "duration": "24 hours"},
            },
        ],
    )
