# herbionyx/services/provenance/provisional.py
"""
Placeholder journey shown when the ledger has no record of a scanned batch.

Only the verification orchestrator uses this, and only for NotFoundError.
Everything returned here carries provisional=True so no screen can pass it
off as verified ledger data.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from herbionyx.models.provenance.provenance_models import Batch
from herbionyx.services.provenance.provenance_service import build_batch

DAY = timedelta(days=1)


def _iso(dt: datetime) -> str:
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def build_provisional_batch(batch_id: str, now: Optional[datetime] = None) -> Batch:
    now = now or datetime.now(timezone.utc)

    metadata = {
        "batchId": batch_id,
        "productName": "Premium Ashwagandha Powder",
        "species": "Ashwagandha",
        "manufacturingDate": _iso(now - 7 * DAY),
        "expiryDate": _iso(now + 365 * DAY),
        "qualityTests": {"moisture": 8.5, "pesticides": 0.005, "heavyMetals": 2.1},
        "farmerStory": {
            "story": (
                "This premium Ashwagandha was carefully cultivated in the fertile soils of "
                "Rajasthan using traditional organic farming methods passed down through generations."
            ),
            "farmerName": "Rajesh Kumar",
            "farmName": "Green Valley Organic Farm",
            "location": "Rajasthan, India",
        },
    }

    records = [
        {
            "type": "collection",
            "timestamp": _iso(now - 14 * DAY),
            "organization": "FarmersCoop",
            "latitude": 26.9124,
            "longitude": 75.7873,
            "details": {"species": "Ashwagandha", "weight": "25.5 kg", "collector": "Rajesh Kumar"},
        },
        {
            "type": "quality-test",
            "timestamp": _iso(now - 10 * DAY),
            "organization": "QualityLabs",
            "latitude": 26.9200,
            "longitude": 75.7900,
            "details": {
                "moisture": "8.5%",
                "pesticides": "0.005 mg/kg",
                "heavyMetals": "2.1 ppm",
                "microbial": "Negative",
            },
        },
        {
            "type": "processing",
            "timestamp": _iso(now - 8 * DAY),
            "organization": "HerbProcessors",
            "latitude": 26.9300,
            "longitude": 75.7950,
            "details": {"processType": "Drying", "temperature": "60°C", "duration": "24 hours", "yield": "20.2 kg"},
        },
        {
            "type": "manufacturing",
            "timestamp": _iso(now - 7 * DAY),
            "organization": "AyurMeds",
            "latitude": 26.9400,
            "longitude": 75.8000,
            "details": {
                "productName": "Premium Ashwagandha Powder",
                "batchSize": "100 units",
                "formulation": "Pure Ashwagandha Root Powder",
            },
        },
    ]

    batch = build_batch(batch_id, metadata, records)
    batch.provisional = True
    return batch
