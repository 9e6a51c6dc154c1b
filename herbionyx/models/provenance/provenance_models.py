# herbionyx/models/provenance/provenance_models.py
from dataclasses import dataclass, asdict, field
from enum import Enum
from typing import Any, Dict, List, Optional


class StageType(str, Enum):
    COLLECTION = "collection"
    QUALITY_TEST = "quality-test"
    PROCESSING = "processing"
    MANUFACTURING = "manufacturing"
    FINAL_PRODUCT = "final-product"
    OTHER = "other"


# tie-break order for stages sharing a timestamp
STAGE_PRECEDENCE = {
    StageType.COLLECTION: 0,
    StageType.QUALITY_TEST: 1,
    StageType.PROCESSING: 2,
    StageType.MANUFACTURING: 3,
    StageType.FINAL_PRODUCT: 4,
    StageType.OTHER: 5,
}

STAGE_LABELS = {
    StageType.COLLECTION: "Collection",
    StageType.QUALITY_TEST: "Quality Testing",
    StageType.PROCESSING: "Processing",
    StageType.MANUFACTURING: "Manufacturing",
    StageType.FINAL_PRODUCT: "Final Product",
    StageType.OTHER: "Event",
}

STAGE_ICONS = {
    StageType.COLLECTION: "🌱",
    StageType.QUALITY_TEST: "🔬",
    StageType.PROCESSING: "⚙️",
    StageType.MANUFACTURING: "🏭",
    StageType.FINAL_PRODUCT: "📦",
    StageType.OTHER: "📍",
}


@dataclass
class ProvenanceStage:
    stage: str = ""                  # display label, e.g. "Quality Testing"
    stageType: str = StageType.OTHER.value
    timestamp: str = ""              # ISO-8601 as recorded on the ledger
    organization: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    icon: str = ""
    details: Dict[str, str] = field(default_factory=dict)   # insertion-ordered
    evidenceHash: Optional[str] = None   # content id, never resolved here
    eventId: Optional[str] = None


@dataclass
class FarmerStory:
    story: str = ""
    farmerName: str = ""
    farmName: str = ""
    location: str = ""
    image: Optional[str] = None


@dataclass
class JourneyAnomaly:
    kind: str            # "stage_order" | "outside_window"
    index: int           # position in the assembled journey
    message: str = ""


@dataclass
class Batch:
    batchId: str = ""
    productName: str = ""
    species: str = ""
    manufacturingDate: Optional[str] = None
    expiryDate: Optional[str] = None
    journey: List[ProvenanceStage] = field(default_factory=list)
    qualityTests: Dict[str, Any] = field(default_factory=dict)
    farmerStory: Optional[FarmerStory] = None
    productImage: Optional[str] = None

    # True only for placeholder data shown when the ledger has no record
    provisional: bool = False
    anomalies: List[JourneyAnomaly] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
