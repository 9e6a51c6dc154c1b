# herbionyx/models/qr/qr_models.py
from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, ClassVar, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictStr, TypeAdapter

QR_NETWORK = "herbionyx"
QR_VERSION = "1.0"

# canonical key order on the wire; extra keys follow
QR_FIELD_ORDER = ("id", "type", "batchId", "timestamp", "network", "version")


class QRType(str, Enum):
    COLLECTION = "collection"
    QUALITY_TEST = "quality-test"
    PROCESSING = "processing"
    MANUFACTURING = "manufacturing"
    FINAL_PRODUCT = "final-product"
    UNKNOWN = "unknown"


class QRPayloadBase(BaseModel):
    """
    Payload embedded in a HERBIONYX QR code.

    Keys we don't know about are kept as extras so a scanned payload
    re-encodes to the same JSON it was decoded from.
    """

    model_config = ConfigDict(extra="allow", frozen=True)

    stage_label: ClassVar[str] = "Product"

    id: StrictStr = Field(..., min_length=1)
    batchId: Optional[StrictStr] = None
    timestamp: Optional[StrictStr] = None
    network: Literal["herbionyx"]
    version: Optional[StrictStr] = None

    def batch_reference(self) -> Optional[str]:
        """batchId first, then an eventId carried by older collection labels."""
        if self.batchId:
            return self.batchId
        extra = self.model_extra or {}
        event_id = extra.get("eventId")
        if isinstance(event_id, str) and event_id.strip():
            return event_id
        return None

    def to_wire(self) -> Dict[str, Any]:
        data = self.model_dump(exclude_unset=True)
        out: Dict[str, Any] = {k: data.pop(k) for k in QR_FIELD_ORDER if k in data}
        out.update(data)
        return out


class CollectionQR(QRPayloadBase):
    stage_label: ClassVar[str] = "Collection"
    type: Literal["collection"]


class QualityTestQR(QRPayloadBase):
    stage_label: ClassVar[str] = "Quality Testing"
    type: Literal["quality-test"]


class ProcessingQR(QRPayloadBase):
    stage_label: ClassVar[str] = "Processing"
    type: Literal["processing"]


class ManufacturingQR(QRPayloadBase):
    stage_label: ClassVar[str] = "Manufacturing"
    type: Literal["manufacturing"]


class FinalProductQR(QRPayloadBase):
    stage_label: ClassVar[str] = "Final Product"
    type: Literal["final-product"]


class UnknownQR(QRPayloadBase):
    type: Literal["unknown"]


QRPayload = Annotated[
    Union[CollectionQR, QualityTestQR, ProcessingQR, ManufacturingQR, FinalProductQR, UnknownQR],
    Field(discriminator="type"),
]

qr_payload_adapter: TypeAdapter = TypeAdapter(QRPayload)


class MintResult(BaseModel):
    id: str
    type: str
    batchId: str
    timestamp: str
    data: str                       # canonical JSON string placed in the code
    qrCodeUrl: Optional[str] = None  # PNG data URL
    payload: QRPayloadBase

    def to_dict(self) -> Dict[str, Any]:
        out = self.model_dump(exclude={"payload"})
        out["payload"] = self.payload.to_wire()
        return out
