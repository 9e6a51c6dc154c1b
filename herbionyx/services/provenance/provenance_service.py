# herbionyx/services/provenance/provenance_service.py
from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

from herbionyx.errors import MalformedRecordError, NotFoundError, StructureError
from herbionyx.models.provenance.provenance_models import (
    STAGE_ICONS,
    STAGE_LABELS,
    STAGE_PRECEDENCE,
    Batch,
    FarmerStory,
    JourneyAnomaly,
    ProvenanceStage,
    StageType,
)
from herbionyx.services.ledger.ledger_gateway import (
    FN_CREATE_BATCH,
    FN_GET_BATCH,
    FN_GET_BATCH_EVENTS,
    STAGE_INVOKE_FUNCTIONS,
    LedgerGateway,
)
from herbionyx.services.qr.qr_service import QRService

logger = logging.getLogger(__name__)

_STAGE_ALIASES = {
    "collection": StageType.COLLECTION,
    "collected": StageType.COLLECTION,
    "harvest": StageType.COLLECTION,
    "harvested": StageType.COLLECTION,
    "quality-test": StageType.QUALITY_TEST,
    "quality-testing": StageType.QUALITY_TEST,
    "qualitytest": StageType.QUALITY_TEST,
    "testing": StageType.QUALITY_TEST,
    "processing": StageType.PROCESSING,
    "processed": StageType.PROCESSING,
    "manufacturing": StageType.MANUFACTURING,
    "manufactured": StageType.MANUFACTURING,
    "final-product": StageType.FINAL_PRODUCT,
    "product": StageType.FINAL_PRODUCT,
    "packaging": StageType.FINAL_PRODUCT,
}

_EVIDENCE_KEYS = ("evidenceHash", "imageHash", "ipfsHash")

# epoch values at or above this are milliseconds (seconds would be past year 5000)
_EPOCH_MS_THRESHOLD = 100_000_000_000


# -------------------------
# record helpers
# -------------------------
def normalize_stage_type(raw: Any) -> StageType:
    key = re.sub(r"[\s_]+", "-", str(raw or "").strip().lower())
    return _STAGE_ALIASES.get(key, StageType.OTHER)


def _from_epoch(value: float) -> datetime:
    # JS Date.now() values are milliseconds
    if abs(value) >= _EPOCH_MS_THRESHOLD:
        value = value / 1000
    return datetime.fromtimestamp(value, tz=timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """
    ISO-8601 string (trailing Z allowed), epoch seconds or epoch milliseconds.
    Naive values are taken as UTC.
    """
    if isinstance(value, bool):
        raise ValueError(f"not a timestamp: {value!r}")
    if isinstance(value, (int, float)):
        return _from_epoch(value)

    s = str(value).strip()
    if not s:
        raise ValueError("empty timestamp")
    if s.isdigit():
        return _from_epoch(int(s))
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _to_iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _detail_str(v: Any) -> str:
    if v is None:
        return ""
    if isinstance(v, str):
        return v
    if isinstance(v, (dict, list)):
        return json.dumps(v, ensure_ascii=False)
    return str(v)


def _coord(record: Mapping[str, Any], key: str) -> Optional[float]:
    value = record.get(key)
    if value is None:
        loc = record.get("location")
        if isinstance(loc, Mapping):
            value = loc.get(key)
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise MalformedRecordError(f"stage record has a non-numeric {key}: {value!r}") from e


def _record_label(record: Mapping[str, Any]) -> str:
    event_id = record.get("eventId")
    return f"stage record {event_id}" if event_id else "stage record"


def parse_stage(record: Any) -> Tuple[ProvenanceStage, datetime]:
    """One ledger stage record -> (ProvenanceStage, parsed timestamp)."""
    if not isinstance(record, Mapping):
        raise MalformedRecordError(f"stage record must be an object, got {type(record).__name__}")

    raw_ts = record.get("timestamp")
    if raw_ts is None or raw_ts == "":
        raise MalformedRecordError(f"{_record_label(record)} is missing timestamp")
    organization = record.get("organization")
    if not isinstance(organization, str) or not organization.strip():
        raise MalformedRecordError(f"{_record_label(record)} is missing organization")

    try:
        ts = parse_timestamp(raw_ts)
    except (ValueError, OverflowError, OSError) as e:
        raise MalformedRecordError(f"stage record has an unreadable timestamp: {raw_ts!r}") from e

    stage_type = normalize_stage_type(record.get("type") or record.get("stageType") or record.get("stage"))

    details_raw = record.get("details") or {}
    if not isinstance(details_raw, Mapping):
        raise MalformedRecordError("stage record details must be an object")
    details: Dict[str, str] = {str(k): _detail_str(v) for k, v in details_raw.items()}

    evidence = next((record.get(k) for k in _EVIDENCE_KEYS if record.get(k)), None)
    if evidence:
        evidence = str(evidence)
        details["evidenceHash"] = evidence

    stage = ProvenanceStage(
        stage=str(record.get("stage") or STAGE_LABELS[stage_type]),
        stageType=stage_type.value,
        timestamp=raw_ts if isinstance(raw_ts, str) else _to_iso(ts),
        organization=organization.strip(),
        latitude=_coord(record, "latitude"),
        longitude=_coord(record, "longitude"),
        icon=str(record.get("icon") or STAGE_ICONS[stage_type]),
        details=details,
        evidenceHash=evidence,
        eventId=str(record["eventId"]) if record.get("eventId") else None,
    )
    return stage, ts


def _sort_key(item: Tuple[ProvenanceStage, datetime]):
    stage, ts = item
    return (
        ts,
        STAGE_PRECEDENCE[StageType(stage.stageType)],
        stage.stage,
        stage.organization,
        json.dumps(stage.details, sort_keys=True, ensure_ascii=False),
        stage.eventId or "",
    )


def order_journey(records: List[Any]) -> Tuple[List[ProvenanceStage], List[datetime]]:
    """Parse and sort stage records; arrival order never matters."""
    parsed = sorted((parse_stage(r) for r in records), key=_sort_key)
    return [s for s, _ in parsed], [t for _, t in parsed]


def find_anomalies(
    journey: List[ProvenanceStage],
    timestamps: List[datetime],
    expiry: Optional[datetime] = None,
) -> List[JourneyAnomaly]:
    """Flag (never fix) stage-order inversions and stages past expiry."""
    out: List[JourneyAnomaly] = []
    for i in range(1, len(journey)):
        prev, cur = journey[i - 1], journey[i]
        if STAGE_PRECEDENCE[StageType(cur.stageType)] < STAGE_PRECEDENCE[StageType(prev.stageType)]:
            out.append(JourneyAnomaly(
                kind="stage_order",
                index=i,
                message=f"{cur.stage} at {cur.timestamp} follows {prev.stage} at {prev.timestamp}",
            ))
    if expiry is not None:
        for i, ts in enumerate(timestamps):
            if ts > expiry:
                out.append(JourneyAnomaly(
                    kind="outside_window",
                    index=i,
                    message=f"{journey[i].stage} at {journey[i].timestamp} is after batch expiry",
                ))
    return out


def _optional_date(meta: Mapping[str, Any], key: str) -> Tuple[Optional[str], Optional[datetime]]:
    raw = meta.get(key)
    if raw is None or raw == "":
        return None, None
    try:
        dt = parse_timestamp(raw)
    except (ValueError, OverflowError, OSError) as e:
        raise MalformedRecordError(f"batch {key} is unreadable: {raw!r}") from e
    return (raw if isinstance(raw, str) else _to_iso(dt)), dt


def build_batch(batch_id: str, metadata: Any, records: Any) -> Batch:
    """Pure assembly step: ledger metadata + stage records -> Batch."""
    if not isinstance(metadata, Mapping):
        raise MalformedRecordError(f"batch {batch_id} metadata must be an object")
    if not isinstance(records, list):
        raise MalformedRecordError(f"stage records for {batch_id} must be a list")
    if not records:
        raise NotFoundError(f"no stage records for batch {batch_id}")

    mfg_raw, mfg = _optional_date(metadata, "manufacturingDate")
    exp_raw, exp = _optional_date(metadata, "expiryDate")
    if mfg is not None and exp is not None and exp <= mfg:
        raise MalformedRecordError(f"batch {batch_id} expiryDate must be after manufacturingDate")

    journey, timestamps = order_journey(records)
    anomalies = find_anomalies(journey, timestamps, expiry=exp)
    for a in anomalies:
        logger.warning("batch %s journey anomaly (%s): %s", batch_id, a.kind, a.message)

    story = metadata.get("farmerStory")
    farmer_story = None
    if isinstance(story, Mapping):
        farmer_story = FarmerStory(
            story=str(story.get("story") or ""),
            farmerName=str(story.get("farmerName") or ""),
            farmName=str(story.get("farmName") or ""),
            location=str(story.get("location") or ""),
            image=story.get("image"),
        )

    quality = metadata.get("qualityTests") or {}
    if not isinstance(quality, Mapping):
        raise MalformedRecordError(f"batch {batch_id} qualityTests must be an object")

    return Batch(
        batchId=str(metadata.get("batchId") or batch_id),
        productName=str(metadata.get("productName") or ""),
        species=str(metadata.get("species") or ""),
        manufacturingDate=mfg_raw,
        expiryDate=exp_raw,
        journey=journey,
        qualityTests=dict(quality),
        farmerStory=farmer_story,
        productImage=metadata.get("productImage"),
        anomalies=anomalies,
    )


class ProvenanceAssembler:
    """
    Compose a batch journey from the ledger:
      - GetBatch        -> product metadata
      - GetBatchEvents  -> stage records (any order)
    Errors from the gateway propagate untouched.
    """

    def __init__(self, gateway: LedgerGateway):
        self.gateway = gateway

    def assemble(self, batch_id: str) -> Batch:
        batch_id = (batch_id or "").strip()
        if not batch_id:
            raise StructureError("batchId is required")

        metadata = self.gateway.query(FN_GET_BATCH, [batch_id])
        records = self.gateway.query(FN_GET_BATCH_EVENTS, [batch_id])

        batch = build_batch(batch_id, metadata, records)
        logger.info("assembled batch %s with %d stages", batch_id, len(batch.journey))
        return batch


class ProvenanceRecorder:
    """Write side: create batches and append stage events, minting labels where a bag or product gets one."""

    # stage -> QR type printed on its label
    LABELLED_STAGES = {
        "collection": "collection",
        "manufacturing": "final-product",
    }

    def __init__(self, gateway: LedgerGateway):
        self.gateway = gateway

    def create_batch(self, batch: Mapping[str, Any]) -> Dict[str, Any]:
        if not batch.get("batchId"):
            raise StructureError("batchId is required")
        receipt = self.gateway.invoke(FN_CREATE_BATCH, [json.dumps(dict(batch), ensure_ascii=False)])
        return {"receipt": receipt.to_dict()}

    def record_stage(self, batch_id: str, stage_type: str, event: Mapping[str, Any]) -> Dict[str, Any]:
        kind = normalize_stage_type(stage_type)
        fn = STAGE_INVOKE_FUNCTIONS.get(kind.value)
        if fn is None:
            raise StructureError(f"cannot record stage of type {stage_type!r}")

        # validate locally before paying for a ledger write
        record = dict(event)
        record.setdefault("type", kind.value)
        parse_stage(record)

        receipt = self.gateway.invoke(fn, [batch_id, json.dumps(record, ensure_ascii=False)])
        out: Dict[str, Any] = {"receipt": receipt.to_dict()}

        qr_type = self.LABELLED_STAGES.get(kind.value)
        if qr_type:
            out["qr"] = QRService.mint({"type": qr_type, "batchId": batch_id}).to_dict()
        return out
