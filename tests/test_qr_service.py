import json
import re
from io import BytesIO

import pytest
from PIL import Image

from herbionyx.errors import NetworkMismatchError, ParseError, StructureError
from herbionyx.models.qr.qr_models import CollectionQR, FinalProductQR, UnknownQR
from herbionyx.services.qr.qr_service import QRService, generate_qr_id

ID_RE = re.compile(r"^QR_\d+_[a-z0-9]{9}$")


def test_mint_batch_001_collection_label():
    result = QRService.mint({"type": "collection", "batchId": "BATCH_001"})

    assert result.batchId == "BATCH_001"
    assert result.type == "collection"
    assert ID_RE.match(result.id)
    assert result.timestamp.endswith("Z")
    assert result.qrCodeUrl.startswith("data:image/png;base64,")

    wire = json.loads(result.data)
    assert list(wire) == ["id", "type", "batchId", "timestamp", "network", "version"]
    assert wire["network"] == "herbionyx"
    assert wire["version"] == "1.0"


def test_scan_of_minted_payload_gives_back_the_batch():
    result = QRService.mint({"type": "collection", "batchId": "BATCH_001"}, render=False)

    payload = QRService.decode(result.data)

    assert isinstance(payload, CollectionQR)
    assert payload.batch_reference() == "BATCH_001"
    assert payload.id == result.id
    assert QRService.encode(payload) == result.data


def test_mint_falls_back_to_event_id_then_id():
    assert QRService.mint({"eventId": "EVT_9"}, render=False).batchId == "EVT_9"
    assert QRService.mint({"id": "X1"}, render=False).batchId == "X1"


def test_mint_defaults_type_to_unknown():
    result = QRService.mint({"batchId": "B"}, render=False)
    assert result.type == "unknown"
    assert isinstance(QRService.decode(result.data), UnknownQR)


def test_mint_without_any_id_is_rejected():
    with pytest.raises(StructureError):
        QRService.mint({"type": "collection"}, render=False)


def test_mint_result_to_dict_carries_wire_payload():
    result = QRService.mint({"type": "final-product", "batchId": "B7"}, render=False)
    out = result.to_dict()
    assert out["payload"] == json.loads(result.data)
    assert out["qrCodeUrl"] is None


def test_ten_thousand_mints_have_unique_ids():
    ids = {QRService.mint({"batchId": "B"}, render=False).id for _ in range(10_000)}
    assert len(ids) == 10_000


def test_generate_qr_id_format():
    assert ID_RE.match(generate_qr_id())


def test_decode_keeps_unknown_keys():
    raw = '{"id":"QR_1_abcdefghi","type":"final-product","batchId":"B","network":"herbionyx","lot":"7"}'
    payload = QRService.decode(raw)

    assert isinstance(payload, FinalProductQR)
    assert payload.to_wire()["lot"] == "7"


def test_decode_event_id_reference_when_batch_id_absent():
    raw = json.dumps({"id": "QR_1", "type": "collection", "eventId": "EVT_1", "network": "herbionyx"})
    assert QRService.decode(raw).batch_reference() == "EVT_1"


@pytest.mark.parametrize("raw", ["not json", "", "[1, 2]", '"string"', "42"])
def test_decode_rejects_non_objects(raw):
    with pytest.raises(ParseError):
        QRService.decode(raw)


def test_decode_rejects_non_string_input():
    with pytest.raises(ParseError):
        QRService.decode({"id": "x"})


@pytest.mark.parametrize(
    "data",
    [
        {"type": "collection", "network": "herbionyx"},
        {"id": "QR_1", "network": "herbionyx"},
        {"id": "QR_1", "type": "collection"},
        {"id": "", "type": "collection", "network": "herbionyx"},
        {"id": 123, "type": "collection", "network": "herbionyx"},
        {"id": "QR_1", "type": "bogus", "network": "herbionyx"},
        {"id": "QR_1", "type": "collection", "network": 5},
    ],
)
def test_decode_rejects_bad_structure(data):
    with pytest.raises(StructureError) as exc:
        QRService.decode(json.dumps(data))
    assert exc.value.kind == "structure"


def test_decode_rejects_foreign_network():
    raw = json.dumps({"id": "QR_1", "type": "collection", "batchId": "B", "network": "otherchain"})
    with pytest.raises(NetworkMismatchError) as exc:
        QRService.decode(raw)
    assert exc.value.to_dict()["kind"] == "network_mismatch"


def test_render_png_is_a_png():
    png = QRService.render_png('{"id":"x"}')
    assert png[:8] == b"\x89PNG\r\n\x1a\n"


def test_label_adds_caption_strip():
    data = QRService.mint({"batchId": "BATCH_001"}, render=False).data
    qr = Image.open(BytesIO(QRService.render_png(data)))
    label = Image.open(BytesIO(QRService.render_label_png(data, "BATCH_001")))

    assert label.width == qr.width
    assert label.height == qr.height + 40


def test_save_png(tmp_path):
    out = QRService.save_png('{"id":"x"}', str(tmp_path / "qr.png"))
    assert Image.open(out).format == "PNG"


@pytest.mark.parametrize("raw", [
    "[" * 100_000 + "]" * 100_000,
    '{"a":' * 100_000 + "1" + "}" * 100_000,
])
def test_decode_rejects_deeply_nested_input(raw):
    with pytest.raises(ParseError):
        QRService.decode(raw)


ROUND_TRIP_PAYLOADS = [
    *[
        {"id": f"QR_1_{t[:9].ljust(9, 'x')}", "type": t, "batchId": "BATCH_001",
         "timestamp": "2024-03-01T06:00:00.000Z", "network": "herbionyx", "version": "1.0"}
        for t in ("collection", "quality-test", "processing", "manufacturing", "final-product", "unknown")
    ],
    {"id": "QR_2", "type": "collection", "network": "herbionyx"},
    {"id": "QR_3", "type": "processing", "batchId": None, "network": "herbionyx"},
    {"id": "QR_4", "type": "collection", "network": "herbionyx", "eventId": "EVT_7"},
    {
        "id": "QR_5",
        "type": "final-product",
        "batchId": "B5",
        "network": "herbionyx",
        "lot": {"line": 3, "shift": ["A", "B"], "qc": {"passed": True, "score": 9.5}},
        "label": "अश्वगंधा चूर्ण",
        "note": "Ünïcødé ✓",
    },
    {"network": "herbionyx", "version": "1.0", "batchId": "B6", "type": "manufacturing", "id": "QR_6",
     "timestamp": "2024-03-20T09:00:00.000Z"},
]


@pytest.mark.parametrize("data", ROUND_TRIP_PAYLOADS)
def test_decode_encode_round_trip(data):
    first = QRService.decode(json.dumps(data, ensure_ascii=False))
    again = QRService.decode(QRService.encode(first))

    assert again == first
    assert type(again) is type(first)
    assert again.to_wire() == first.to_wire() == data
    assert QRService.encode(again) == QRService.encode(first)
