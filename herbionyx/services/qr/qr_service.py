# herbionyx/services/qr/qr_service.py
from __future__ import annotations

import base64
import json
import secrets
import string
import time
from datetime import datetime, timezone
from io import BytesIO
from typing import Any, Dict, Mapping, Optional

import qrcode
from PIL import Image, ImageDraw, ImageFont
from pydantic import ValidationError as PydanticValidationError

from herbionyx.errors import NetworkMismatchError, ParseError, StructureError
from herbionyx.models.qr.qr_models import (
    QR_NETWORK,
    QR_VERSION,
    MintResult,
    QRPayloadBase,
    QRType,
    qr_payload_adapter,
)

_ID_ALPHABET = string.ascii_lowercase + string.digits
_ID_SUFFIX_LEN = 9

# Rendering options for printed labels
QR_DARK = "#2d5016"
QR_LIGHT = "#FFFFFF"
QR_WIDTH = 256
QR_BORDER = 1

_REQUIRED = ("id", "type", "network")


def _now_iso() -> str:
    """UTC timestamp with millisecond precision, e.g. 2024-05-01T10:00:00.123Z"""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def generate_qr_id() -> str:
    """QR_<epoch ms>_<9 random base36 chars>"""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(_ID_SUFFIX_LEN))
    return f"QR_{int(time.time() * 1000)}_{suffix}"


def _first_non_empty(data: Mapping[str, Any], *keys: str) -> Optional[str]:
    for k in keys:
        v = data.get(k)
        if v is None:
            continue
        v = str(v).strip()
        if v:
            return v
    return None


class QRService:
    """
    Mint and decode HERBIONYX QR payloads.

    Pure: nothing here talks to the ledger or keeps state between calls.
    Rendering goes through the `qrcode` library; optical decoding of camera
    images lives in image_scan.py.
    """

    # -------------------------
    # Mint
    # -------------------------
    @staticmethod
    def mint(source_data: Mapping[str, Any], render: bool = True) -> MintResult:
        qr_type = _first_non_empty(source_data, "type") or QRType.UNKNOWN.value
        batch_id = _first_non_empty(source_data, "batchId", "eventId", "id")
        if not batch_id:
            raise StructureError("one of batchId, eventId or id is required to mint a QR payload")

        wire = {
            "id": generate_qr_id(),
            "type": qr_type,
            "batchId": batch_id,
            "timestamp": _now_iso(),
            "network": QR_NETWORK,
            "version": QR_VERSION,
        }
        payload = QRService._validate(wire)
        data = QRService.encode(payload)

        return MintResult(
            id=payload.id,
            type=payload.type,
            batchId=batch_id,
            timestamp=payload.timestamp,
            data=data,
            qrCodeUrl=QRService.render_data_url(data) if render else None,
            payload=payload,
        )

    # -------------------------
    # Wire format
    # -------------------------
    @staticmethod
    def encode(payload: QRPayloadBase) -> str:
        return json.dumps(payload.to_wire(), separators=(",", ":"), ensure_ascii=False)

    @staticmethod
    def decode(payload_string: str) -> QRPayloadBase:
        """
        Parse a scanned string back into its payload.

        Raises ParseError (not JSON / not an object), StructureError (id, type
        or network missing or of the wrong shape) or NetworkMismatchError.
        """
        if not isinstance(payload_string, (str, bytes, bytearray)):
            raise ParseError(f"expected a string payload, got {type(payload_string).__name__}")
        try:
            data = json.loads(payload_string)
        except (ValueError, UnicodeDecodeError) as e:
            raise ParseError(f"QR payload is not valid JSON: {e}") from e
        except RecursionError as e:
            raise ParseError("QR payload is nested too deeply") from e

        if not isinstance(data, dict):
            raise ParseError("QR payload must be a JSON object")

        missing = [k for k in _REQUIRED if data.get(k) in (None, "")]
        if missing:
            raise StructureError(f"Invalid QR code structure: missing {', '.join(missing)}")
        not_str = [k for k in _REQUIRED if not isinstance(data[k], str)]
        if not_str:
            raise StructureError(f"Invalid QR code structure: {', '.join(not_str)} must be a string")

        if data["network"] != QR_NETWORK:
            raise NetworkMismatchError(f"QR code is not from HERBIONYX network (network={data['network']!r})")

        return QRService._validate(data)

    @staticmethod
    def _validate(data: Dict[str, Any]) -> QRPayloadBase:
        try:
            return qr_payload_adapter.validate_python(data)
        except PydanticValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'payload'}: {err['msg']}" for err in e.errors()
            )
            raise StructureError(f"Invalid QR code structure: {problems}") from e

    # -------------------------
    # Rendering
    # -------------------------
    @staticmethod
    def _make_image(data: str):
        qr = qrcode.QRCode(
            version=None,
            error_correction=qrcode.constants.ERROR_CORRECT_M,
            box_size=10,
            border=QR_BORDER,
        )
        qr.add_data(data)
        qr.make(fit=True)

        # size the modules so the image lands near QR_WIDTH
        modules = qr.modules_count + 2 * QR_BORDER
        qr.box_size = max(1, QR_WIDTH // modules)

        return qr.make_image(fill_color=QR_DARK, back_color=QR_LIGHT).convert("RGB")

    @staticmethod
    def render_png(data: str) -> bytes:
        buf = BytesIO()
        QRService._make_image(data).save(buf, format="PNG")
        return buf.getvalue()

    @staticmethod
    def render_data_url(data: str) -> str:
        encoded = base64.b64encode(QRService.render_png(data)).decode("ascii")
        return f"data:image/png;base64,{encoded}"

    @staticmethod
    def save_png(data: str, output_path: str) -> str:
        QRService._make_image(data).save(output_path)
        return output_path

    @staticmethod
    def render_label_png(data: str, label: str) -> bytes:
        """QR code with a caption (usually the batch id) printed underneath."""
        qr_img = QRService._make_image(data)
        qr_width, qr_height = qr_img.size

        final_img = Image.new("RGB", (qr_width, qr_height + 40), QR_LIGHT)
        final_img.paste(qr_img, (0, 0))

        draw = ImageDraw.Draw(final_img)
        try:
            font = ImageFont.truetype("arial.ttf", 16)
        except OSError:
            font = ImageFont.load_default()

        bbox = draw.textbbox((0, 0), label, font=font)
        text_width = bbox[2] - bbox[0]
        x = max(0, (qr_width - text_width) // 2)
        draw.text((x, qr_height + 10), label, fill=QR_DARK, font=font)

        buf = BytesIO()
        final_img.save(buf, format="PNG")
        return buf.getvalue()
