# herbionyx/routes/qr/qr_routes.py

from io import BytesIO

from flask import Blueprint, current_app, jsonify, request, send_file

from herbionyx.errors import HerbionyxError, http_status
from herbionyx.services.qr.image_scan import decode_qr_code_bytes
from herbionyx.services.qr.qr_service import QRService


qr_bp = Blueprint("qr_bp", __name__, url_prefix="/qr")


def _error(err: HerbionyxError):
    return jsonify({"ok": False, "err": err.reason, "kind": err.kind}), http_status(err)


# ---------------------------------------------------
# MINT A QR PAYLOAD (+ data URL image)
# ---------------------------------------------------
@qr_bp.post("/generate")
def generate_qr():
    """
    Body: {"type": "collection", "batchId": "BATCH_001"}
    Also accepts eventId or id when no batchId is at hand.
    """
    data = request.get_json(silent=True) or {}
    render = request.args.get("render", "1") != "0"

    try:
        result = QRService.mint(data, render=render)
    except HerbionyxError as e:
        return _error(e)

    return jsonify({"ok": True, **result.to_dict()})


# ---------------------------------------------------
# DECODE A SCANNED STRING
# ---------------------------------------------------
@qr_bp.post("/decode")
def decode_qr():
    """
    JSON {"data": "<scanned string>"} or a multipart upload in field "image".
    """
    upload = request.files.get("image")
    if upload is not None:
        try:
            raw = decode_qr_code_bytes(upload.read())
        except ValueError as e:
            return jsonify({"ok": False, "err": str(e), "kind": "scan"}), 400
        if not raw:
            return jsonify({"ok": False, "err": "no QR code found in image", "kind": "scan"}), 400
    else:
        data = request.get_json(silent=True) or {}
        raw = data.get("data")
    if not isinstance(raw, str):
        return jsonify({"ok": False, "err": "data (scanned string) is required", "kind": "parse"}), 400

    try:
        payload = QRService.decode(raw)
    except HerbionyxError as e:
        current_app.logger.info("rejected QR payload: %s", e.reason)
        return _error(e)

    return jsonify({"ok": True, "payload": payload.to_wire(), "batchId": payload.batch_reference()})


# ---------------------------------------------------
# PRINTABLE LABEL (PNG)
# ---------------------------------------------------
@qr_bp.post("/label")
def label_qr():
    data = request.get_json(silent=True) or {}
    raw = data.get("data")
    if not isinstance(raw, str) or not raw:
        return jsonify({"ok": False, "err": "data (payload string) is required", "kind": "parse"}), 400

    label = data.get("label")
    if not label:
        try:
            label = QRService.decode(raw).batch_reference() or ""
        except HerbionyxError as e:
            return _error(e)

    png = QRService.render_label_png(raw, str(label))
    return send_file(
        BytesIO(png),
        mimetype="image/png",
        as_attachment=bool(data.get("download")),
        download_name=f"{label or 'qr'}.png",
    )
