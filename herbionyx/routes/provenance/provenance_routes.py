# herbionyx/routes/provenance/provenance_routes.py

from flask import Blueprint, current_app, jsonify, request

from herbionyx.errors import HerbionyxError, LedgerError, http_status
from herbionyx.services.ledger.ledger_gateway import LedgerSession
from herbionyx.services.provenance.provenance_service import ProvenanceAssembler, ProvenanceRecorder


provenance_bp = Blueprint("provenance_bp", __name__, url_prefix="/api/provenance")


def _gateway(session: LedgerSession):
    return current_app.config["LEDGER_GATEWAY_FACTORY"](session)


def _error(err: HerbionyxError, session: LedgerSession = None):
    body = {"ok": False, "err": err.reason, "kind": err.kind}
    if session is not None:
        body["transactions"] = session.to_dict()["transactions"]
    return jsonify(body), http_status(err)


# ---------------------------------------------------
# READ: assembled journey for one batch
# ---------------------------------------------------
@provenance_bp.get("/<batch_id>")
def get_provenance(batch_id):
    session = LedgerSession()
    try:
        batch = ProvenanceAssembler(_gateway(session)).assemble(batch_id)
    except LedgerError as e:
        current_app.logger.warning("ledger error for %s: %s", batch_id, e.reason)
        return _error(e)
    except HerbionyxError as e:
        return _error(e)

    return jsonify({"ok": True, "batch": batch.to_dict()})


# ---------------------------------------------------
# WRITE: create a batch
# ---------------------------------------------------
@provenance_bp.post("")
def create_batch():
    data = request.get_json(silent=True) or {}
    session = LedgerSession()
    try:
        out = ProvenanceRecorder(_gateway(session)).create_batch(data)
    except HerbionyxError as e:
        current_app.logger.warning("create batch failed: %s", e.reason)
        return _error(e, session)

    return jsonify({"ok": True, **out}), 201


# ---------------------------------------------------
# WRITE: append a stage event
# ---------------------------------------------------
@provenance_bp.post("/<batch_id>/stages")
def record_stage(batch_id):
    """
    Body: {"type": "processing", "timestamp": "...", "organization": "...", "details": {...}}
    Collection and manufacturing stages come back with a minted QR.
    """
    data = request.get_json(silent=True) or {}
    stage_type = data.get("type")
    if not stage_type:
        return jsonify({"ok": False, "err": "type is required", "kind": "structure"}), 400

    session = LedgerSession()
    try:
        out = ProvenanceRecorder(_gateway(session)).record_stage(batch_id, stage_type, data)
    except HerbionyxError as e:
        current_app.logger.warning("record %s stage for %s failed: %s", stage_type, batch_id, e.reason)
        return _error(e, session)

    return jsonify({"ok": True, **out}), 201
