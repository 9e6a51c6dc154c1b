# app.py (gunicorn + local)

from datetime import datetime

from flask import Flask, jsonify
from flask_cors import CORS

from herbionyx.app_config import load_config
from herbionyx.ledger import init_ledger
from herbionyx.register_blueprints import register_all_blueprints


def create_app(config=None, gateway_factory=None):
    app = Flask(__name__)

    # -------------------------
    # Config
    # -------------------------
    load_config(app)
    if config:
        app.config.update(config)

    CORS(app, resources={r"/*": {"origins": "*"}})

    # -------------------------
    # Ledger
    # -------------------------
    init_ledger(app, factory=gateway_factory)

    # -------------------------
    # Blueprints
    # -------------------------
    register_all_blueprints(app)

    @app.get("/_health")
    def _health():
        return jsonify({
            "ok": True,
            "service": "flask-web",
            "ledger": app.config.get("LEDGER_BACKEND"),
            "ts": int(datetime.now().timestamp()),
        })

    return app


# gunicorn entrypoint
app = create_app()


# Local run only
if __name__ == "__main__":
    app.run(host="0.0.0.0", port=5000, debug=True)
