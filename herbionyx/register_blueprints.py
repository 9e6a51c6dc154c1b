"""
Centralized Blueprint Registration
All blueprints MUST be registered inside register_all_blueprints(app)
"""

def register_all_blueprints(app):

    # QR
    from herbionyx.routes.qr.qr_routes import qr_bp
    app.register_blueprint(qr_bp)

    # Provenance
    from herbionyx.routes.provenance.provenance_routes import provenance_bp
    app.register_blueprint(provenance_bp)

    print("✓ All blueprints registered")
