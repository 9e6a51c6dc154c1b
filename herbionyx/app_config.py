# herbionyx/app_config.py

import os

# ------------------------------
# Ledger
# ------------------------------
LEDGER_BACKEND = os.getenv("LEDGER_BACKEND", "memory").strip().lower()   # "http" | "memory"
LEDGER_API_BASE_URL = (os.getenv("LEDGER_API_BASE_URL", "") or "").rstrip("/")
LEDGER_TIMEOUT = float(os.getenv("LEDGER_TIMEOUT", "4"))                 # per HTTP request, keep under LEDGER_QUERY_TIMEOUT
LEDGER_QUERY_TIMEOUT = float(os.getenv("LEDGER_QUERY_TIMEOUT", "10"))    # whole decode+query wait
LEDGER_MAX_RETRIES = int(os.getenv("LEDGER_MAX_RETRIES", "1"))

# ------------------------------
# Consumer portal
# ------------------------------
ALLOW_PROVISIONAL = os.getenv("ALLOW_PROVISIONAL", "1") == "1"


def load_config(app):
    """
    Load all Flask configuration in a clean centralized way.
    """
    app.config["LEDGER_BACKEND"] = LEDGER_BACKEND
    app.config["LEDGER_API_BASE_URL"] = LEDGER_API_BASE_URL
    app.config["LEDGER_TIMEOUT"] = LEDGER_TIMEOUT
    app.config["LEDGER_QUERY_TIMEOUT"] = LEDGER_QUERY_TIMEOUT
    app.config["LEDGER_MAX_RETRIES"] = LEDGER_MAX_RETRIES

    app.config["ALLOW_PROVISIONAL"] = ALLOW_PROVISIONAL

    app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", os.urandom(24))

    print("✓ Config Loaded Successfully")
