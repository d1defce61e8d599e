# backend/app/config.py
import os

# ==============================
# Storage
# ==============================

MONGO_URI = os.getenv("MONGO_URI", "mongodb://localhost:27017")
MONGO_DB_NAME = os.getenv("MONGO_DB_NAME", "traceability_db")
# "mongo" or "memory"
STORE_BACKEND = os.getenv("STORE_BACKEND", "mongo").lower()

# ==============================
# Ledger bridge
# ==============================

# Anchoring is disabled when no bridge URL is configured.
LEDGER_BRIDGE_URL = os.getenv("LEDGER_BRIDGE_URL")
LEDGER_API_KEY = os.getenv("LEDGER_API_KEY")
LEDGER_MAX_ATTEMPTS = int(os.getenv("LEDGER_MAX_ATTEMPTS", "3"))
LEDGER_RETRY_BASE_DELAY = float(os.getenv("LEDGER_RETRY_BASE_DELAY", "2.0"))
LEDGER_CONFIRMATIONS = int(os.getenv("LEDGER_CONFIRMATIONS", "1"))
LEDGER_GAS_MULTIPLIER = float(os.getenv("LEDGER_GAS_MULTIPLIER", "1.2"))
LEDGER_CONFIRMATION_TIMEOUT = float(os.getenv("LEDGER_CONFIRMATION_TIMEOUT", "60"))
LEDGER_POLL_INTERVAL = float(os.getenv("LEDGER_POLL_INTERVAL", "2.0"))
LEDGER_HTTP_TIMEOUT = float(os.getenv("LEDGER_HTTP_TIMEOUT", "15.0"))

# Upper bound on one advisory anchoring attempt (all retries included).
ANCHOR_TIMEOUT = float(os.getenv("ANCHOR_TIMEOUT", "120"))

# ==============================
# Auth / logging
# ==============================

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
