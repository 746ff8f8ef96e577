"""
FiscalBridge - Centralized Configuration
=========================================
All environment variables and constants are loaded here.
No other module should call os.getenv() directly.
"""

import os
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


# ==========================================
# 🗄️ Database
# ==========================================
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./fiscal_bridge.db")


# ==========================================
# 🔐 Security
# ==========================================
# Admin queue endpoints are disabled (401) while this is empty.
ADMIN_API_KEY = os.getenv("ADMIN_API_KEY", "")


# ==========================================
# 🧾 WEB-SRM Endpoint
# ==========================================
WEBSRM_ENV = os.getenv("WEBSRM_ENV", "dev").lower()          # dev / essai / prod
WEBSRM_BASE_URL = os.getenv("WEBSRM_BASE_URL", "")
WEBSRM_NETWORK_ENABLED = _env_bool("WEBSRM_NETWORK_ENABLED")
WEBSRM_REQUEST_TIMEOUT = float(os.getenv("WEBSRM_REQUEST_TIMEOUT") or "10")  # seconds


# ==========================================
# 🖥️ Device & Certification
# ==========================================
WEBSRM_DEVICE_ID = os.getenv("WEBSRM_DEVICE_ID", "")
WEBSRM_BRANCH_ID = os.getenv("WEBSRM_BRANCH_ID", "")
WEBSRM_CERTIFICATION_CODE = os.getenv("WEBSRM_CERTIFICATION_CODE", "")
WEBSRM_SOFTWARE_VERSION = os.getenv("WEBSRM_SOFTWARE_VERSION", "1.0.0")


# ==========================================
# ✍️ Signing
# ==========================================
WEBSRM_SIGNING_ALGORITHM = os.getenv("WEBSRM_SIGNING_ALGORITHM", "")  # HMAC-SHA256 / ECDSA
WEBSRM_SHARED_SECRET = os.getenv("WEBSRM_SHARED_SECRET", "")
WEBSRM_PRIVATE_KEY_PEM = os.getenv("WEBSRM_PRIVATE_KEY_PEM", "")
WEBSRM_PRIVATE_KEY_PATH = os.getenv("WEBSRM_PRIVATE_KEY_PATH", "")


# ==========================================
# 🔁 Queue & Retry
# ==========================================
WEBSRM_MAX_ATTEMPTS = int(os.getenv("WEBSRM_MAX_ATTEMPTS") or "5")
WEBSRM_RETRY_BASE_DELAY = int(os.getenv("WEBSRM_RETRY_BASE_DELAY") or "60")     # seconds
WEBSRM_RETRY_MAX_DELAY = int(os.getenv("WEBSRM_RETRY_MAX_DELAY") or "3600")     # seconds
WEBSRM_RETRY_JITTER = float(os.getenv("WEBSRM_RETRY_JITTER") or "0")            # fraction of delay
WEBSRM_LEASE_SECONDS = int(os.getenv("WEBSRM_LEASE_SECONDS") or "60")
WEBSRM_DISPATCH_INTERVAL = int(os.getenv("WEBSRM_DISPATCH_INTERVAL") or "15")   # seconds
WEBSRM_DISPATCH_BATCH = int(os.getenv("WEBSRM_DISPATCH_BATCH") or "20")
WEBSRM_DISPATCH_WORKERS = int(os.getenv("WEBSRM_DISPATCH_WORKERS") or "5")

# Circuit breaker (per device)
WEBSRM_BREAKER_THRESHOLD = int(os.getenv("WEBSRM_BREAKER_THRESHOLD") or "5")
WEBSRM_BREAKER_COOLDOWN = int(os.getenv("WEBSRM_BREAKER_COOLDOWN") or "60")     # seconds


# ==========================================
# 🧾 Receipts & Time
# ==========================================
WEBSRM_RECEIPT_BASE_URL = os.getenv("WEBSRM_RECEIPT_BASE_URL", "https://websrm.revenuquebec.ca/verify")
WEBSRM_UTC_OFFSET_HOURS = int(os.getenv("WEBSRM_UTC_OFFSET_HOURS") or "-5")


# ==========================================
# 🚨 Alerts
# ==========================================
WEBSRM_ALERT_WEBHOOK_URL = os.getenv("WEBSRM_ALERT_WEBHOOK_URL", "")


# ==========================================
# 🔧 App
# ==========================================
DEBUG = _env_bool("DEBUG")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
