import os
from decimal import Decimal
from typing import List

# Telegram Bot token
BOT_TOKEN = os.getenv("BOT_TOKEN", "")

# Mongo
MONGO_URI = os.getenv("MONGO_URI", "mongodb://localhost:27017/?replicaSet=rs0")
DB_NAME = os.getenv("DB_NAME", "khqr_store_db")

# Multi-document transactions need a replica set (Atlas has one). Set to 0 for a standalone mongod.
MONGO_TRANSACTIONS = os.getenv("MONGO_TRANSACTIONS", "1").strip().lower() in {"1", "true", "yes"}

# Admin Telegram user IDs (comma-separated)
ADMIN_USER_IDS: List[int] = [
    int(x)
    for x in os.getenv("ADMIN_USER_IDS", "").split(",")
    if x.strip().isdigit()
]

# Support bot username (without @)
SUPPORT_USERNAME = os.getenv("SUPPORT_USERNAME", "")

LOG_LEVEL = os.getenv("LOG_LEVEL", "WARNING").upper()


# KHQR gateway
KHQR_API_URL = os.getenv("KHQR_API_URL", "https://api.kunchhunlichhean.org/khqr")
KHQR_CHECK_URL = os.getenv("KHQR_CHECK_URL", "https://api.kunchhunlichhean.org/check_by_md5")
KHQR_TIMEOUT = float(os.getenv("KHQR_TIMEOUT", "10"))

# Defaults for the runtime-editable settings (admins can change them with /set)
KHQR_BAKONG_ID = os.getenv("KHQR_BAKONG_ID", "")
KHQR_MERCHANT_NAME = os.getenv("KHQR_MERCHANT_NAME", "")
KHQR_BEARER_TOKEN = os.getenv("KHQR_BEARER_TOKEN", "")
MIN_TOPUP_AMOUNT = Decimal(os.getenv("MIN_TOPUP_AMOUNT", "0.01"))
MAX_TOPUP_AMOUNT = Decimal(os.getenv("MAX_TOPUP_AMOUNT", "1000"))


# Payment window
POLL_INTERVAL_SECONDS = float(os.getenv("POLL_INTERVAL_SECONDS", "1"))
MAX_POLL_CHECKS = int(os.getenv("MAX_POLL_CHECKS", "600"))  # 10 minutes at 1 second
QR_EXPIRY_SECONDS = float(os.getenv("QR_EXPIRY_SECONDS", "600"))
CLEANUP_INTERVAL_SECONDS = float(os.getenv("CLEANUP_INTERVAL_SECONDS", "60"))
SETTLE_RETRIES = int(os.getenv("SETTLE_RETRIES", "3"))
