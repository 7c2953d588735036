"""
Runtime configuration for the Maison Parfum API.

Everything is read from the environment once, at import time, with
defaults suited to local development.
"""

import os

# ----------------------------------------------------------------------------
# Database
# ----------------------------------------------------------------------------

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "maison_parfum")

# ----------------------------------------------------------------------------
# Auth
# ----------------------------------------------------------------------------

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALG = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24 * 7))  # 7 days

ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@maisonparfum.com")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "admin123")

# ----------------------------------------------------------------------------
# Uploads
# ----------------------------------------------------------------------------

UPLOAD_DIR = os.getenv("UPLOAD_DIR", "uploads")
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", 5 * 1024 * 1024))
MAX_UPLOAD_FILES = 10

# ----------------------------------------------------------------------------
# Mail
# ----------------------------------------------------------------------------

SMTP_HOST = os.getenv("SMTP_HOST")
SMTP_PORT = int(os.getenv("SMTP_PORT", 587))
SMTP_USER = os.getenv("SMTP_USER")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
MAIL_FROM = os.getenv("MAIL_FROM", SMTP_USER or "orders@maisonparfum.com")
STORE_NAME = os.getenv("STORE_NAME", "Maison Parfum")

# ----------------------------------------------------------------------------
# Misc
# ----------------------------------------------------------------------------

PROFANITY_FILTER = os.getenv("PROFANITY_FILTER", "on").lower() not in ("off", "0", "false", "no")
ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower()
PORT = int(os.getenv("PORT", 8000))
