# backend/settlehub/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/settlehub.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///settlehub.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Bearer tokens
    JWT_SECRET_KEY = os.environ.get("JWT_SECRET_KEY", SECRET_KEY)
    JWT_ALGORITHM = os.environ.get("JWT_ALGORITHM", "HS256")
    JWT_EXPIRES_MINUTES = int(os.environ.get("JWT_EXPIRES_MINUTES", "60"))

    BCRYPT_ROUNDS = int(os.environ.get("BCRYPT_ROUNDS", "12"))

    # Toss Payments (hosted checkout confirmation)
    TOSS_SECRET_KEY = os.environ.get("TOSS_SECRET_KEY", "")
    TOSS_API_BASE_URL = os.environ.get("TOSS_API_BASE_URL", "https://api.tosspayments.com")
    TOSS_TIMEOUT_SECONDS = float(os.environ.get("TOSS_TIMEOUT_SECONDS", "10"))

    # 300 bps = 3% platform commission
    SETTLEMENT_COMMISSION_BPS = int(os.environ.get("SETTLEMENT_COMMISSION_BPS", "300"))

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    CORS_ORIGINS = [
        o.strip()
        for o in os.environ.get(
            "CORS_ORIGINS",
            "http://localhost:5173,http://127.0.0.1:5173,http://localhost:4173,http://127.0.0.1:4173",
        ).split(",")
        if o.strip()
    ]
