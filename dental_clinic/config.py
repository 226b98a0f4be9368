from __future__ import annotations

import logging
import os
from pathlib import Path

from dotenv import load_dotenv

PROJECT_DIR = Path(__file__).resolve().parents[1]
load_dotenv(PROJECT_DIR / ".env")

# SQLite file in the project root by default; any SQLAlchemy URL works
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{PROJECT_DIR / 'dental_clinic.sqlite'}")
SQL_ECHO = os.getenv("SQL_ECHO", "0") == "1"

# In production: always set it in the environment
JWT_SECRET = os.getenv("JWT_SECRET", "CHANGE_ME_DEV_SECRET")
JWT_ALG = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("JWT_EXPIRE_MINUTES", "60"))
REFRESH_TOKEN_EXPIRE_DAYS = int(os.getenv("JWT_REFRESH_EXPIRE_DAYS", "7"))

# WhatsApp HTTP gateway (WAHA); organizations may override url/key
WAHA_API_URL = os.getenv("WAHA_API_URL", "http://localhost:3002")
WAHA_API_KEY = os.getenv("WAHA_API_KEY", "")
WAHA_SESSION = os.getenv("WAHA_SESSION", "default")
WAHA_TIMEOUT_SECONDS = float(os.getenv("WAHA_TIMEOUT_SECONDS", "10"))

FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:8501")
UPLOAD_DIR = Path(os.getenv("UPLOAD_DIR", str(PROJECT_DIR / "uploads")))
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


def configure_logging(level: str | None = None) -> None:
    """Configure root logging once (idempotent)."""
    logging.basicConfig(
        level=(level or LOG_LEVEL).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

# demo organization and catalog on API startup (idempotent)
SEED_DEMO = os.getenv("SEED_DEMO", "1") == "1"
DEMO_PASSWORD = os.getenv("DEMO_PASSWORD", "changeme123")
