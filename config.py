# config.py
import os
import logging

# ================== Database ==================
def normalize_database_url(url: str) -> str:
    url = (url or "").strip()
    if not url:
        return "sqlite:///./data.db"
    # SQLAlchemy expects postgresql:// not postgres://
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    return url

DATABASE_URL = normalize_database_url(os.getenv("DATABASE_URL", ""))
# CA bundle for TLS to managed MySQL (Aiven and the like)
MYSQL_CA = os.getenv("MYSQL_CA")
SQLITE_BUSY_TIMEOUT = float(os.getenv("SQLITE_BUSY_TIMEOUT", "30"))

# ================== Admin ==================
ADMIN_TOKEN = os.getenv("ADMIN_TOKEN", "change-me")
ADMIN_UI_PROTECT = os.getenv("ADMIN_UI_PROTECT", "1").lower() not in ("0", "false", "no")

# ================== Packages ==================
APK_STORAGE_ROOT = os.getenv("APK_STORAGE_ROOT", "/srv/apk").rstrip("/")

# ================== Tokens & resolution ==================
# token values are prefix + 40 chars and the column is 64 wide
TOKEN_PREFIX = os.getenv("TOKEN_PREFIX", "JKT")[:24]
TOKEN_GENERATION_ATTEMPTS = int(os.getenv("TOKEN_GENERATION_ATTEMPTS", "5"))
RESOLVE_ATTEMPTS = int(os.getenv("RESOLVE_ATTEMPTS", "3"))
RESOLVE_BACKOFF_SECONDS = float(os.getenv("RESOLVE_BACKOFF_SECONDS", "0.05"))

# ================== Logging ==================
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

def configure_logging(level: str = LOG_LEVEL) -> None:
    """Install one stream handler on the root logger (idempotent)."""
    root = logging.getLogger()
    if not any(getattr(h, "_apkstore", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._apkstore = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    root.setLevel(level)
