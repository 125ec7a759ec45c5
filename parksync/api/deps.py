import secrets

from fastapi import Header, HTTPException

from parksync.config import settings
from parksync.db import get_db  # noqa: F401


def require_cron_secret(x_cron_secret: str | None = Header(default=None)):
    """Shared-secret check for the sync trigger endpoints."""
    expected = settings.cron_secret
    if not expected:
        raise HTTPException(status_code=503, detail="CRON_SECRET is not configured")
    if not x_cron_secret or not secrets.compare_digest(x_cron_secret, expected):
        raise HTTPException(status_code=401, detail="Invalid cron secret")
    return True
