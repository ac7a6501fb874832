import secrets

from fastapi import Header, HTTPException

from .settings import settings


def admin_key_auth(
    x_admin_key: str = Header(default="", alias="X-Admin-Key"),
):
    expected = (settings.ADMIN_API_KEY or "").strip()
    if not expected:
        raise HTTPException(status_code=401, detail="Admin API key not configured")
    if not secrets.compare_digest(x_admin_key.strip(), expected):
        raise HTTPException(status_code=401, detail="Invalid admin API key")
    return True
