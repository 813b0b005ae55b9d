import hmac

from fastapi import HTTPException, Request

from app.core.config import settings


def require_admin(request: Request) -> str:
    """Authorize an admin request by its ``Authorization: Bearer`` key.

    Returns the admin identity recorded as provenance on admin actions
    (``X-Admin-Id`` header, defaulting to ``"admin"``).
    """
    if not settings.ADMIN_API_KEY:
        raise HTTPException(status_code=503, detail="Admin API is not configured")

    auth_header = request.headers.get("Authorization")
    if not auth_header:
        raise HTTPException(status_code=401, detail="API key is required")

    if not auth_header.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Invalid authorization header format")

    raw_key = auth_header[7:]
    if not hmac.compare_digest(raw_key.encode(), settings.ADMIN_API_KEY.encode()):
        raise HTTPException(status_code=401, detail="Invalid API key")

    return request.headers.get("X-Admin-Id") or "admin"
