import secrets

from fastapi import Header, HTTPException, status

from clubsync_api.core.settings import settings


async def require_cron_api_key(x_api_key: str = Header("", alias="X-API-Key")) -> None:
    """Guard operator and cron endpoints; open when no key is configured."""
    if not settings.cron_api_key:
        return

    if not secrets.compare_digest(x_api_key, settings.cron_api_key):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )
