# app/core/limiter.py
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address

from app.core.config import settings

# Single limiter instance for the entire app
limiter = Limiter(key_func=get_remote_address, storage_uri=settings.RATE_LIMIT_STORAGE_URL)

# Export everything needed
__all__ = [
    "limiter",
    "_rate_limit_exceeded_handler"
]
