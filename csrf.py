"""
Origin validation for state-changing browser requests.
"""

import os
import logging
from typing import List, Optional
from urllib.parse import urlsplit

from fastapi import Request
from dotenv import load_dotenv

from errors import CsrfError

load_dotenv()

logger = logging.getLogger(__name__)

APP_BASE_URL = os.getenv("APP_BASE_URL", "http://localhost:3000")
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "")
APP_ENV = os.getenv("APP_ENV", "development")

SAFE_METHODS = {"GET", "HEAD", "OPTIONS"}
DEV_ORIGINS = ["http://localhost:3000", "http://127.0.0.1:3000"]


def _origin_of(url: str) -> Optional[str]:
    try:
        parts = urlsplit(url.strip())
    except ValueError:
        return None
    if not parts.scheme or not parts.netloc:
        return None
    return f"{parts.scheme.lower()}://{parts.netloc.lower()}"


def allowed_origins() -> List[str]:
    candidates = [APP_BASE_URL]
    if APP_ENV != "production":
        candidates.extend(DEV_ORIGINS)
    candidates.extend(o for o in ALLOWED_ORIGINS.split(",") if o.strip())
    origins = []
    for candidate in candidates:
        origin = _origin_of(candidate)
        if origin and origin not in origins:
            origins.append(origin)
    return origins


def validate_origin(request: Request) -> bool:
    origin = request.headers.get("Origin")
    if origin:
        return _origin_of(origin) in allowed_origins()

    referer = request.headers.get("Referer")
    if referer:
        return _origin_of(referer) in allowed_origins()

    # Neither header: non-browser clients pass in development only
    return APP_ENV != "production"


def csrf_protect(request: Request):
    """Route dependency for mutating endpoints."""
    if request.method.upper() in SAFE_METHODS:
        return
    if not validate_origin(request):
        logger.warning(
            f"CSRF protection triggered: {request.method} {request.url.path} "
            f"origin={request.headers.get('Origin')} referer={request.headers.get('Referer')}"
        )
        raise CsrfError("Request origin not allowed")
