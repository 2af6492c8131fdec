import os

from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.requests import Request


def get_real_ip(request: Request) -> str:
    """Client IP for rate-limit keys.

    X-Forwarded-For is only trusted when TRUSTED_PROXY_COUNT is set; the
    entry added by the outermost trusted proxy is used so a client cannot
    spoof its own key.
    """
    trusted_proxy_count = int(os.getenv("TRUSTED_PROXY_COUNT", "0"))
    if trusted_proxy_count > 0:
        forwarded = request.headers.get("X-Forwarded-For", "")
        if forwarded:
            ips = [ip.strip() for ip in forwarded.split(",") if ip.strip()]
            if ips:
                return ips[max(0, len(ips) - trusted_proxy_count)]
    return get_remote_address(request)


def _get_storage_uri() -> str | None:
    """Shared Redis storage when a non-local REDIS_URL is configured, in-memory otherwise."""
    from app.config import settings

    if settings.REDIS_URL and "localhost" not in settings.REDIS_URL:
        return settings.REDIS_URL
    return None


_is_dev = os.getenv("APP_ENV", "development") == "development"

limiter = Limiter(
    key_func=get_real_ip,
    storage_uri=_get_storage_uri(),
    default_limits=["200/minute" if _is_dev else "60/minute"],
)

# Creating a booking places a slot hold; keep it tight to stop hold flooding.
BOOKING_RATE_LIMIT = "30/minute" if _is_dev else "10/minute"
# PayHere retries aggressively from a small set of IPs.
WEBHOOK_RATE_LIMIT = "300/minute" if _is_dev else "120/minute"
WITHDRAWAL_RATE_LIMIT = "10/minute" if _is_dev else "3/minute"
LIST_RATE_LIMIT = "100/minute" if _is_dev else "30/minute"
