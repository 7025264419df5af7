"""Supabase client configuration and initialization.

The timeline backend talks to Supabase with the service role key only:
Celery workers regenerate timelines without any user JWT context, and
every query in the timeline services filters by user_id explicitly.

CONNECTION STABILITY:
Uses HTTP/1.1 instead of HTTP/2 to avoid connection multiplexing issues
with Supabase/Cloudflare that cause ConnectionTerminated errors.
Includes a retrying transport for connection errors.
"""

from functools import lru_cache

import httpx
import structlog
from supabase import Client, create_client
from supabase.lib.client_options import SyncClientOptions

from app.core.config import get_settings

logger = structlog.get_logger(__name__)

_HTTP_TIMEOUT = httpx.Timeout(30.0, connect=10.0)
_HTTP_LIMITS = httpx.Limits(max_keepalive_connections=5, max_connections=10)
_HTTP_RETRIES = 3


def _create_http_client() -> httpx.Client:
    """Create an httpx client pinned to HTTP/1.1 with transport retries."""
    transport = httpx.HTTPTransport(retries=_HTTP_RETRIES, http2=False)
    return httpx.Client(
        transport=transport,
        timeout=_HTTP_TIMEOUT,
        limits=_HTTP_LIMITS,
        http2=False,
    )


@lru_cache(maxsize=1)
def get_service_client() -> Client | None:
    """Get cached Supabase client using the service role key.

    Falls back to the anon key when no service key is set, which is
    enough for local development against permissive policies.

    Returns:
        Supabase client or None if not configured.
    """
    settings = get_settings()
    key = settings.supabase_service_key or settings.supabase_key

    if not settings.supabase_url or not key:
        logger.warning(
            "supabase_not_configured",
            has_url=bool(settings.supabase_url),
            has_key=bool(key),
        )
        return None

    try:
        client = create_client(
            supabase_url=settings.supabase_url,
            supabase_key=key,
            options=SyncClientOptions(httpx_client=_create_http_client()),
        )
    except Exception as e:
        logger.error("supabase_client_creation_failed", error=str(e))
        return None

    logger.info(
        "supabase_client_created",
        using_service_key=bool(settings.supabase_service_key),
        http_version="1.1",
        retries=_HTTP_RETRIES,
    )
    return client
