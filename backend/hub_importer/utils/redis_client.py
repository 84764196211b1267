"""Create Redis clients, including TLS (rediss://) endpoints."""

from __future__ import annotations

import ssl
from typing import Any

from redis import Redis


def create_redis_client(url: str, **kwargs: Any) -> Redis:
    """Create a Redis client from a URL.

    Managed Redis providers commonly terminate TLS with certificates the
    worker image does not trust, so certificate verification is disabled for
    ``rediss://`` URLs unless the caller passes ``ssl_cert_reqs`` explicitly.

    Args:
        url: Redis connection URL (redis:// or rediss://)
        **kwargs: Additional arguments (decode_responses, socket_connect_timeout, etc.)
    """
    if url.startswith("rediss://"):
        kwargs.setdefault("ssl_cert_reqs", ssl.CERT_NONE)
    return Redis.from_url(url, **kwargs)
