# app/infra/http_client.py
"""
Shared HTTP client sessions for the application.

Provides named, lazy-initialized aiohttp.ClientSession singletons
to avoid per-request session creation overhead and TCP connection churn.

Session profiles
~~~~~~~~~~~~~~~~
- **backend** – job/driver/tracking API calls (total=backend_timeout_seconds, connect=5 s, pool limit=20)
- **push**    – notification delivery      (total=push_timeout_seconds, connect=5 s, pool limit=10)

Per-call timeouts (route optimization) are passed on the request and are
always shorter than the session total.

Shutdown
~~~~~~~~
Call ``close_all_sessions()`` once during application shutdown.
"""
from __future__ import annotations

import aiohttp

from app.config import settings
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

_sessions: dict[str, aiohttp.ClientSession] = {}


def _get_or_create(
    name: str,
    timeout: aiohttp.ClientTimeout,
    limit: int = 10,
) -> aiohttp.ClientSession:
    """Return an existing session or create a new one."""
    session = _sessions.get(name)
    if session is None or session.closed:
        session = aiohttp.ClientSession(
            timeout=timeout,
            connector=aiohttp.TCPConnector(
                keepalive_timeout=30,
                limit=limit,
                enable_cleanup_closed=True,
            ),
        )
        _sessions[name] = session
        logger.debug("HTTP session '%s' created (limit=%d)", name, limit)
    return session


def get_backend_session() -> aiohttp.ClientSession:
    """Session for backend API calls (jobs, drivers, tracking)."""
    return _get_or_create(
        "backend",
        aiohttp.ClientTimeout(total=settings.backend_timeout_seconds, connect=5),
        limit=20,
    )


def get_push_session() -> aiohttp.ClientSession:
    """Session for push notification delivery."""
    return _get_or_create(
        "push",
        aiohttp.ClientTimeout(total=settings.push_timeout_seconds, connect=5),
        limit=10,
    )


async def close_all_sessions() -> None:
    """Gracefully close every managed session.  Call during app shutdown."""
    for name in list(_sessions):
        session = _sessions.pop(name, None)
        if session is not None and not session.closed:
            await session.close()
            logger.debug("HTTP session '%s' closed", name)
