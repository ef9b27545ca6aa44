# app/infra/push_providers.py
"""
Push delivery providers for dispatch notifications.

Supports:
- backend  - POST to the backend notification endpoints
             (``/notifications/send`` for one user,
             ``/notifications/broadcast`` for roles)
- log      - log the message (dev)
- disabled - drop it

Providers return True/False and never raise on transport errors;
the dispatcher already records the notification before calling them.

Usage:
    provider = get_push_provider()
    await provider.send("drv-1", "New Job Assignment", "...", {"type": "job_assignment"})
"""
from __future__ import annotations

import abc
from typing import Any, Optional

import aiohttp

from app.config import settings
from app.infra.http_client import get_push_session
from app.infra.logging_config import get_logger

logger = get_logger(__name__)


class PushProvider(abc.ABC):
    """Abstract base class for push providers"""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Provider name for logging/metrics"""
        pass

    @abc.abstractmethod
    async def send(
        self,
        recipient: Optional[str],
        title: str,
        body: str,
        payload: dict[str, Any],
        roles: Optional[list[str]] = None,
    ) -> bool:
        """
        Deliver one notification. ``recipient`` is None for a role broadcast.

        Returns:
            True if accepted by the provider, False otherwise
        """
        pass

    @abc.abstractmethod
    def is_configured(self) -> bool:
        """Check if provider is properly configured"""
        pass


class BackendPushProvider(PushProvider):
    """
    Delivers through the backend's notification API, which owns device
    tokens and the actual push SDK.
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_token: str | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._base_url = (base_url or settings.backend_base_url or "").rstrip("/")
        self._api_token = api_token if api_token is not None else settings.backend_api_token
        self._session = session

    @property
    def name(self) -> str:
        return "backend"

    def is_configured(self) -> bool:
        return bool(self._base_url)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_token:
            headers["Authorization"] = f"Bearer {self._api_token}"
        return headers

    async def send(
        self,
        recipient: Optional[str],
        title: str,
        body: str,
        payload: dict[str, Any],
        roles: Optional[list[str]] = None,
    ) -> bool:
        if not self.is_configured():
            logger.warning("Backend push provider not configured (backend_base_url missing)")
            return False

        if recipient is None:
            url = f"{self._base_url}/notifications/broadcast"
            body_json = {"title": title, "body": body, "data": payload, "userRoles": roles or []}
        else:
            url = f"{self._base_url}/notifications/send"
            body_json = {"userId": recipient, "title": title, "body": body, "data": payload}

        session = self._session or get_push_session()
        try:
            async with session.post(url, json=body_json, headers=self._headers()) as resp:
                if resp.status >= 400:
                    text = await resp.text()
                    logger.warning(
                        f"Push rejected: status={resp.status} body={text[:200]}",
                        extra={"notification_type": payload.get("type")},
                    )
                    return False
                return True
        except TimeoutError:
            logger.warning(f"Push timed out: {url}")
            return False
        except aiohttp.ClientError as e:
            logger.warning(f"Push transport error: {type(e).__name__}")
            return False


class LogPushProvider(PushProvider):
    """Writes the notification to the log instead of pushing it"""

    @property
    def name(self) -> str:
        return "log"

    def is_configured(self) -> bool:
        return True

    async def send(
        self,
        recipient: Optional[str],
        title: str,
        body: str,
        payload: dict[str, Any],
        roles: Optional[list[str]] = None,
    ) -> bool:
        target = recipient or f"roles={','.join(roles or [])}"
        logger.info(f"[push] -> {target}: {title} | {body}", extra={"job_id": payload.get("job_id")})
        return True


class DisabledPushProvider(PushProvider):
    """Dummy provider when push is disabled"""

    @property
    def name(self) -> str:
        return "disabled"

    def is_configured(self) -> bool:
        return True

    async def send(
        self,
        recipient: Optional[str],
        title: str,
        body: str,
        payload: dict[str, Any],
        roles: Optional[list[str]] = None,
    ) -> bool:
        logger.debug(f"Push disabled, skipping: {payload.get('type')}")
        return True  # Stored notifications are still visible in-app


# Provider registry
_PROVIDERS: dict[str, type[PushProvider]] = {
    "backend": BackendPushProvider,
    "log": LogPushProvider,
    "disabled": DisabledPushProvider,
}


def get_push_provider(name: str | None = None) -> PushProvider:
    """
    Get the configured push provider.

    Returns DisabledPushProvider for unknown names.
    """
    provider_name = name or settings.push_provider

    if provider_name not in _PROVIDERS:
        logger.error(f"Unknown push provider: {provider_name}")
        return DisabledPushProvider()

    provider = _PROVIDERS[provider_name]()

    if not provider.is_configured():
        logger.warning(
            f"Push provider '{provider_name}' not configured, pushes will fail"
        )

    return provider
