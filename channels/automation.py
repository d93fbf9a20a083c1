"""
Browser automation boundary.

The human-simulation layer (mouse paths, typing cadence, scrolling) lives in
the remote browser controller; messengers only ask it to perform a named
action against a profile and read back the outcome.

Controller contract:
  POST {base_url}/actions
    {"action": "linkedin.connect", "target": profile_url, "content": text,
     "options": {...}}
  200 → {"message_id": "...", "metadata": {...}}
  4xx/5xx with {"error": {"code": "PRIVATE_ACCOUNT", "retryable": false}}
"""
from __future__ import annotations

import abc
import structlog
from typing import Any, Optional

import httpx

logger = structlog.get_logger()


class AutomationError(Exception):
    """A classified failure reported by the automation layer."""

    def __init__(self, code: str, retryable: Optional[bool] = None, detail: str = ""):
        self.code = code
        self.retryable = retryable
        self.detail = detail
        super().__init__(detail or code)


class BrowserAutomation(abc.ABC):
    """Performs one platform action in a browser session."""

    @abc.abstractmethod
    async def perform(
        self, action: str, target: str, content: str = "", options: dict[str, Any] = None,
    ) -> dict[str, Any]:
        """Return ``{"message_id": ..., "metadata": {...}}`` or raise AutomationError."""
        ...

    async def close(self) -> None:
        pass


class RemoteBrowserAutomation(BrowserAutomation):
    """HTTP client for the remote browser controller."""

    def __init__(self, base_url: str, api_key: str = "", timeout: float = 120.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=httpx.Timeout(self.timeout, connect=10.0),
                transport=self._transport,
            )
        return self._client

    async def perform(
        self, action: str, target: str, content: str = "", options: dict[str, Any] = None,
    ) -> dict[str, Any]:
        client = await self._get_client()
        try:
            response = await client.post("/actions", json={
                "action": action,
                "target": target,
                "content": content,
                "options": options or {},
            })
        except httpx.TransportError as e:
            logger.warning("browser_controller_unreachable", action=action, error=str(e))
            raise AutomationError("NETWORK_ERROR", retryable=True, detail=str(e)) from e

        if response.status_code == 429:
            raise AutomationError("RATE_LIMITED", retryable=True)

        if response.is_error:
            error = self._error_body(response)
            if error.get("code"):
                raise AutomationError(error["code"], error.get("retryable"), error.get("message", ""))
            response.raise_for_status()

        body = response.json()
        return {
            "message_id": body.get("message_id", ""),
            "metadata": body.get("metadata") or {},
        }

    @staticmethod
    def _error_body(response: httpx.Response) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        error = body.get("error") if isinstance(body, dict) else None
        return error if isinstance(error, dict) else {}

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()


class UnavailableAutomation(BrowserAutomation):
    """Used when no browser controller is configured; every send fails terminally."""

    async def perform(
        self, action: str, target: str, content: str = "", options: dict[str, Any] = None,
    ) -> dict[str, Any]:
        raise AutomationError("AUTOMATION_UNAVAILABLE", retryable=False)
