"""Async HTTP client for the machines API (Fly.io Machines compatible).

Covers the three resources that make up one guild: the app (namespace),
the volume (persistent disk) and the machine (running container).

Auth uses a bearer token resolved from the secret store on every call.
No retries happen here: a failed call surfaces as ``RemoteAPIError`` and the
caller decides whether to poll again, compensate, or give up.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from ..security.secrets import FLY_API_TOKEN

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.machines.dev/v1"
DEFAULT_ORG = "cordbot"


# ── Exception hierarchy ─────────────────────────────────────────


class RemoteAPIError(Exception):
    """The machines API rejected a request or answered with garbage."""

    def __init__(
        self,
        status_code: int,
        message: str = "",
        *,
        response_body: str = "",
    ) -> None:
        self.status_code = status_code
        self.message = message or f"HTTP {status_code}"
        self.response_body = response_body
        super().__init__(f"Machines API error {status_code}: {self.message}")


class RemoteNotFoundError(RemoteAPIError):
    """Resource not found (404)."""

    def __init__(self, message: str = "Resource not found", **kwargs: Any) -> None:
        super().__init__(404, message, **kwargs)


class RemoteTransportError(RemoteAPIError):
    """The request never produced a response (timeout, connection reset)."""

    def __init__(self, message: str = "Request failed") -> None:
        super().__init__(0, message)


# ── Module-level shared client ───────────────────────────────────

_shared_async_client: httpx.AsyncClient | None = None


def _get_shared_async_client() -> httpx.AsyncClient:
    global _shared_async_client
    if _shared_async_client is None:
        _shared_async_client = httpx.AsyncClient()
    return _shared_async_client


def _reset_shared_async_client_for_tests() -> None:
    global _shared_async_client
    _shared_async_client = None


# ── Client ───────────────────────────────────────────────────────


class MachinesClient:
    """Authenticated wrapper over apps, volumes and machines."""

    def __init__(
        self,
        *,
        secrets: Any,
        base_url: str = DEFAULT_API_URL,
        org_slug: str = DEFAULT_ORG,
        token_secret_name: str = FLY_API_TOKEN,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._secrets = secrets
        self._base_url = base_url.rstrip("/")
        self._org_slug = org_slug
        self._token_secret_name = token_secret_name
        self._client = http_client or _get_shared_async_client()
        self._timeout = float(timeout_seconds)

    def _auth_headers(self) -> dict[str, str]:
        token = self._secrets.get_secret(self._token_secret_name)
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: Any | None = None,
    ) -> Any:
        """Send one request and decode the body. Empty bodies decode to None."""
        url = f"{self._base_url}{path}"
        try:
            resp = await self._client.request(
                method,
                url,
                headers=self._auth_headers(),
                json=json_body,
                timeout=self._timeout,
            )
        except httpx.HTTPError as exc:
            logger.error(
                "Machines API transport failure: %s %s",
                method,
                path,
                extra={"path": path},
            )
            raise RemoteTransportError(str(exc) or exc.__class__.__name__) from exc

        body = resp.text
        data: Any = None
        if body.strip():
            try:
                data = json.loads(body)
            except ValueError:
                logger.error(
                    "Unparsable machines API response: %s %s -> %d",
                    method,
                    path,
                    resp.status_code,
                    extra={"path": path, "status_code": resp.status_code},
                )
                raise RemoteAPIError(
                    resp.status_code,
                    "Invalid response from machines API",
                    response_body=body[:500],
                ) from None

        if resp.status_code >= 300 or resp.status_code < 200:
            message = resp.reason_phrase or f"HTTP {resp.status_code}"
            if isinstance(data, dict):
                message = data.get("error") or data.get("message") or message
            logger.error(
                "Machines API error: %s %s -> %d",
                method,
                path,
                resp.status_code,
                extra={"path": path, "status_code": resp.status_code},
            )
            if resp.status_code == 404:
                raise RemoteNotFoundError(message, response_body=body[:500])
            raise RemoteAPIError(resp.status_code, message, response_body=body[:500])

        return data

    # ── Public API ───────────────────────────────────────────────

    async def create_app(self, name: str) -> Any:
        result = await self._request(
            "POST",
            "/apps",
            json_body={"app_name": name, "org_slug": self._org_slug},
        )
        logger.info("App created: %s", name, extra={"app_name": name})
        return result

    async def create_volume(
        self,
        app_name: str,
        name: str,
        region: str,
        size_gb: int,
    ) -> dict[str, Any]:
        """Create a volume and return its metadata (``id`` is the handle)."""
        result = await self._request(
            "POST",
            f"/apps/{app_name}/volumes",
            json_body={"name": name, "region": region, "size_gb": size_gb},
        )
        return _require_object(result, "create_volume")

    async def create_machine(
        self,
        app_name: str,
        spec: dict[str, Any],
        region: str,
    ) -> dict[str, Any]:
        """Create a machine. ``spec`` carries ``name`` and ``config``."""
        result = await self._request(
            "POST",
            f"/apps/{app_name}/machines",
            json_body={**spec, "region": region},
        )
        return _require_object(result, "create_machine")

    async def get_machine(self, app_name: str, machine_id: str) -> dict[str, Any]:
        result = await self._request("GET", f"/apps/{app_name}/machines/{machine_id}")
        return _require_object(result, "get_machine")

    async def update_machine(
        self,
        app_name: str,
        machine_id: str,
        config: dict[str, Any],
    ) -> Any:
        """Replace the machine config. Does not restart a running machine."""
        return await self._request(
            "POST",
            f"/apps/{app_name}/machines/{machine_id}",
            json_body={"config": config},
        )

    async def restart_machine(self, app_name: str, machine_id: str) -> Any:
        return await self._request(
            "POST",
            f"/apps/{app_name}/machines/{machine_id}/restart",
        )

    async def delete_app(self, app_name: str) -> Any:
        """Delete an app; the platform cascades to its machines and volumes."""
        result = await self._request("DELETE", f"/apps/{app_name}")
        logger.info("App deleted: %s", app_name, extra={"app_name": app_name})
        return result


def _require_object(result: Any, operation: str) -> dict[str, Any]:
    if not isinstance(result, dict):
        raise RemoteAPIError(
            0,
            f"Expected object from {operation}, got {type(result).__name__}",
        )
    return result
