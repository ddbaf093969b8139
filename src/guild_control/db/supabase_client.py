"""Async PostgREST + auth admin client for Supabase.

The single point of Supabase HTTP interaction for guild repositories. Uses
the service-role key, so it bypasses row-level security; ownership is
enforced by the orchestrator, not the database.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Sequence

import httpx

from .errors import SupabaseError, error_class_for_status

logger = logging.getLogger(__name__)

# Module-level shared client for connection pooling in app runtimes/tests.
_shared_async_client: httpx.AsyncClient | None = None


def _get_shared_async_client() -> httpx.AsyncClient:
    global _shared_async_client
    if _shared_async_client is None:
        _shared_async_client = httpx.AsyncClient()
    return _shared_async_client


def _reset_shared_async_client_for_tests() -> None:
    """Test helper: clear shared client cache (does not close the instance)."""
    global _shared_async_client
    _shared_async_client = None


@dataclass(frozen=True, slots=True)
class PostgrestFilter:
    column: str
    op: str
    value: Any


Filters = Sequence[PostgrestFilter] | Mapping[str, tuple[str, Any] | Any] | None


def _encode_filter_value(op: str, value: Any) -> str:
    if op == "is":
        if value is None:
            return "null"
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    if op == "in":
        if not isinstance(value, (list, tuple, set, frozenset)):
            raise ValueError("in operator requires an iterable of values")
        # Strings are quoted inside in.(...); sorted for stable query strings.
        items = [
            json.dumps(v) if isinstance(v, str) else ("null" if v is None else str(v))
            for v in sorted(value, key=str)
        ]
        return f"({','.join(items)})"

    if value is None:
        raise ValueError(f"{op} does not support None; use op='is' with value=None")
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _filters_to_params(filters: Filters) -> dict[str, str]:
    if not filters:
        return {}

    if isinstance(filters, Mapping):
        pairs: Iterable[tuple[str, str, Any]] = (
            (str(col), *(spec if isinstance(spec, tuple) and len(spec) == 2 else ("eq", spec)))
            for col, spec in filters.items()
        )
    else:
        pairs = ((f.column, f.op, f.value) for f in filters)

    return {col: f"{op}.{_encode_filter_value(str(op), val)}" for col, op, val in pairs}


class SupabaseClient:
    """Minimal async Supabase client (service role)."""

    def __init__(
        self,
        *,
        supabase_url: str,
        service_role_key: str,
        schema: str = "public",
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        if not supabase_url:
            raise ValueError("supabase_url is required")
        if not service_role_key:
            raise ValueError("service_role_key is required")

        self._supabase_url = supabase_url.rstrip("/")
        self._service_role_key = service_role_key
        self._schema = schema or "public"
        self._timeout_seconds = float(timeout_seconds)
        self._client = http_client or _get_shared_async_client()

    @property
    def base_rest_url(self) -> str:
        return f"{self._supabase_url}/rest/v1"

    @property
    def base_auth_url(self) -> str:
        return f"{self._supabase_url}/auth/v1"

    def _headers(self, method: str, *, representation: bool = False) -> dict[str, str]:
        # Never log these headers.
        headers = {
            "apikey": self._service_role_key,
            "Authorization": f"Bearer {self._service_role_key}",
            "Accept-Profile": self._schema,
        }
        if method in ("POST", "PATCH", "DELETE"):
            headers["Content-Profile"] = self._schema
        if representation:
            headers["Prefer"] = "return=representation"
        return headers

    def _raise_for_error(self, resp: httpx.Response) -> None:
        if resp.status_code < 400:
            return

        message = resp.text
        code = details = hint = None
        try:
            payload = resp.json()
        except ValueError:
            payload = None
        if isinstance(payload, dict):
            message = payload.get("message") or payload.get("msg") or message
            code = payload.get("code")
            details = payload.get("details")
            hint = payload.get("hint")

        err_cls = error_class_for_status(resp.status_code)
        raise err_cls(
            status_code=resp.status_code,
            message=message,
            code=str(code) if code is not None else None,
            details=details,
            hint=hint,
        )

    async def _send(
        self,
        method: str,
        url: str,
        *,
        params: Mapping[str, str] | None = None,
        json_body: Any = None,
        representation: bool = False,
    ) -> httpx.Response:
        kwargs: dict[str, Any] = {
            "headers": self._headers(method, representation=representation),
            "timeout": self._timeout_seconds,
        }
        if params:
            kwargs["params"] = dict(params)
        if json_body is not None:
            kwargs["json"] = json_body
        resp = await self._client.request(method, url, **kwargs)
        self._raise_for_error(resp)
        return resp

    async def _send_for_rows(self, method: str, table: str, **kwargs: Any) -> list[dict[str, Any]]:
        resp = await self._send(method, f"{self.base_rest_url}/{table}", **kwargs)
        payload = resp.json()
        if not isinstance(payload, list):
            raise SupabaseError(
                status_code=500,
                message=f"expected list response from {method} {table}",
            )
        return payload

    # ── PostgREST ──────────────────────────────────────────────────

    async def select(
        self,
        table: str,
        filters: Filters = None,
        *,
        columns: str = "*",
        limit: int | None = None,
        order: str | None = None,
    ) -> list[dict[str, Any]]:
        params = _filters_to_params(filters)
        params["select"] = columns
        if limit is not None:
            params["limit"] = str(int(limit))
        if order:
            params["order"] = order
        return await self._send_for_rows("GET", table, params=params)

    async def insert(self, table: str, data: Mapping[str, Any]) -> list[dict[str, Any]]:
        return await self._send_for_rows(
            "POST", table, json_body=dict(data), representation=True,
        )

    async def update(
        self,
        table: str,
        filters: Filters,
        data: Mapping[str, Any],
    ) -> list[dict[str, Any]]:
        """PATCH matching rows; an empty list means nothing matched."""
        if not filters:
            raise ValueError("update requires at least one filter")
        return await self._send_for_rows(
            "PATCH",
            table,
            params=_filters_to_params(filters),
            json_body=dict(data),
            representation=True,
        )

    async def delete(self, table: str, filters: Filters) -> list[dict[str, Any]]:
        if not filters:
            raise ValueError("delete requires at least one filter")
        return await self._send_for_rows(
            "DELETE",
            table,
            params=_filters_to_params(filters),
            representation=True,
        )

    async def rpc(self, function_name: str, params: Mapping[str, Any] | None = None) -> Any:
        resp = await self._send(
            "POST",
            f"{self.base_rest_url}/rpc/{function_name}",
            json_body=dict(params or {}),
        )
        if not resp.content:
            return None
        return resp.json()

    # ── Auth admin ─────────────────────────────────────────────────

    async def delete_auth_user(self, user_id: str) -> None:
        await self._send("DELETE", f"{self.base_auth_url}/admin/users/{user_id}")
        logger.info("Deleted auth user %s", user_id, extra={"user_id": user_id})
