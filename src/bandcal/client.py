"""HTTP client for the hosted availability backend (PostgREST conventions)."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping, Optional, Protocol
from uuid import uuid4

import httpx
from pydantic import SecretStr

from .config import Settings
from .exceptions import (
    StoreAuthError,
    StoreConnectionError,
    StoreNotFoundError,
    StoreRequestError,
)
from .models import FinalAvailabilityRow

logger = logging.getLogger(__name__)

Record = dict[str, Any]

FINAL_AVAILABILITY_RPC = "get_band_availability_with_bandmates"
BANDMATE_AVAILABILITY_RPC = "get_bandmate_availability_by_token"
UPDATE_BANDMATE_AVAILABILITY_RPC = "update_bandmate_availability_by_token"
BANDMATE_BY_TOKEN_RPC = "get_bandmate_by_token"
BAND_CALENDAR_BY_TOKEN_RPC = "get_band_calendar_by_bandmate_token"


class RecordStore(Protocol):
    async def upsert(
        self, table: str, key_fields: Mapping[str, Any], value_fields: Mapping[str, Any]
    ) -> Record: ...

    async def query(
        self,
        table: str,
        filters: Optional[Mapping[str, Any]] = None,
        order: Optional[str] = None,
    ) -> list[Record]: ...


class AggregationFunction(Protocol):
    async def get_final_availability(self, band_id: str) -> list[FinalAvailabilityRow]: ...


def _secret_value(value: SecretStr | str | None) -> str:
    if value is None:
        return ""
    if isinstance(value, SecretStr):
        return value.get_secret_value()
    return str(value)


def _filter_value(value: Any) -> str:
    if isinstance(value, bool):
        return f"eq.{str(value).lower()}"
    if isinstance(value, (list, tuple, set, frozenset)):
        return f"in.({','.join(str(item) for item in value)})"
    return f"eq.{value}"


def build_filter_params(filters: Optional[Mapping[str, Any]]) -> dict[str, str]:
    """Translate ``{column: value}`` into PostgREST query parameters."""
    if not filters:
        return {}
    return {column: _filter_value(value) for column, value in filters.items()}


class BackendClient:
    """Record store and aggregation RPC client for the availability backend."""

    def __init__(
        self,
        settings: Settings,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings
        self.http = http or httpx.AsyncClient(
            base_url=settings.api_base_url,
            timeout=httpx.Timeout(
                connect=10.0,
                read=settings.request_timeout_seconds,
                write=10.0,
                pool=10.0,
            ),
        )

    async def aclose(self) -> None:
        await self.http.aclose()

    async def __aenter__(self) -> "BackendClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    def _headers(self) -> dict[str, str]:
        key = _secret_value(self.settings.api_key).strip()
        headers = {"X-Request-Id": str(uuid4())}
        if key:
            headers["apikey"] = key
            headers["Authorization"] = f"Bearer {key}"
        return headers

    async def call(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        request_headers = self._headers()
        if headers:
            request_headers.update(headers)
        try:
            response = await self.http.request(
                method,
                path,
                params=params,
                json=json,
                headers=request_headers,
            )
        except httpx.TimeoutException as exc:
            raise StoreConnectionError(f"backend_timeout: Request to {path} timed out") from exc
        except httpx.HTTPError as exc:
            raise StoreConnectionError(f"backend_connection_failed: {exc}") from exc

        if response.status_code in {401, 403}:
            raise StoreAuthError("backend_auth_failed")
        if response.status_code == 404:
            raise StoreNotFoundError("backend_not_found", details={"path": path})
        if response.status_code >= 400:
            detail: Any
            try:
                detail = response.json()
            except ValueError:
                detail = response.text
            logger.warning(
                "backend_request_failed",
                extra={"path": path, "status_code": response.status_code},
            )
            raise StoreRequestError(
                f"backend_error_{response.status_code}",
                status_code=response.status_code,
                details={"path": path, "body": detail},
            )

        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return {"status_code": response.status_code, "text": response.text}

    async def upsert(
        self, table: str, key_fields: Mapping[str, Any], value_fields: Mapping[str, Any]
    ) -> Record:
        payload = {**key_fields, **value_fields}
        data = await self.call(
            "POST",
            f"/rest/v1/{table}",
            params={"on_conflict": ",".join(key_fields)},
            json=payload,
            headers={"Prefer": "resolution=merge-duplicates,return=representation"},
        )
        if isinstance(data, list):
            return data[0] if data else payload
        return data or payload

    async def query(
        self,
        table: str,
        filters: Optional[Mapping[str, Any]] = None,
        order: Optional[str] = None,
    ) -> list[Record]:
        params: dict[str, Any] = {"select": "*", **build_filter_params(filters)}
        if order:
            params["order"] = order
        data = await self.call("GET", f"/rest/v1/{table}", params=params)
        return list(data or [])

    async def rpc(self, function: str, params: Mapping[str, Any]) -> Any:
        return await self.call("POST", f"/rest/v1/rpc/{function}", json=dict(params))

    async def get_final_availability(self, band_id: str) -> list[FinalAvailabilityRow]:
        rows = await self.rpc(FINAL_AVAILABILITY_RPC, {"p_band_id": band_id})
        return [FinalAvailabilityRow.model_validate(row) for row in _as_rows(rows)]

    async def get_bandmate_by_token(self, token: str) -> list[Record]:
        rows = await self.rpc(BANDMATE_BY_TOKEN_RPC, {"p_token": token})
        return _as_rows(rows)

    async def get_band_calendar_by_token(self, token: str) -> list[Record]:
        rows = await self.rpc(BAND_CALENDAR_BY_TOKEN_RPC, {"p_token": token})
        return _as_rows(rows)

    async def get_bandmate_availability(self, token: str) -> list[Record]:
        rows = await self.rpc(BANDMATE_AVAILABILITY_RPC, {"p_token": token})
        return _as_rows(rows)

    async def update_bandmate_availability(
        self, token: str, date: str, is_unavailable: bool
    ) -> Any:
        try:
            return await self.rpc(
                UPDATE_BANDMATE_AVAILABILITY_RPC,
                {"p_token": token, "p_date": date, "p_is_unavailable": is_unavailable},
            )
        except StoreRequestError as exc:
            body = exc.details.get("body")
            if isinstance(body, dict) and body.get("message") == "Invalid token":
                raise StoreNotFoundError("invalid_bandmate_token") from exc
            raise


def _as_rows(data: Any) -> list[Record]:
    if data is None:
        return []
    if isinstance(data, dict):
        return [data]
    if isinstance(data, Iterable) and not isinstance(data, (str, bytes)):
        return list(data)
    return []

