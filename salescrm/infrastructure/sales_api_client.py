"""
httpx implementation of the pipeline gateway against the clinic REST API.
"""

from __future__ import annotations

from typing import Any, TypeVar

import httpx
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from ..domain.pipeline.models import Label, Note, Opportunity, Stage
from ..errors import NotFoundError, PipelineError, TransportError
from ..observability.logging import get_logger
from ..repositories.pipeline_gateway import PipelineGateway
from ..settings import Settings, get_settings
from .retry import RetryPolicy, call_with_retry

log = get_logger("sales_api_client")

M = TypeVar("M", bound=BaseModel)


def _server_message(r: httpx.Response) -> str | None:
    try:
        data = r.json() if r.content else None
    except ValueError:
        return None
    if isinstance(data, dict):
        msg = data.get("error") or data.get("message")
        if msg and str(msg).strip():
            return str(msg).strip()
    return None


def _error_from_response(r: httpx.Response, *, operation: str, entity_id: str | None) -> PipelineError:
    status = int(r.status_code)
    remote = _server_message(r)
    message = remote or f"Clinic API returned HTTP {status}"
    if status == 404:
        return NotFoundError(
            message=message,
            operation=operation,
            entity_id=entity_id,
            status=status,
            remote_message=remote,
        )
    return TransportError(
        message=message,
        operation=operation,
        entity_id=entity_id,
        status=status,
        retryable=status == 429 or status >= 500,
        remote_message=remote,
    )


def _parse(model: type[M], data: Any, *, operation: str) -> M:
    if not isinstance(data, dict):
        raise TransportError(message="Clinic API returned an invalid payload", operation=operation)
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        raise TransportError(message="Clinic API returned an invalid payload", operation=operation, cause=e) from e


def _parse_optional(model: type[M], data: Any, *, operation: str) -> M | None:
    # Mutations may answer 204 or a bare {"success": true}.
    if not isinstance(data, dict) or "id" not in data:
        return None
    return _parse(model, data, operation=operation)


def _parse_list(model: type[M], data: Any, *, operation: str) -> list[M]:
    if not isinstance(data, list):
        raise TransportError(message="Clinic API returned an invalid payload", operation=operation)
    return [_parse(model, it, operation=operation) for it in data]


class SalesApiClient(PipelineGateway):
    def __init__(
        self,
        *,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        s = settings or get_settings()
        headers = {"Accept": "application/json"}
        if s.api_token:
            headers["Authorization"] = f"Bearer {s.api_token}"
        self._client = httpx.AsyncClient(
            base_url=s.api_base_url.rstrip("/"),
            headers=headers,
            timeout=s.api_timeout_s,
            transport=transport,
        )
        self._retry_policy = retry_policy or RetryPolicy(
            max_attempts=s.read_retry_attempts,
            base_delay_s=s.retry_base_delay_s,
            max_delay_s=s.retry_max_delay_s,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "SalesApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        entity_id: str | None = None,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> Any:
        try:
            r = await self._client.request(method, path, params=params, json=json)
        except httpx.TimeoutException as e:
            raise TransportError(
                message="Clinic API request timed out",
                operation=operation,
                entity_id=entity_id,
                retryable=True,
                cause=e,
            ) from e
        except httpx.HTTPError as e:
            raise TransportError(
                message="Clinic API is unreachable",
                operation=operation,
                entity_id=entity_id,
                retryable=True,
                cause=e,
            ) from e

        if r.status_code >= 400:
            err = _error_from_response(r, operation=operation, entity_id=entity_id)
            log.warning(
                "clinic_api_error",
                operation=operation,
                method=method,
                path=path,
                status=r.status_code,
                error=str(err),
            )
            raise err

        if not r.content:
            return None
        try:
            return r.json()
        except ValueError as e:
            raise TransportError(
                message="Clinic API returned an invalid payload",
                operation=operation,
                entity_id=entity_id,
                cause=e,
            ) from e

    async def _get(self, path: str, *, operation: str, entity_id: str | None = None, params: dict[str, Any] | None = None) -> Any:
        return await call_with_retry(
            operation,
            lambda: self._request("GET", path, operation=operation, entity_id=entity_id, params=params),
            retry_policy=self._retry_policy,
        )

    # ---- reads ----
    async def fetch_stages(self) -> list[Stage]:
        data = await self._get("/sales/stages", operation="fetch_stages")
        return _parse_list(Stage, data, operation="fetch_stages")

    async def fetch_opportunities(self) -> list[Opportunity]:
        data = await self._get("/sales/opportunities", operation="fetch_opportunities")
        return _parse_list(Opportunity, data, operation="fetch_opportunities")

    async def fetch_opportunity(self, opportunity_id: str) -> Opportunity:
        data = await self._get(
            f"/sales/opportunities/{opportunity_id}",
            operation="fetch_opportunity",
            entity_id=opportunity_id,
        )
        return _parse(Opportunity, data, operation="fetch_opportunity")

    async def fetch_notes(self, opportunity_id: str) -> list[Note]:
        data = await self._get(
            f"/sales/opportunities/{opportunity_id}/notes",
            operation="fetch_notes",
            entity_id=opportunity_id,
        )
        return _parse_list(Note, data, operation="fetch_notes")

    async def fetch_labels(self, context: str | None = None) -> list[Label]:
        data = await self._get("/labels", operation="fetch_labels", params={"is_active": "true"})
        labels = _parse_list(Label, data, operation="fetch_labels")
        if context is None:
            return labels
        return [lb for lb in labels if lb.context == context or not lb.context]

    # ---- stages ----
    async def create_stage(self, name: str, order_position: int) -> Stage | None:
        data = await self._request(
            "POST",
            "/sales/stages",
            operation="create_stage",
            json={"name": name, "order_position": int(order_position)},
        )
        return _parse_optional(Stage, data, operation="create_stage")

    async def rename_stage(self, stage_id: str, name: str) -> Stage | None:
        data = await self._request(
            "PUT",
            f"/sales/stages/{stage_id}",
            operation="rename_stage",
            entity_id=stage_id,
            json={"name": name},
        )
        return _parse_optional(Stage, data, operation="rename_stage")

    async def delete_stage(self, stage_id: str) -> None:
        await self._request("DELETE", f"/sales/stages/{stage_id}", operation="delete_stage", entity_id=stage_id)

    # ---- opportunities ----
    async def create_opportunity(self, fields: dict[str, Any]) -> Opportunity | None:
        data = await self._request("POST", "/sales/opportunities", operation="create_opportunity", json=fields)
        return _parse_optional(Opportunity, data, operation="create_opportunity")

    async def update_opportunity(self, opportunity_id: str, fields: dict[str, Any]) -> Opportunity | None:
        data = await self._request(
            "PUT",
            f"/sales/opportunities/{opportunity_id}",
            operation="update_opportunity",
            entity_id=opportunity_id,
            json=fields,
        )
        return _parse_optional(Opportunity, data, operation="update_opportunity")

    async def delete_opportunity(self, opportunity_id: str) -> None:
        await self._request(
            "DELETE",
            f"/sales/opportunities/{opportunity_id}",
            operation="delete_opportunity",
            entity_id=opportunity_id,
        )

    # ---- notes / labels ----
    async def create_note(self, opportunity_id: str, content: str) -> Note | None:
        data = await self._request(
            "POST",
            "/sales/notes",
            operation="create_note",
            entity_id=opportunity_id,
            json={"opportunity_id": opportunity_id, "content": content},
        )
        return _parse_optional(Note, data, operation="create_note")

    async def create_label(self, name: str, color: str, context: str | None) -> Label | None:
        payload: dict[str, Any] = {"name": name, "color": color}
        if context:
            payload["context"] = context
        data = await self._request("POST", "/labels", operation="create_label", json=payload)
        return _parse_optional(Label, data, operation="create_label")
