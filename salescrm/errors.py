from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(slots=True, eq=False)
class PipelineError(Exception):
    """Base error for board operations.

    Local errors (validation, precondition) are raised before the store is
    touched. Remote errors are raised by the gateway and only reach callers
    after the reconciler has rolled the store back.
    """

    message: str
    operation: str | None = None
    entity_id: str | None = None
    status: int | None = None
    retryable: bool = False
    cause: Exception | None = None
    # Human-readable message sent by the clinic API, when it sent one.
    remote_message: str | None = None

    def __str__(self) -> str:
        return self.message


@dataclass(slots=True, eq=False)
class ValidationError(PipelineError):
    field: str | None = None


@dataclass(slots=True, eq=False)
class PreconditionError(PipelineError):
    pass


@dataclass(slots=True, eq=False)
class NotFoundError(PipelineError):
    pass


@dataclass(slots=True, eq=False)
class TransportError(PipelineError):
    pass


def _default_title(err: PipelineError) -> str:
    if isinstance(err, ValidationError):
        return "Validation Failed"
    if isinstance(err, PreconditionError):
        return "Precondition Failed"
    if isinstance(err, NotFoundError):
        return "Not Found"
    if isinstance(err, TransportError):
        return "Upstream Request Failed"
    return "Error"


def _default_status(err: PipelineError) -> int:
    if err.status:
        return int(err.status)
    if isinstance(err, ValidationError):
        return 422
    if isinstance(err, PreconditionError):
        return 409
    if isinstance(err, NotFoundError):
        return 404
    return 502


def problem_payload(err: PipelineError, *, type: str = "about:blank") -> dict[str, Any]:
    """Render an error as an RFC7807-shaped dict for the presentation layer."""
    payload: dict[str, Any] = {
        "type": type or "about:blank",
        "title": _default_title(err),
        "status": _default_status(err),
    }
    if err.message:
        payload["detail"] = str(err.message)
    if err.operation:
        payload["operation"] = err.operation
    if err.entity_id:
        payload["entityId"] = err.entity_id
    if isinstance(err, ValidationError) and err.field:
        payload["errors"] = [{"loc": [err.field], "msg": err.message}]
    if err.retryable:
        payload["retryable"] = True
    return payload
