from __future__ import annotations

from contextvars import ContextVar, Token
from typing import Any

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
principal_id_var: ContextVar[int | None] = ContextVar("principal_id", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def set_principal_id(value: int | None) -> Token[int | None]:
    """Remember the authenticated user for the rest of the request."""
    return principal_id_var.set(value)


def get_principal_id() -> int | None:
    return principal_id_var.get()


def get_log_context() -> dict[str, Any]:
    return {"correlation_id": get_correlation_id(), "principal_id": get_principal_id()}
