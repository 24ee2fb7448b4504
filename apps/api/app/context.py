from __future__ import annotations

from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
enrollment_id_var: ContextVar[str | None] = ContextVar("enrollment_id", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def set_enrollment_id(value: str | None) -> Token[str | None]:
    return enrollment_id_var.set(value)


def reset_enrollment_id(token: Token[str | None]) -> None:
    enrollment_id_var.reset(token)


def get_enrollment_id() -> str | None:
    return enrollment_id_var.get()


def get_log_context() -> dict[str, str | None]:
    return {"correlation_id": get_correlation_id(), "enrollment_id": get_enrollment_id()}
