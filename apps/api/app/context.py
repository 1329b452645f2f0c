from __future__ import annotations

from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
debug_session_var: ContextVar[str | None] = ContextVar("debug_session_id", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def set_debug_session_id(value: str | None) -> Token[str | None]:
    return debug_session_var.set(value)


def reset_debug_session_id(token: Token[str | None]) -> None:
    debug_session_var.reset(token)


def get_debug_session_id() -> str | None:
    return debug_session_var.get()


def get_log_context() -> dict[str, str | None]:
    return {"correlation_id": get_correlation_id(), "session_id": get_debug_session_id()}
