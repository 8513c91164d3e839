from __future__ import annotations

import re
from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def get_log_context() -> dict[str, str | None]:
    return {"correlation_id": get_correlation_id()}


_WORKSPACE_PATH_RE = re.compile(r"^/api/workspaces/([0-9a-fA-F-]{36})(?:/|$)")


def workspace_id_from_path(path: str) -> str | None:
    match = _WORKSPACE_PATH_RE.match(path)
    return match.group(1).lower() if match else None
