"""Late-bound hooks the routers and repositories resolve at call time."""
from __future__ import annotations

from typing import Any, Callable, Optional

_get_conn: Optional[Callable[[], Any]] = None
_get_current_account: Optional[Callable[..., str]] = None


def configure(
    *,
    get_conn: Callable[[], Any],
    get_current_account: Callable[..., str],
) -> None:
    """Install the connection factory and the bearer-token account resolver."""

    global _get_conn
    global _get_current_account

    _get_conn = get_conn
    _get_current_account = get_current_account


def _require(value: Optional[Any], name: str) -> Any:
    if value is None:
        raise RuntimeError(f"kwapps.app_context.configure() has not been called ({name} missing)")
    return value


def get_conn() -> Any:
    conn_factory = _require(_get_conn, "get_conn")
    return conn_factory()


def get_current_account(*args: Any, **kwargs: Any) -> str:
    dependency = _require(_get_current_account, "get_current_account")
    return dependency(*args, **kwargs)
