"""Invariant markers for awaitguard internals."""

from __future__ import annotations

from typing import NoReturn

from awaitguard.exceptions import NeverThrown


def _render_env(env: dict[str, object]) -> str:
    if not env:
        return ""
    parts = [f"{key}={env[key]!r}" for key in sorted(env)]
    return f" ({', '.join(parts)})"


def never(reason: str = "", **env: object) -> NoReturn:
    """Mark a code path as intentionally unreachable.

    The optional env payload is attached to the raised exception for
    debugging; it is not evaluated otherwise.
    """
    message = reason or "never() marker reached"
    raise NeverThrown(f"{message}{_render_env(env)}", env=env)
