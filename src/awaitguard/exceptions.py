"""Exception protocol for awaitguard."""

from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from awaitguard.scopes import Scope
    from awaitguard.stack_trace import ParsedFrame


class GuardError(AssertionError):
    """Base class for guard protocol violations.

    Subclasses ``AssertionError`` so test runners report the violation as an
    ordinary test failure.
    """

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConflictError(GuardError):
    """A guarded call was made outside the body of the pending guarded call."""

    def __init__(
        self,
        message: str,
        *,
        original: ParsedFrame | None = None,
        colliding: ParsedFrame | None = None,
    ) -> None:
        super().__init__(message)
        self.original = original
        self.colliding = colliding


class LeakError(GuardError):
    """One or more guarded calls never completed before their parent closed."""

    def __init__(self, message: str, *, scopes: Sequence[Scope] = ()) -> None:
        super().__init__(message)
        self.scopes = tuple(scopes)


class NeverRaise(RuntimeError):
    """Sentinel exception for internal states that must be unreachable.

    Raising this exception means the scope bookkeeping itself is broken, as
    opposed to the user misusing the guard protocol.
    """

    def __init__(self, message: str, *, env: dict[str, object] | None = None):
        super().__init__(message)
        self.reason = message
        self.env = dict(env or {})


class NeverThrown(NeverRaise):
    """Alias for NeverRaise used by the explicit never() marker."""
