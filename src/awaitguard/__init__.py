"""awaitguard package root."""

from awaitguard.exceptions import ConflictError, GuardError, LeakError, NeverRaise, NeverThrown
from awaitguard.guard import (
    abandoned_scopes,
    guard,
    guard_sync,
    guarded,
    reset_scopes,
    scope_stack,
    verify_all_scopes_closed,
)
from awaitguard.invariants import never
from awaitguard.stack_trace import CallLabel, ParsedFrame

__all__ = [
    "__version__",
    "CallLabel",
    "ConflictError",
    "GuardError",
    "LeakError",
    "NeverRaise",
    "NeverThrown",
    "ParsedFrame",
    "abandoned_scopes",
    "guard",
    "guard_sync",
    "guarded",
    "never",
    "reset_scopes",
    "scope_stack",
    "verify_all_scopes_closed",
]

__version__ = "0.1.0"
