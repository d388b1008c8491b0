from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum
from itertools import count

from awaitguard.execution_context import ExecutionContext
from awaitguard.invariants import never
from awaitguard.stack_trace import CallLabel, CapturedStack

_SCOPE_IDS = count(1)


class ScopeState(str, Enum):
    ACTIVE = "active"
    COMPLETING = "completing"
    CLOSED = "closed"
    LEAKED = "leaked"

    @property
    def terminal(self) -> bool:
        return self in (ScopeState.CLOSED, ScopeState.LEAKED)


@dataclass(eq=False)
class Scope:
    """One in-flight guarded call."""

    creation_stack: CapturedStack
    context: ExecutionContext
    label: CallLabel | None = None
    state: ScopeState = ScopeState.ACTIVE
    scope_id: int = field(default_factory=lambda: next(_SCOPE_IDS))

    def __repr__(self) -> str:
        return f"Scope(#{self.scope_id}, {self.state.value})"


class ScopeStack:
    """Ordered record of the guarded scopes that have not settled yet."""

    def __init__(self) -> None:
        self._scopes: list[Scope] = []

    def __len__(self) -> int:
        return len(self._scopes)

    def __bool__(self) -> bool:
        return bool(self._scopes)

    def __iter__(self) -> Iterator[Scope]:
        return iter(tuple(self._scopes))

    def __contains__(self, scope: object) -> bool:
        return any(entry is scope for entry in self._scopes)

    @property
    def last(self) -> Scope:
        if not self._scopes:
            never("scope stack is empty")
        return self._scopes[-1]

    def push(self, scope: Scope) -> None:
        if scope in self:
            never("scope pushed twice", scope=scope.scope_id)
        self._scopes.append(scope)

    def pop(self) -> Scope:
        if not self._scopes:
            never("pop from empty scope stack")
        return self._scopes.pop()

    def discard(self, scope: Scope) -> None:
        self._scopes = [entry for entry in self._scopes if entry is not scope]

    def close(self, scope: Scope) -> list[Scope]:
        """Pop entries down to and including ``scope``.

        Returns the scopes pushed after ``scope`` that were still open, in
        creation order; each is marked leaked.
        """
        if scope not in self:
            never(
                "closing scope missing from scope stack",
                scope=scope.scope_id,
                depth=len(self._scopes),
            )
        leaked: list[Scope] = []
        while True:
            closed = self.pop()
            if closed is scope:
                break
            closed.state = ScopeState.LEAKED
            leaked.append(closed)
        scope.state = ScopeState.CLOSED
        leaked.reverse()
        return leaked

    def blocking_scope(self, context: ExecutionContext | None) -> Scope:
        """Return the open scope the call from ``context`` collided with.

        That is the scope pushed right after the nearest scope owning
        ``context``; when ``context`` owns no open scope it is the bottom one.
        """
        for index in range(len(self._scopes) - 1, 0, -1):
            if self._scopes[index - 1].context is context:
                return self._scopes[index]
        if not self._scopes:
            never("blocking scope requested from empty scope stack")
        return self._scopes[0]

    def clear(self) -> list[Scope]:
        discarded = list(self._scopes)
        self._scopes.clear()
        for scope in discarded:
            scope.state = ScopeState.LEAKED
        return discarded
