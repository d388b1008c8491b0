from __future__ import annotations

import asyncio
from collections.abc import Coroutine, Iterator
from contextlib import contextmanager
from contextvars import ContextVar, Token
from dataclasses import dataclass
from typing import Any, TypeVar

T = TypeVar("T")


@dataclass(frozen=True, eq=False)
class ExecutionContext:
    """A node in the ambient execution-context tree.

    Contexts compare by identity. A forked context may carry an opaque marker
    so code running inside it can later find the nearest marked ancestor.
    """

    parent: ExecutionContext | None = None
    marker: object = None
    name: str = ""

    def fork(self, *, marker: object = None, name: str = "") -> ExecutionContext:
        return ExecutionContext(parent=self, marker=marker, name=name)

    def lineage(self) -> Iterator[ExecutionContext]:
        context: ExecutionContext | None = self
        while context is not None:
            yield context
            context = context.parent

    def find_marked(self, marker: object) -> ExecutionContext | None:
        for context in self.lineage():
            if context.marker is marker:
                return context
        return None

    def create_task(self, coro: Coroutine[Any, Any, T]) -> asyncio.Task[T]:
        # The task snapshots the contextvars at creation, so the binding below
        # follows the coroutine across every suspension point.
        loop = asyncio.get_running_loop()
        with context_scope(self):
            return loop.create_task(coro)

    def __repr__(self) -> str:
        label = self.name or hex(id(self))
        return f"ExecutionContext({label}, marked={self.marker is not None})"


ROOT_CONTEXT = ExecutionContext(name="root")

_CURRENT_CONTEXT: ContextVar[ExecutionContext] = ContextVar(
    "awaitguard_execution_context",
    default=ROOT_CONTEXT,
)


def current_context() -> ExecutionContext:
    return _CURRENT_CONTEXT.get()


def set_current_context(context: ExecutionContext) -> Token[ExecutionContext]:
    return _CURRENT_CONTEXT.set(context)


def reset_current_context(token: Token[ExecutionContext]) -> None:
    _CURRENT_CONTEXT.reset(token)


def find_marked_context(marker: object) -> ExecutionContext | None:
    """Return the nearest ancestor of the current context carrying ``marker``."""
    return current_context().find_marked(marker)


@contextmanager
def context_scope(context: ExecutionContext):
    token = set_current_context(context)
    try:
        yield context
    finally:
        reset_current_context(token)

