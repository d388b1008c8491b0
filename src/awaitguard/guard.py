"""Checks that guarded asynchronous test APIs are awaited before the next call.

Wrap the body of an asynchronous test API in :func:`guard`::

    class Tester:
        def pump(self) -> asyncio.Task[None]:
            return guard(self._pump)

The conflict check and the scope push happen synchronously when ``pump()``
is called; the body then runs as a task. So this is caught at the second call::

    tester.pump()  # forgot "await"!
    tester.pump()

while nested calls made from inside a guarded body, directly or through
tasks it spawns, are fine. Synchronous helpers that must not run while a
guarded call is pending (``expect`` and friends) call :func:`guard_sync`.
:func:`verify_all_scopes_closed` runs at the end of each test.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from awaitguard.diagnostics import conflict_error, leak_error
from awaitguard.execution_context import current_context, find_marked_context
from awaitguard.scopes import Scope, ScopeStack, ScopeState
from awaitguard.stack_trace import CallLabel, capture_stack

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Marks execution contexts owned by a guarded scope.
_SCOPE_MARKER = object()

_SCOPE_STACK = ScopeStack()

# Scopes cancelled after the task that opened them had finished. Nothing is
# left to await them, so they stay pending for the next verification.
_ABANDONED: list[Scope] = []


def scope_stack() -> ScopeStack:
    return _SCOPE_STACK


def abandoned_scopes() -> list[Scope]:
    return list(_ABANDONED)


def reset_scopes() -> list[Scope]:
    discarded = [*_ABANDONED, *_SCOPE_STACK.clear()]
    _ABANDONED.clear()
    if discarded:
        logger.debug("discarded %d open guarded scope(s)", len(discarded))
    return discarded


def _check_conflict(operation: str, label: CallLabel | None) -> None:
    if not _SCOPE_STACK:
        return
    owner = find_marked_context(_SCOPE_MARKER)
    if owner is _SCOPE_STACK.last.context:
        return
    scope = _SCOPE_STACK.blocking_scope(owner)
    logger.debug("guarded call conflict against %r", scope)
    raise conflict_error(scope, capture_stack(), operation=operation, label=label)


def guard_sync(*, label: CallLabel | None = None) -> None:
    """Verify that no guarded call is pending outside the current one.

    Passes when no guarded call is open, or when this call is nested,
    directly or indirectly, inside the body of the most recent one.
    Otherwise raises :class:`ConflictError` describing both call sites.
    """
    _check_conflict("guard_sync", label)


async def _run_scope(
    scope: Scope, body: Callable[[], Awaitable[T]], opener: asyncio.Task[Any] | None
) -> T:
    try:
        result = await body()
    except asyncio.CancelledError:
        if opener is not None and opener.done():
            _abandon_scope(scope)
        else:
            _complete_scope(scope)
        raise
    except BaseException:
        _complete_scope(scope)
        raise
    _complete_scope(scope)
    return result


def _complete_scope(scope: Scope) -> None:
    if scope.state is ScopeState.LEAKED:
        # Already reported when the scope it leaked out of closed.
        return
    scope.state = ScopeState.COMPLETING
    leaked = _SCOPE_STACK.close(scope)
    logger.debug("closed %r, depth now %d", scope, len(_SCOPE_STACK))
    if leaked:
        logger.debug("%r leaked %d scope(s)", scope, len(leaked))
        raise leak_error(leaked)


def _abandon_scope(scope: Scope) -> None:
    if scope.state is ScopeState.LEAKED:
        return
    leaked = _SCOPE_STACK.close(scope)
    scope.state = ScopeState.LEAKED
    _ABANDONED.extend([scope, *leaked])
    logger.debug("%r cancelled after its caller finished", scope)


def _settle_unstarted(
    scope: Scope, opener: asyncio.Task[Any] | None, task: asyncio.Task[Any]
) -> None:
    # A task cancelled before its first step never enters _run_scope.
    if not task.cancelled() or scope.state is not ScopeState.ACTIVE:
        return
    if opener is not None and opener.done():
        _abandon_scope(scope)
    else:
        _complete_scope(scope)


def guard(
    body: Callable[[], Awaitable[T]], *, label: CallLabel | None = None
) -> asyncio.Task[T]:
    """Run ``body`` as a guarded call and return the task running it.

    Raises :class:`ConflictError` immediately, without starting ``body``, if
    another guarded call is pending outside the current one. The task fails
    with :class:`LeakError` instead of returning if guarded calls started
    inside ``body`` were still pending when it finished.

    Cancelling the task closes the scope like any other outcome while the
    calling task is still running. A cancellation that arrives after the
    calling task finished (``asyncio.run`` shutting down, say) means nobody
    awaited the call; the scope is then held for
    :func:`verify_all_scopes_closed`.
    """
    _check_conflict("guard", label)
    scope = Scope(
        creation_stack=capture_stack(),
        context=current_context().fork(marker=_SCOPE_MARKER, name="guarded scope"),
        label=label,
    )
    opener = asyncio.current_task()
    _SCOPE_STACK.push(scope)
    logger.debug("opened %r, depth now %d", scope, len(_SCOPE_STACK))
    runner = _run_scope(scope, body, opener)
    try:
        task = scope.context.create_task(runner)
    except RuntimeError:
        runner.close()
        _SCOPE_STACK.discard(scope)
        scope.state = ScopeState.CLOSED
        raise
    task.add_done_callback(functools.partial(_settle_unstarted, scope, opener))
    return task


def verify_all_scopes_closed() -> None:
    """Raise :class:`LeakError` listing every guarded call still pending.

    Pending means still on the scope stack, or cancelled after the code that
    started it had already finished.
    """
    pending = sorted([*_ABANDONED, *_SCOPE_STACK], key=lambda scope: scope.scope_id)
    if pending:
        raise leak_error(pending)


def guarded(
    fn: Callable[..., Awaitable[T]] | None = None, *, label: CallLabel | None = None
) -> Any:
    """Decorate an ``async def`` test API so each call is a guarded call."""

    def decorate(func: Callable[..., Awaitable[T]]) -> Callable[..., asyncio.Task[T]]:
        call_label = label or CallLabel.from_qualname(func.__qualname__)

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> asyncio.Task[T]:
            return guard(lambda: func(*args, **kwargs), label=call_label)

        return wrapper

    if fn is not None:
        return decorate(fn)
    return decorate
