from __future__ import annotations

from collections.abc import Sequence

from awaitguard.config import GuardConfig, get_guard_config
from awaitguard.exceptions import ConflictError, LeakError
from awaitguard.scopes import Scope
from awaitguard.stack_trace import (
    CallLabel,
    CapturedStack,
    ParsedFrame,
    filter_stack,
    find_responsible_caller,
)

CONFLICT_HEADER = (
    'Guarded function conflict. You must use "await" with all Future-returning test APIs.'
)
LEAK_HEADER = (
    "Asynchronous call to guarded function leaked. "
    'You must use "await" with all Future-returning test APIs.'
)


def _kind(frame: ParsedFrame) -> str:
    return "function" if frame.class_name is None else "method"


def _display_name(frame: ParsedFrame) -> str:
    if frame.class_name is None:
        return f"({frame.method_name}) "
    return f"({frame.class_name}.{frame.method_name}) "


def _location(frame: ParsedFrame) -> str:
    return f"from {frame.caller_file} on line {frame.caller_line}"


def _finish(lines: Sequence[str]) -> str:
    return "\n".join(lines).rstrip()


def original_sentence(original: ParsedFrame) -> str:
    if original.class_name is None:
        return f'The guarded "{original.method_name}" function was called {_location(original)}.'
    return (
        f'The guarded method "{original.method_name}" from class {original.class_name} '
        f"was called {_location(original)}."
    )


def colliding_sentence(original: ParsedFrame, colliding: ParsedFrame) -> str:
    again = "again " if original.same_site(colliding) else ""
    if original.same_operation(colliding):
        return f"Then, it was called {again}{_location(colliding)}."
    if colliding.class_name is None:
        return (
            f'Then, the "{colliding.method_name}" function '
            f"was called {again}{_location(colliding)}."
        )
    if original.class_name == colliding.class_name:
        owner = f"(also from class {colliding.class_name})"
    else:
        owner = f"from class {colliding.class_name}"
    return (
        f'Then, the "{colliding.method_name}" method {owner} '
        f"was called {again}{_location(colliding)}."
    )


def compose_conflict_message(
    *,
    original: ParsedFrame | None,
    colliding: ParsedFrame | None,
    creation_stack: CapturedStack,
    notes: Sequence[str] = (),
    config: GuardConfig | None = None,
) -> str:
    config = config or get_guard_config()
    lines = [CONFLICT_HEADER, *notes]
    if original is None or colliding is None:
        return _finish(lines)
    if original.same_operation(colliding):
        original_name = colliding_name = ""
    else:
        original_name = _display_name(original)
        colliding_name = _display_name(colliding)
    lines.append(original_sentence(original))
    lines.append(colliding_sentence(original, colliding))
    lines.append(
        f"The first {_kind(original)} {original_name}had not yet finished executing "
        f"at the time that the second {_kind(colliding)} {colliding_name}was called. "
        "Since both are guarded, and the second was not a nested call inside the first, "
        "the first must complete its execution before the second can be called. "
        'Typically, this is achieved by putting an "await" statement in front of the '
        "call to the first."
    )
    variant = (
        config.sync_variant_for(colliding.method_name)
        if colliding.class_name is None
        else None
    )
    if variant:
        lines.append(
            'If you are confident that all test APIs are being called using "await", '
            f"and this {colliding.method_name}() call is not being invoked at the top "
            "level but is itself being called from some sort of callback registered "
            f"before the {original.method_name} method was called, then consider "
            f"using {variant}() instead."
        )
    lines.append("")
    lines.append(
        f"When the first {_kind(original)} {original_name}was called, this was the stack:"
    )
    lines.extend(filter_stack(creation_stack, config.elided_packages))
    return _finish(lines)


def leak_sentence(guarder: ParsedFrame) -> str:
    owner = f"from class {guarder.class_name} " if guarder.class_name is not None else ""
    return (
        f'The guarded method "{guarder.method_name}" {owner}'
        f"was called {_location(guarder)}, "
        "but never completed before its parent scope closed."
    )


def compose_leak_message(scopes: Sequence[Scope]) -> str:
    lines = [LEAK_HEADER]
    for scope in scopes:
        guarder = find_responsible_caller(
            scope.creation_stack, "guard", lines, label=scope.label
        )
        if guarder is not None:
            lines.append(leak_sentence(guarder))
    return _finish(lines)


def conflict_error(
    scope: Scope,
    live_stack: CapturedStack,
    *,
    operation: str,
    label: CallLabel | None = None,
    config: GuardConfig | None = None,
) -> ConflictError:
    notes: list[str] = []
    original = find_responsible_caller(
        scope.creation_stack, "guard", notes, label=scope.label
    )
    colliding = find_responsible_caller(live_stack, operation, notes, label=label)
    message = compose_conflict_message(
        original=original,
        colliding=colliding,
        creation_stack=scope.creation_stack,
        notes=notes,
        config=config,
    )
    return ConflictError(message, original=original, colliding=colliding)


def leak_error(scopes: Sequence[Scope]) -> LeakError:
    return LeakError(compose_leak_message(scopes), scopes=scopes)
