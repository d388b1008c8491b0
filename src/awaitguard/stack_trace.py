"""Call-stack capture and responsible-caller analysis.

Stacks are captured innermost frame first. Live stacks are captured as
structured frames straight from the interpreter; stacks saved as text can be
read back with :func:`parse_stack_text`, which understands the rendering
produced by :meth:`CapturedStack.render`::

    #0      SampleApi.pump (/work/tests/test_pump.py:18)
    #1      scenario (/work/tests/test_pump.py:31)

Both forms go through the same skip and match policy in
:func:`find_responsible_caller`.
"""

from __future__ import annotations

import inspect
import logging
import os
import re
from collections.abc import Iterable, Iterator, MutableSequence
from dataclasses import dataclass
from pathlib import Path
from types import FrameType

logger = logging.getLogger(__name__)

PACKAGE_NAME = __name__.partition(".")[0]
_PACKAGE_DIR = os.path.normcase(os.path.dirname(os.path.abspath(__file__)))
_PACKAGE_PREFIX = _PACKAGE_DIR + os.sep

_DESCRIPTOR_RE = re.compile(r"^#[0-9]+ +(?P<descriptor>[^ ]+)")
_CALLER_RE = re.compile(
    r"^#[0-9]+ .* \((?P<file>.+?):(?P<line>[0-9]+)(?::[0-9]+)?\)$"
)
_BOGUS_STACK = "The stack may be incomplete or bogus."


def normalize_qualname(qualname: str) -> str:
    _, _, tail = qualname.rpartition("<locals>.")
    return tail


def split_qualname(qualname: str) -> tuple[str | None, str]:
    """Return ``(class_name, method_name)`` for a qualified name.

    Enclosing function scopes are dropped, so a class declared inside a test
    function is reported under its own name.
    """
    parts = normalize_qualname(qualname).split(".")
    if len(parts) >= 2:
        return parts[-2], parts[-1]
    return None, parts[-1]


@dataclass(frozen=True)
class CallLabel:
    """Explicit name of a guarded operation, used instead of the frame name."""

    method_name: str
    class_name: str | None = None

    @classmethod
    def from_qualname(cls, qualname: str) -> CallLabel:
        class_name, method_name = split_qualname(qualname)
        return cls(method_name=method_name, class_name=class_name)

    @property
    def owner(self) -> str:
        return self.class_name or self.method_name


@dataclass(frozen=True)
class ParsedFrame:
    class_name: str | None
    method_name: str
    caller_file: str
    caller_line: str

    def same_site(self, other: ParsedFrame) -> bool:
        return (
            self.caller_file == other.caller_file
            and self.caller_line == other.caller_line
        )

    def same_operation(self, other: ParsedFrame) -> bool:
        return (
            self.class_name == other.class_name
            and self.method_name == other.method_name
        )


@dataclass(frozen=True)
class StackFrame:
    qualname: str | None
    filename: str | None = None
    lineno: int | None = None
    module: str = ""
    text: str = ""

    @classmethod
    def from_frame(cls, frame: FrameType) -> StackFrame:
        code = frame.f_code
        return cls(
            qualname=code.co_qualname or code.co_name,
            filename=code.co_filename,
            lineno=frame.f_lineno,
            module=str(frame.f_globals.get("__name__") or ""),
        )

    @property
    def package(self) -> str:
        return self.module.partition(".")[0]

    def names(self) -> tuple[str | None, str] | None:
        if not self.qualname:
            return None
        return split_qualname(self.qualname)

    @property
    def owner(self) -> str | None:
        names = self.names()
        if names is None:
            return None
        class_name, method_name = names
        return class_name or method_name

    def describe(self, index: int) -> str:
        if self.text:
            return self.text
        descriptor = normalize_qualname(self.qualname) if self.qualname else "<unknown>"
        location = self.filename or "<unknown>"
        if self.lineno is not None:
            location = f"{location}:{self.lineno}"
        return f"#{index:<6} {descriptor} ({location})"


@dataclass(frozen=True)
class CapturedStack:
    frames: tuple[StackFrame, ...] = ()

    def __len__(self) -> int:
        return len(self.frames)

    def __iter__(self) -> Iterator[StackFrame]:
        return iter(self.frames)

    def __getitem__(self, index: int) -> StackFrame:
        return self.frames[index]

    def render(self) -> str:
        return "\n".join(
            frame.describe(index) for index, frame in enumerate(self.frames)
        )


def capture_stack() -> CapturedStack:
    """Capture the caller's stack, innermost frame first."""
    frames: list[StackFrame] = []
    frame = inspect.currentframe()
    try:
        if frame is not None:
            frame = frame.f_back
        while frame is not None:
            frames.append(StackFrame.from_frame(frame))
            frame = frame.f_back
    finally:
        del frame
    return CapturedStack(tuple(frames))


def parse_frame_line(line: str) -> StackFrame:
    line = line.rstrip()
    descriptor = _DESCRIPTOR_RE.match(line)
    caller = _CALLER_RE.match(line)
    return StackFrame(
        qualname=descriptor.group("descriptor") if descriptor else None,
        filename=caller.group("file") if caller else None,
        lineno=int(caller.group("line")) if caller else None,
        text=line,
    )


def parse_stack_text(text: str) -> CapturedStack:
    return CapturedStack(
        tuple(parse_frame_line(line) for line in text.splitlines() if line.strip())
    )


def is_internal_frame(frame: StackFrame) -> bool:
    if frame.module:
        return frame.package == PACKAGE_NAME
    if not frame.filename:
        return False
    path = os.path.normcase(os.path.abspath(frame.filename))
    if path.startswith(_PACKAGE_PREFIX):
        return True
    # Saved text stacks may come from another installation.
    return Path(frame.filename).parent.name == PACKAGE_NAME


def find_responsible_caller(
    stack: CapturedStack,
    operation: str,
    notes: MutableSequence[str],
    *,
    label: CallLabel | None = None,
) -> ParsedFrame | None:
    """Identify the call site that issued a guarded call.

    The first frame outside this package is the guarded call site. Frames of
    the same owner (class, or function when there is no class) are skipped,
    and the next frame is the responsible caller. Failures are appended to
    ``notes`` and ``None`` is returned; this never raises.
    """
    target = f"{PACKAGE_NAME}.{operation}()"
    frames = stack.frames
    index = 0
    while index < len(frames) and is_internal_frame(frames[index]):
        index += 1
    if index >= len(frames):
        notes.append(f"(Unable to find the method that called {target}. {_BOGUS_STACK})")
        return None
    if label is not None:
        class_name, method_name = label.class_name, label.method_name
    else:
        names = frames[index].names()
        if names is None:
            notes.append(
                f"(Unable to parse the stack frame of the method that called {target}. "
                f"{_BOGUS_STACK})"
            )
            notes.append(frames[index].describe(index))
            return None
        class_name, method_name = names
    owner = class_name or method_name
    while index < len(frames) and frames[index].owner == owner:
        index += 1
    if index >= len(frames):
        notes.append(
            "(Unable to find the stack frame of the method that called the method "
            f"that called {target}. {_BOGUS_STACK})"
        )
        return None
    caller = frames[index]
    if caller.filename is None or caller.lineno is None:
        notes.append(
            "(Unable to parse the stack frame of the method that called the method "
            f"that called {target}. {_BOGUS_STACK})"
        )
        notes.append(caller.describe(index))
        return None
    logger.debug(
        "resolved %s caller %s.%s at %s:%s",
        operation,
        class_name,
        method_name,
        caller.filename,
        caller.lineno,
    )
    return ParsedFrame(
        class_name=class_name,
        method_name=method_name,
        caller_file=caller.filename,
        caller_line=str(caller.lineno),
    )


def _join_names(names: list[str]) -> str:
    if len(names) == 1:
        return names[0]
    return f"{', '.join(names[:-1])} and {names[-1]}"


def filter_stack(stack: CapturedStack, elided_packages: Iterable[str]) -> list[str]:
    """Render ``stack`` without frames from noise packages.

    Dropped frames are summarised in one trailing line.
    """
    noise = frozenset(elided_packages)
    lines: list[str] = []
    elided: dict[str, int] = {}
    for index, frame in enumerate(stack.frames):
        if frame.package and frame.package in noise:
            elided[frame.package] = elided.get(frame.package, 0) + 1
            continue
        lines.append(frame.describe(index))
    if elided:
        total = sum(elided.values())
        noun = "frame" if total == 1 else "frames"
        lines.append(f"(elided {total} {noun} from {_join_names(sorted(elided))})")
    while lines and not lines[-1].strip():
        lines.pop()
    return lines
