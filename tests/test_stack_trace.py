from __future__ import annotations

import inspect
import os

import pytest

from awaitguard.stack_trace import (
    CallLabel,
    CapturedStack,
    ParsedFrame,
    StackFrame,
    capture_stack,
    filter_stack,
    find_responsible_caller,
    is_internal_frame,
    normalize_qualname,
    parse_frame_line,
    parse_stack_text,
    split_qualname,
)

GUARD_STACK = """\
#0      capture_stack (/opt/venv/site-packages/awaitguard/stack_trace.py:140)
#1      guard (/opt/venv/site-packages/awaitguard/guard.py:90)
#2      SampleApi.pump (/work/tests/test_api.py:12)
#3      SampleApi.pump_twice (/work/tests/test_api.py:20)
#4      scenario (/work/tests/test_api.py:31:9)
#5      Handle._run (/usr/lib/python3.12/asyncio/events.py:84)
"""


def _next_line() -> int:
    frame = inspect.currentframe()
    assert frame is not None and frame.f_back is not None
    return frame.f_back.f_lineno + 1


def _capture_here() -> CapturedStack:
    return capture_stack()


class Widget:
    def tap(self, notes: list[str]) -> ParsedFrame | None:
        return find_responsible_caller(capture_stack(), "guard", notes)

    def double_tap(self, notes: list[str]) -> ParsedFrame | None:
        return self.tap(notes)


@pytest.mark.parametrize(
    ("qualname", "expected"),
    [
        ("helper", (None, "helper")),
        ("Api.pump", ("Api", "pump")),
        ("Outer.Inner.method", ("Inner", "method")),
        ("test_case.<locals>.Api.pump", ("Api", "pump")),
        ("outer.<locals>.middle.<locals>.inner", (None, "inner")),
    ],
)
def test_split_qualname(qualname: str, expected: tuple[str | None, str]) -> None:
    assert split_qualname(qualname) == expected


def test_normalize_qualname_drops_enclosing_scopes() -> None:
    assert normalize_qualname("test_x.<locals>.Api.pump") == "Api.pump"
    assert normalize_qualname("Api.pump") == "Api.pump"


def test_call_label_from_qualname() -> None:
    assert CallLabel.from_qualname("Tester.pump") == CallLabel("pump", "Tester")
    assert CallLabel.from_qualname("pump_frame").owner == "pump_frame"


def test_capture_stack_starts_at_caller() -> None:
    line = _next_line()
    stack = _capture_here()
    assert stack[0].qualname == "_capture_here"
    assert stack[0].module == __name__
    assert stack[1].qualname == "test_capture_stack_starts_at_caller"
    assert stack[1].lineno == line
    assert not any(frame.qualname == "capture_stack" for frame in stack)


def test_live_stack_skips_frames_of_the_same_class() -> None:
    notes: list[str] = []
    line = _next_line()
    entry = Widget().double_tap(notes)
    assert notes == []
    assert entry is not None
    assert (entry.class_name, entry.method_name) == ("Widget", "tap")
    assert entry.caller_line == str(line)
    assert os.path.samefile(entry.caller_file, __file__)


def test_text_stack_resolves_responsible_caller() -> None:
    notes: list[str] = []
    entry = find_responsible_caller(parse_stack_text(GUARD_STACK), "guard", notes)
    assert notes == []
    assert entry == ParsedFrame(
        class_name="SampleApi",
        method_name="pump",
        caller_file="/work/tests/test_api.py",
        caller_line="31",
    )


def test_label_replaces_call_site_names() -> None:
    notes: list[str] = []
    entry = find_responsible_caller(
        parse_stack_text(GUARD_STACK),
        "guard",
        notes,
        label=CallLabel("advance", "SampleApi"),
    )
    assert entry is not None
    assert (entry.class_name, entry.method_name) == ("SampleApi", "advance")
    assert entry.caller_line == "31"


def test_internal_frames_are_recognised() -> None:
    assert is_internal_frame(StackFrame("guard", "/x.py", 1, module="awaitguard.guard"))
    assert not is_internal_frame(StackFrame("scenario", "/x.py", 1, module="tests.test_api"))
    assert is_internal_frame(parse_frame_line("#1      guard (/elsewhere/awaitguard/guard.py:9)"))
    assert not is_internal_frame(parse_frame_line("#1      scenario (/work/tests/test_api.py:9)"))


@pytest.mark.parametrize("text", ["", "\n\n", GUARD_STACK.splitlines()[0] + "\n" + GUARD_STACK.splitlines()[1]])
def test_missing_external_frame_is_noted(text: str) -> None:
    notes: list[str] = []
    assert find_responsible_caller(parse_stack_text(text), "guard", notes) is None
    assert notes == [
        "(Unable to find the method that called awaitguard.guard(). "
        "The stack may be incomplete or bogus.)"
    ]


def test_unparseable_call_site_is_noted_with_its_text() -> None:
    text = GUARD_STACK.splitlines()[1] + "\n<asynchronous suspension>\n"
    notes: list[str] = []
    assert find_responsible_caller(parse_stack_text(text), "guard_sync", notes) is None
    assert notes == [
        "(Unable to parse the stack frame of the method that called awaitguard.guard_sync(). "
        "The stack may be incomplete or bogus.)",
        "<asynchronous suspension>",
    ]


def test_missing_caller_frame_is_noted() -> None:
    text = "\n".join(GUARD_STACK.splitlines()[:4])
    notes: list[str] = []
    assert find_responsible_caller(parse_stack_text(text), "guard", notes) is None
    assert notes == [
        "(Unable to find the stack frame of the method that called the method that "
        "called awaitguard.guard(). The stack may be incomplete or bogus.)"
    ]


def test_unparseable_caller_frame_is_noted_with_its_text() -> None:
    text = "\n".join(GUARD_STACK.splitlines()[:3] + ["#3      scenario (<frozen runpy>)"])
    notes: list[str] = []
    assert find_responsible_caller(parse_stack_text(text), "guard", notes) is None
    assert notes == [
        "(Unable to parse the stack frame of the method that called the method that "
        "called awaitguard.guard(). The stack may be incomplete or bogus.)",
        "#3      scenario (<frozen runpy>)",
    ]


def test_rendered_frames_parse_back() -> None:
    stack = CapturedStack((StackFrame("test_case.<locals>.Api.pump", "/w/t.py", 3),))
    assert stack.render() == "#0      Api.pump (/w/t.py:3)"
    frame = parse_frame_line(stack.render())
    assert (frame.qualname, frame.filename, frame.lineno) == ("Api.pump", "/w/t.py", 3)


def test_filter_stack_elides_noise_packages() -> None:
    stack = CapturedStack(
        (
            StackFrame("guard", "/s/awaitguard/guard.py", 90, module="awaitguard.guard"),
            StackFrame("Api.pump", "/w/t.py", 3, module="tests.t"),
            StackFrame("Handle._run", "/py/asyncio/events.py", 80, module="asyncio.events"),
            StackFrame("run", "/py/asyncio/runners.py", 44, module="asyncio.runners"),
            StackFrame("pytest_pyfunc_call", "/py/_pytest/python.py", 159, module="_pytest.python"),
        )
    )
    assert filter_stack(stack, {"asyncio", "_pytest", "awaitguard"}) == [
        "#1      Api.pump (/w/t.py:3)",
        "(elided 4 frames from _pytest, asyncio and awaitguard)",
    ]
    assert filter_stack(stack, {"_pytest"})[-1] == "(elided 1 frame from _pytest)"
    assert len(filter_stack(stack, set())) == 5
