# logparse.py
"""
Structured markers inside container output.

A build script reports its own progress by printing lines such as

    #BUILDYARD:PHASE:build
    #BUILDYARD:PROGRESS:40
    #BUILDYARD:STATE:OK
    #BUILDYARD:STATE:ERR:tests failed

Everything else is a plain log line.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional, Union

MARKER_PREFIX = "#BUILDYARD:"


@dataclass(frozen=True)
class Line:
    text: str


@dataclass(frozen=True)
class CurrentPhase:
    phase: str


@dataclass(frozen=True)
class Progress:
    percent: int


@dataclass(frozen=True)
class State:
    ok: bool
    message: str = ""


LogItem = Union[Line, CurrentPhase, Progress, State]


def parse_line(line: str) -> LogItem:
    s = line.rstrip("\r\n")
    if not s.startswith(MARKER_PREFIX):
        return Line(s)

    body = s[len(MARKER_PREFIX):]
    kind, _, rest = body.partition(":")
    if kind == "PHASE" and rest:
        return CurrentPhase(rest.strip())
    if kind == "PROGRESS":
        try:
            return Progress(max(0, min(100, int(rest.strip()))))
        except ValueError:
            return Line(s)
    if kind == "STATE":
        state, _, message = rest.partition(":")
        if state == "OK":
            return State(ok=True)
        if state == "ERR":
            return State(ok=False, message=message.strip())
    return Line(s)


def parse_log(text: str) -> List[LogItem]:
    return [parse_line(line) for line in text.splitlines()]


@dataclass
class ParsedLog:
    items: List[LogItem]

    @classmethod
    def build_from(cls, text: str) -> ParsedLog:
        return cls(parse_log(text))

    def final_state(self) -> Optional[State]:
        for item in reversed(self.items):
            if isinstance(item, State):
                return item
        return None

    def error_message(self) -> Optional[str]:
        """Message of the last ERR state marker, if the script reported failure."""
        state = self.final_state()
        if state is not None and not state.ok:
            return state.message or "script reported an error state"
        return None

    def last_phase(self) -> Optional[str]:
        """Last phase marker seen before the first ERR state (where the script errored)."""
        last: Optional[str] = None
        for item in self.items:
            if isinstance(item, State) and not item.ok:
                break
            if isinstance(item, CurrentPhase):
                last = item.phase
        return last

    def progress(self) -> Optional[int]:
        for item in reversed(self.items):
            if isinstance(item, Progress):
                return item.percent
        return None

    def lines(self) -> Iterable[str]:
        for item in self.items:
            if isinstance(item, Line):
                yield item.text


# helpers used by script templates
def phase_marker(phase: str) -> str:
    return f"echo '{MARKER_PREFIX}PHASE:{phase}'"


def progress_marker(percent: int) -> str:
    return f"echo '{MARKER_PREFIX}PROGRESS:{int(percent)}'"


def state_marker(state: str, message: str = "") -> str:
    state = state.upper()
    if state == "OK":
        return f"echo '{MARKER_PREFIX}STATE:OK'"
    if state == "ERR":
        msg = message.replace("'", "")
        return f"echo '{MARKER_PREFIX}STATE:ERR:{msg}'"
    raise ValueError(f"Unknown state: {state!r}")
