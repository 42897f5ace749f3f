"""Diagnostics: the messages we produce about the input, and the handler that
collects them.

Every message knows where it came from (a SourceFileInfo), which line of text
it was found on, and which macros were still being expanded at the time. That
last bit matters more than you would think: an error inside a macro expansion
is reported at the line of the *call*, and without the history it's very hard
to figure out what actually went wrong.
"""

import dataclasses
import enum
import logging
import typing

from .errors import FatalError, ParseError
from .tokens import SourceFileInfo


message_log = logging.getLogger("textparser.messages")


class Severity(enum.Enum):
    FATAL = "fatal"
    ERROR = "error"
    # A critical message is counted and stored like an error, but doesn't
    # abort whatever is running.
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"
    DEBUG = "debug"


_LOG_LEVELS = {
    Severity.FATAL: logging.CRITICAL,
    Severity.ERROR: logging.ERROR,
    Severity.CRITICAL: logging.ERROR,
    Severity.WARNING: logging.WARNING,
    Severity.INFO: logging.INFO,
    Severity.DEBUG: logging.DEBUG,
}


@dataclasses.dataclass(frozen=True)
class MacroCallInfo:
    """One entry of a macro call history."""

    name: str
    args: typing.Tuple[str, ...]
    source_file_info: SourceFileInfo | None

    def __str__(self) -> str:
        args = " ".join(f'"{a}"' for a in self.args)
        call = f"${{{self.name}{' ' if args else ''}{args}}}"
        if self.source_file_info is not None:
            return f"{call} (defined at {self.source_file_info})"
        return call


@dataclasses.dataclass
class Message:
    severity: Severity
    id: str
    text: str
    source_file_info: SourceFileInfo | None = None
    line: str | None = None
    data: typing.Any = None
    macro_stack: list[MacroCallInfo] = dataclasses.field(default_factory=list)

    def __str__(self) -> str:
        parts = []
        if self.source_file_info is not None:
            parts.append(f"{self.source_file_info.file_name}:{self.source_file_info.line}: ")
        severity = Severity.ERROR if self.severity == Severity.CRITICAL else self.severity
        parts.append(f"{severity.value.capitalize()}: {self.text}")
        if self.line:
            parts.append("\n" + self.line.rstrip("\n"))
        if self.macro_stack:
            parts.append("\nMacro call history:")
            for call in self.macro_stack:
                parts.append(f"\n  {call}")
        return "".join(parts)


class MessageHandler:
    """Collects messages, and turns errors into exceptions.

    - `error` records the message and raises ParseError.
    - `fatal` records the message and raises FatalError.
    - `critical` records the message as an error but does not raise.
    - `warning` raises only if `abort_on_warning` is set.

    Each parser owns its own handler; there is no shared global one.
    """

    messages: list[Message]
    errors: int
    console: bool
    abort_on_warning: bool

    def __init__(self, console: bool = False):
        self.messages = []
        self.errors = 0
        self.console = console
        self.abort_on_warning = False

    def fatal(self, id: str, text: str, sfi=None, line=None, data=None, macro_stack=None):
        return self.add_message(Severity.FATAL, id, text, sfi, line, data, macro_stack)

    def error(self, id: str, text: str, sfi=None, line=None, data=None, macro_stack=None):
        return self.add_message(Severity.ERROR, id, text, sfi, line, data, macro_stack)

    def critical(self, id: str, text: str, sfi=None, line=None, data=None, macro_stack=None):
        return self.add_message(Severity.CRITICAL, id, text, sfi, line, data, macro_stack)

    def warning(self, id: str, text: str, sfi=None, line=None, data=None, macro_stack=None):
        return self.add_message(Severity.WARNING, id, text, sfi, line, data, macro_stack)

    def info(self, id: str, text: str, sfi=None, line=None, data=None, macro_stack=None):
        return self.add_message(Severity.INFO, id, text, sfi, line, data, macro_stack)

    def debug(self, id: str, text: str, sfi=None, line=None, data=None, macro_stack=None):
        return self.add_message(Severity.DEBUG, id, text, sfi, line, data, macro_stack)

    def add_message(
        self,
        severity: Severity,
        id: str,
        text: str,
        sfi: SourceFileInfo | None = None,
        line: str | None = None,
        data: typing.Any = None,
        macro_stack: list[MacroCallInfo] | None = None,
    ) -> Message:
        msg = Message(
            severity=severity,
            id=id,
            text=text,
            source_file_info=sfi,
            line=line,
            data=data,
            macro_stack=list(macro_stack or []),
        )
        self.messages.append(msg)
        if self.console:
            message_log.log(_LOG_LEVELS[severity], "%s", msg)

        match severity:
            case Severity.FATAL:
                raise FatalError(msg)
            case Severity.ERROR:
                self.errors += 1
                raise ParseError(msg)
            case Severity.CRITICAL:
                self.errors += 1
            case Severity.WARNING:
                if self.abort_on_warning:
                    raise ParseError(msg)
            case Severity.INFO | Severity.DEBUG:
                pass
            case _:
                typing.assert_never(severity)

        return msg

    def clear(self):
        self.messages = []
        self.errors = 0

    def __str__(self) -> str:
        return "\n".join(str(m) for m in self.messages)
