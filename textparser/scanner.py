"""A modal scanner with include files and text macros.

The scanner is configured with a list of token patterns:

    (kind, regex, modes, post_processor)

`kind` is the token kind returned to the parser, or None for text that is
matched and thrown away (whitespace, comments). `modes` says in which scanner
modes the pattern is active: None for the default mode, a single mode, or a
list of modes. Within a mode the patterns are tried in the order they were
given and the first one that matches wins. Put the specific patterns before
the general ones!

The post processor, if there is one, is called as `post_processor(kind,
match)` with the re.Match and returns the `(kind, value)` of the token. It is
the place to strip quotes, convert numbers, or switch modes with `push_mode`
and `pop_mode`.

Input is read line by line. Macro calls (`${name args...}`) are recognized in
every mode, wherever a token touches them: at the start of the token, inside
the text a pattern matched, or right after it. The expanded text is spliced
into the current line in place of the call and the token is scanned again, so
`"Hello ${name}"` is one string and `task_${n}` one identifier. Since the
spliced text isn't a new line, line numbers in diagnostics still refer to the
line of the call.
"""

import dataclasses
import io
import logging
import os
import re
import typing

from .errors import GrammarError, PushBackError
from .macros import Macro, MacroTable
from .messages import MacroCallInfo, MessageHandler, Severity
from .tokens import END_NAME, EOF, SourceFileInfo, Token


scanner_log = logging.getLogger("textparser.scanner")


PostProcessor = typing.Callable[[str | None, re.Match], typing.Tuple[str | None, typing.Any]]
TokenPattern = typing.Tuple[
    str | None,
    str | re.Pattern,
    typing.Hashable | typing.Iterable[typing.Hashable] | None,
    PostProcessor | None,
]


@dataclasses.dataclass
class MacroStackEntry:
    """A macro whose expansion is still being scanned. `end` is the offset in
    the line buffer just past the expanded text."""

    macro: Macro
    args: typing.Tuple[str, ...]
    text: str
    end: int


class LineCursor:
    """A position in a line of text that can be edited in front of the
    cursor."""

    line: str
    pos: int

    def __init__(self, line: str):
        self.line = line
        self.pos = 0

    @property
    def eos(self) -> bool:
        return self.pos >= len(self.line)

    @property
    def column(self) -> int:
        return self.pos - (self.line.rfind("\n", 0, self.pos) + 1) + 1

    def match(self, regex: re.Pattern) -> re.Match | None:
        """Match at the cursor. On success the cursor moves past the match."""
        m = regex.match(self.line, self.pos)
        if m is not None:
            self.pos = m.end()
        return m

    def test(self, regex: re.Pattern) -> bool:
        return regex.match(self.line, self.pos) is not None

    def seek(self, pos: int):
        self.pos = pos

    def splice(self, length: int, text: str) -> int:
        """Replace the `length` characters before the cursor with `text` and
        put the cursor at the start of the new text. Returns the offset just
        past it."""
        start = self.pos - length
        self.line = self.line[:start] + text + self.line[self.pos :]
        self.pos = start
        return start + len(text)

    def append(self, text: str):
        self.line += text

    def peek(self, n: int) -> str:
        return self.line[self.pos : self.pos + n]


class StreamHandle:
    """One input source on the scanner's file stack."""

    file_name: str
    real_path: str | None
    macro_stack: list[MacroStackEntry]

    def __init__(self, file_name: str, stream: io.StringIO, real_path: str | None = None):
        self.file_name = file_name
        self.real_path = real_path
        self.macro_stack = []
        self._stream = stream
        self._cursor: LineCursor | None = None
        self._line_no = 0

    def close(self):
        self._stream.close()
        self._cursor = None

    @property
    def dirname(self) -> str:
        return ""

    @property
    def line_no(self) -> int:
        return self._line_no

    @property
    def column(self) -> int:
        return self._cursor.column if self._cursor is not None else 0

    @property
    def line(self) -> str:
        return self._cursor.line if self._cursor is not None else ""

    @property
    def pos(self) -> int:
        return self._cursor.pos if self._cursor is not None else 0

    def seek(self, pos: int):
        assert self._cursor is not None
        self._cursor.seek(pos)

    @property
    def eof(self) -> bool:
        """True if there are no more lines to read after the current one."""
        return self._stream.tell() >= len(self._stream.getvalue())

    def ready_next_line(self) -> bool:
        """Make sure there is text left at the cursor, reading the next line if
        needed. False at the end of the stream."""
        if self._cursor is not None and not self._cursor.eos:
            return True

        line = self._stream.readline()
        if line == "":
            self._cursor = None
            return False
        self._line_no += 1
        self._cursor = LineCursor(line)
        # Expanded macro text never outlives the line it was spliced into.
        self.macro_stack.clear()
        return True

    def append_next_line(self) -> bool:
        """Read the next line onto the end of the current one, for constructs
        that span lines."""
        assert self._cursor is not None
        line = self._stream.readline()
        if line == "":
            return False
        self._line_no += 1
        self._cursor.append(line)
        return True

    def match(self, regex: re.Pattern) -> re.Match | None:
        assert self._cursor is not None
        return self._cursor.match(regex)

    def test(self, regex: re.Pattern) -> bool:
        return self._cursor is not None and self._cursor.test(regex)

    def peek(self, n: int) -> str:
        return self._cursor.peek(n) if self._cursor is not None else ""

    def inject_text(self, text: str, length: int) -> int:
        """Replace the last `length` scanned characters with `text`. Macros
        that are still open around the cursor grow or shrink with it."""
        assert self._cursor is not None
        start = self._cursor.pos - length
        delta = len(text) - length
        for entry in self.macro_stack:
            if entry.end > start:
                entry.end += delta
        return self._cursor.splice(length, text)

    def inject_macro(
        self,
        macro: Macro,
        args: typing.Sequence[str],
        text: str,
        length: int,
        max_depth: int,
    ) -> bool:
        if len(self.macro_stack) >= max_depth:
            return False
        end = self.inject_text(text, length)
        self.macro_stack.append(MacroStackEntry(macro, tuple(args), text, end))
        return True

    def cleanup_macro_stack(self):
        """Forget the macros whose text has been scanned completely."""
        pos = self._cursor.pos if self._cursor is not None else 0
        while self.macro_stack and self.macro_stack[-1].end <= pos:
            self.macro_stack.pop()


class FileStreamHandle(StreamHandle):
    def __init__(self, file_name: str):
        # The file is small enough to read in one go, and this way the
        # descriptor is released right away.
        with open(file_name, "r", encoding="utf-8") as f:
            data = f.read()
        super().__init__(file_name, io.StringIO(data), os.path.realpath(file_name))
        scanner_log.info("Parsing file %s", file_name)

    @property
    def dirname(self) -> str:
        return os.path.dirname(self.file_name)


class BufferStreamHandle(StreamHandle):
    def __init__(self, buffer: str, label: str):
        super().__init__(label, io.StringIO(buffer))


@dataclasses.dataclass
class _FileStackEntry:
    handle: StreamHandle
    # The token the parser had pushed back when the next file was included.
    token_buffer: Token | None
    on_eof: typing.Callable[[], None] | None


class Scanner:
    """Turns text into Tokens for a TextParser.

    `master_file` is the name of the file to read or, when opened with
    `open(is_buffer=True)`, the text itself.
    """

    MAX_MACRO_DEPTH = 20

    # The label used in positions for text that isn't read from a file.
    BUFFER_LABEL = "<buffer>"

    # A macro call. Arguments are bare words or double quoted strings, which
    # may contain escaped quotes. Set this to None to turn macros off.
    macro_call: re.Pattern | None = re.compile(
        r"""(?<!\$)\$\{\s*(?P<name>\??[A-Za-z_][\w.]*)"""
        r"""(?P<args>(?:\s+(?:"(?:[^"\\]|\\.)*"|[^\s"}]+))*)\s*\}"""
    )
    macro_start: re.Pattern = re.compile(r"(?<!\$)\$\{")
    macro_arg: re.Pattern = re.compile(r'"((?:[^"\\]|\\.)*)"|([^\s"}]+)')

    master_file: str
    message_handler: MessageHandler

    def __init__(
        self,
        master_file: str,
        token_patterns: typing.Iterable[TokenPattern],
        default_mode: typing.Hashable,
        message_handler: MessageHandler | None = None,
        macro_table: MacroTable | None = None,
    ):
        self.master_file = master_file
        self.message_handler = message_handler if message_handler is not None else MessageHandler()
        self._macro_table = macro_table if macro_table is not None else MacroTable()

        self._patterns_by_mode: dict[
            typing.Hashable, list[typing.Tuple[str | None, re.Pattern, PostProcessor | None]]
        ] = {}
        for pattern in token_patterns:
            kind, regex, modes, post_proc = pattern
            self.add_pattern(kind, regex, default_mode if modes is None else modes, post_proc)

        self._token_start: SourceFileInfo | None = None
        self._mode_start: SourceFileInfo | None = None
        self._default_mode = default_mode
        self._mode = default_mode
        self._mode_stack: list[typing.Hashable] = []
        self._active_patterns = []
        self.mode = default_mode

        self._is_buffer = False
        self._file_stack: list[_FileStackEntry] = []
        self._cf: StreamHandle | None = None
        self._token_buffer: Token | None = None
        self._at_end = False
        self._eof_token: Token | None = None
        self._line_delta = 0

    def add_pattern(
        self,
        kind: str | None,
        regex: str | re.Pattern,
        modes: typing.Hashable | typing.Iterable[typing.Hashable],
        post_proc: PostProcessor | None = None,
    ):
        if isinstance(regex, str):
            regex = re.compile(regex)
        if isinstance(modes, (list, tuple, set, frozenset)):
            mode_list = list(modes)
        else:
            mode_list = [modes]
        for mode in mode_list:
            self._patterns_by_mode.setdefault(mode, []).append((kind, regex, post_proc))

    ###########################################################################
    # Modes
    ###########################################################################
    @property
    def mode(self) -> typing.Hashable:
        return self._mode

    @mode.setter
    def mode(self, new_mode: typing.Hashable):
        patterns = self._patterns_by_mode.get(new_mode)
        if patterns is None:
            raise GrammarError(f"Undefined scanner mode {new_mode!r}")
        if self._mode == self._default_mode and new_mode != self._default_mode:
            # Remember where we left the default mode, in case we never make
            # it back.
            self._mode_start = self._token_start
        self._active_patterns = patterns
        self._mode = new_mode

    def push_mode(self, new_mode: typing.Hashable):
        """Switch to `new_mode`; `pop_mode` returns to the current one."""
        previous = self._mode
        self.mode = new_mode
        self._mode_stack.append(previous)

    def pop_mode(self):
        if len(self._mode_stack) == 0:
            raise GrammarError("Scanner mode stack is empty")
        self.mode = self._mode_stack.pop()

    ###########################################################################
    # Input sources
    ###########################################################################
    def open(self, is_buffer: bool = False) -> "Scanner":
        """Start reading `master_file` from the top. Nothing of a previous
        run survives, not even the mode an unterminated token left us in."""
        self.close()
        self._is_buffer = is_buffer
        self._at_end = False
        self._eof_token = None
        self._line_delta = 0
        self._token_start = None
        self._mode_stack = []
        self.mode = self._default_mode
        self._mode_start = None
        if is_buffer:
            handle: StreamHandle = BufferStreamHandle(self.master_file, self.BUFFER_LABEL)
        else:
            try:
                handle = FileStreamHandle(self.master_file)
            except OSError as e:
                self.error("open_file", f"Cannot open file {self.master_file}: {e.strerror}")
        self._cf = handle
        self._file_stack = [_FileStackEntry(handle, None, None)]
        return self

    def close(self):
        for entry in reversed(self._file_stack):
            entry.handle.close()
        self._file_stack = []
        self._cf = None
        self._token_buffer = None

    def __enter__(self) -> "Scanner":
        return self

    def __exit__(self, *args):
        self.close()

    def include(
        self,
        file_name: str,
        sfi: SourceFileInfo | None = None,
        on_eof: typing.Callable[[], None] | None = None,
    ) -> str:
        """Continue with the contents of `file_name`. Once it is done the
        scanner picks up where it left off in the current file, and `on_eof`
        is called. Returns the full name of the included file.
        """
        if not os.path.isabs(file_name) and self._file_stack:
            dirname = self._file_stack[-1].handle.dirname
            if dirname:
                file_name = os.path.join(dirname, file_name)

        real_path = os.path.realpath(file_name)
        for entry in self._file_stack:
            if entry.handle.real_path == real_path:
                self.error("include_recursion", f"Recursive inclusion of {file_name} detected", sfi)

        try:
            handle = FileStreamHandle(file_name)
        except OSError as e:
            self.error("bad_include", f"Cannot open include file {file_name}: {e.strerror}", sfi)

        # Whatever the parser pushed back belongs after the included file.
        if self._file_stack:
            self._file_stack[-1].token_buffer = self._token_buffer
        self._token_buffer = None

        self._file_stack.append(_FileStackEntry(handle, None, on_eof))
        self._cf = handle
        return file_name

    ###########################################################################
    # Macros
    ###########################################################################
    def add_macro(self, macro: Macro):
        self._macro_table.add(macro)

    def macro_defined(self, name: str) -> bool:
        return name in self._macro_table

    def inject_text(self, text: str, length: int):
        """Replace the last `length` characters scanned with `text`; scanning
        continues at the start of `text`. Post processors use this to expand
        things like environment variables."""
        if self._cf is None:
            raise GrammarError("inject_text called on a closed scanner")
        self._cf.inject_text(text, length)

    def _expand_macro_at_cursor(self) -> bool:
        cf = self._cf
        assert cf is not None
        if self.macro_call is None or not cf.test(self.macro_start):
            return False

        while True:
            m = cf.match(self.macro_call)
            if m is not None:
                break
            # The argument list may continue on the next line, but not past
            # the closing brace.
            if "}" in cf.peek(len(cf.line)):
                self.error("junk_in_macro_call", f"Malformed macro call: {cf.peek(20)}...")
            if not cf.append_next_line():
                self.error("runaway_macro_call", "Unterminated macro call")

        args = [m.group("name")]
        for arg in self.macro_arg.finditer(m.group("args")):
            if arg.group(1) is not None:
                args.append(re.sub(r"\\(.)", r"\1", arg.group(1)))
            else:
                args.append(arg.group(2))

        self._expand_macro(args, len(m.group(0)))
        return True

    def _expand_macro_in_token(self, token_pos: int, m: re.Match) -> bool:
        """Expand a macro call inside the text `m` matched, or directly after
        it, and rewind to `token_pos` so the token is scanned again with the
        expansion in place."""
        cf = self._cf
        assert cf is not None
        if self.macro_call is None:
            return False

        # A call right after the match still belongs to the token: the
        # pattern most likely stopped at the '$'.
        call = self.macro_start.search(cf.line, token_pos, m.end() + 2)
        if call is None:
            return False

        cf.seek(call.start())
        self._expand_macro_at_cursor()
        cf.seek(token_pos)
        return True

    def _expand_macro(self, args: list[str], call_length: int):
        cf = self._cf
        assert cf is not None

        resolved = self._macro_table.resolve(args, self.source_file_info())
        if resolved is None:
            self.error("undefined_macro", f"Undefined macro '{args[0]}' called")
        macro, text = resolved

        if macro is None or text == "":
            cf.inject_text("", call_length)
            return

        if not cf.inject_macro(macro, args, text, call_length, self.MAX_MACRO_DEPTH):
            self.error("macro_stack_overflow", "Too many nested macro calls.")

    ###########################################################################
    # Tokens
    ###########################################################################
    def next_token(self) -> Token:
        if self._token_buffer is not None:
            token = self._token_buffer
            self._token_buffer = None
            return token

        if self._at_end:
            assert self._eof_token is not None
            return self._eof_token

        if self._cf is None:
            raise GrammarError("The scanner has not been opened")
        return self._scan_token()

    def return_token(self, token: Token):
        """Push a token back; `next_token` will return it again."""
        if self._token_buffer is not None:
            raise PushBackError(
                f"Cannot return more than 1 token in a row: {token!r} after {self._token_buffer!r}"
            )
        self._token_buffer = token

    def _scan_token(self) -> Token:
        while True:
            cf = self._cf
            assert cf is not None

            if not cf.ready_next_line():
                token = self._end_of_file()
                if token is not None:
                    return token
                continue

            cf.cleanup_macro_stack()
            start = self.source_file_info()
            self._token_start = start

            if self._expand_macro_at_cursor():
                continue

            kind = None
            value = None
            token_pos = cf.pos
            for pattern_kind, regex, post_proc in self._active_patterns:
                m = cf.match(regex)
                if m is None:
                    continue
                # Discarded text (whitespace, comments) is never searched for
                # macro calls.
                discarded = pattern_kind is None and post_proc is None
                if not discarded and self._expand_macro_in_token(token_pos, m):
                    break
                kind, value = pattern_kind, m.group(0)
                if post_proc is not None:
                    kind, value = post_proc(kind, m)
                break
            else:
                if cf.eof and cf.peek(1).strip() == "":
                    self.error("unexpected_eof", "Unexpected end of file found")
                self.error("no_token_match", f"Unexpected characters found: '{cf.peek(10)}...'")

            if kind is None:
                continue
            return Token(kind, value, start)

    def _end_of_file(self) -> Token | None:
        """The current input is exhausted. Returns the next token to hand out,
        or None to carry on scanning the including file."""
        cf = self._cf
        assert cf is not None

        if self._mode != self._default_mode:
            start = self._mode_start or self._token_start or self.source_file_info()
            # Report the error at the line where the token started.
            self._line_delta = cf.line_no - start.line
            self.error("runaway_token", f"Unterminated token starting at line {start.line}")

        if len(self._file_stack) > 1:
            entry = self._file_stack.pop()
            entry.handle.close()
            scanner_log.debug("Completed file %s", entry.handle.file_name)

            parent = self._file_stack[-1]
            self._cf = parent.handle
            self._token_buffer = parent.token_buffer
            parent.token_buffer = None
            if entry.on_eof is not None:
                entry.on_eof()

            token = self._token_buffer
            self._token_buffer = None
            return token

        self._at_end = True
        self._eof_token = Token(EOF, END_NAME, self.source_file_info())
        return self._eof_token

    ###########################################################################
    # Diagnostics
    ###########################################################################
    def source_file_info(self) -> SourceFileInfo:
        if self._cf is None:
            label = self.BUFFER_LABEL if self._is_buffer else self.master_file
            return SourceFileInfo(label, 0, 0)
        return SourceFileInfo(self._cf.file_name, self._cf.line_no - self._line_delta, self._cf.column)

    def macro_call_history(self) -> list[MacroCallInfo]:
        """The macros still open at the cursor, innermost first."""
        if self._cf is None:
            return []
        return [
            MacroCallInfo(e.macro.name, e.args[1:], e.macro.source_file_info)
            for e in reversed(self._cf.macro_stack)
        ]

    def error(self, id: str, text: str, sfi: SourceFileInfo | None = None, data=None):
        """Report an error in the input. This raises ParseError."""
        self._message(Severity.ERROR, id, text, sfi, data)

    def warning(self, id: str, text: str, sfi: SourceFileInfo | None = None, data=None):
        self._message(Severity.WARNING, id, text, sfi, data)

    def _message(
        self,
        severity: Severity,
        id: str,
        text: str,
        sfi: SourceFileInfo | None,
        data: typing.Any,
    ):
        if sfi is None:
            sfi = self.source_file_info()
        line = self._cf.line if self._cf is not None else None
        self.message_handler.add_message(
            severity, id, text, sfi, line, data, self.macro_call_history()
        )
