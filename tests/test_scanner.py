import pytest

from textparser.errors import GrammarError, ParseError, PushBackError
from textparser.macros import Macro, MacroTable
from textparser.runtime import TextParser
from textparser.scanner import Scanner
from textparser.tokens import SourceFileInfo


def int_value(kind, match):
    return kind, int(match.group(0))


PATTERNS = [
    (None, r"[ \t\r\n]+", None, None),
    (None, r"#[^\n]*", None, None),
    ("INTEGER", r"\d+", None, int_value),
    ("ID", r"[A-Za-z_]\w*", None, None),
    ("LITERAL", r"[\[\](){},;$]", None, None),
]


def scan(text, *macros):
    scanner = Scanner(text, PATTERNS, "default").open(is_buffer=True)
    for macro in macros:
        scanner.add_macro(macro)
    return scanner


def values(scanner):
    result = []
    while True:
        token = scanner.next_token()
        if token.is_eof:
            return result
        result.append((token.kind, token.value))


def positions(scanner):
    result = []
    while True:
        token = scanner.next_token()
        if token.is_eof:
            return result
        result.append((token.value, token.position.line, token.position.column))


PAIR = Macro("pair", "${1} ${2}")


###############################################################################
# Tokens and modes
###############################################################################
def test_tokens_and_positions():
    scanner = scan("a 12\n  b # comment\n")
    assert positions(scanner) == [("a", 1, 1), (12, 1, 3), ("b", 2, 3)]


def test_end_of_input_repeats():
    scanner = scan("a")
    assert scanner.next_token().value == "a"
    first = scanner.next_token()
    assert first.is_eof
    assert first.position.file_name == Scanner.BUFFER_LABEL
    assert scanner.next_token().is_eof


def test_first_match_wins():
    scanner = Scanner(
        "tasks",
        [
            ("KW", r"task", None, None),
            ("ID", r"\w+", None, None),
            (None, r"\s+", None, None),
        ],
        "default",
    ).open(is_buffer=True)
    assert values(scanner) == [("KW", "task"), ("ID", "s")]


def test_no_token_match():
    with pytest.raises(ParseError) as e:
        values(scan("a @"))
    assert e.value.message.id == "no_token_match"
    assert e.value.message.line == "a @"


class StringScanner(Scanner):
    def __init__(self, text):
        super().__init__(
            text,
            [
                (None, r"\s+", None, None),
                ("ID", r"\w+", None, None),
                (None, r'"', None, self._open_string),
                ("STRING", r'[^"]+', "string", None),
                (None, r'"', "string", self._close_string),
            ],
            "default",
        )

    def _open_string(self, kind, match):
        self.push_mode("string")
        return kind, match.group(0)

    def _close_string(self, kind, match):
        self.pop_mode()
        return kind, match.group(0)


def test_modes():
    scanner = StringScanner('a "hello world" b').open(is_buffer=True)
    assert values(scanner) == [("ID", "a"), ("STRING", "hello world"), ("ID", "b")]
    assert scanner.mode == "default"


def test_mode_stack():
    scanner = StringScanner("")
    assert scanner.mode == "default"
    scanner.push_mode("string")
    scanner.push_mode("default")
    scanner.pop_mode()
    assert scanner.mode == "string"
    scanner.pop_mode()
    assert scanner.mode == "default"

    with pytest.raises(GrammarError):
        scanner.pop_mode()
    with pytest.raises(GrammarError):
        scanner.mode = "nope"


def test_runaway_token_is_reported_where_it_started():
    scanner = StringScanner('a\n"unterminated\nmore\n').open(is_buffer=True)
    assert scanner.next_token().value == "a"
    assert scanner.next_token().value == "unterminated\n"
    assert scanner.next_token().value == "more\n"

    with pytest.raises(ParseError) as e:
        scanner.next_token()
    assert e.value.message.id == "runaway_token"
    assert e.value.message.source_file_info.line == 2
    assert e.value.message.text == "Unterminated token starting at line 2"


def test_reopen_starts_in_the_default_mode():
    scanner = StringScanner('"abc\n').open(is_buffer=True)
    with pytest.raises(ParseError) as e:
        values(scanner)
    assert e.value.message.id == "runaway_token"

    scanner.master_file = "a b"
    scanner.open(is_buffer=True)
    assert scanner.mode == "default"
    assert positions(scanner) == [("a", 1, 1), ("b", 1, 3)]


def test_return_token():
    scanner = scan("a b")
    a = scanner.next_token()
    scanner.return_token(a)
    with pytest.raises(PushBackError):
        scanner.return_token(a)
    assert scanner.next_token() is a
    assert scanner.next_token().value == "b"


def test_post_processor_can_inject_text():
    class EnvScanner(Scanner):
        def __init__(self, text, env):
            self.env = env
            super().__init__(text, [(None, r"%(\w+)", None, self._expand)] + PATTERNS, "default")

        def _expand(self, kind, match):
            self.inject_text(self.env[match.group(1)], len(match.group(0)))
            return None, ""

    scanner = EnvScanner("a %x b", {"x": "1 2"}).open(is_buffer=True)
    assert values(scanner) == [("ID", "a"), ("INTEGER", 1), ("INTEGER", 2), ("ID", "b")]


###############################################################################
# Macros
###############################################################################
def test_macro_expansion():
    assert values(scan("x ${pair 1 2} y", PAIR)) == [
        ("ID", "x"),
        ("INTEGER", 1),
        ("INTEGER", 2),
        ("ID", "y"),
    ]


def test_macro_call_across_lines():
    scanner = scan("${pair 1\n 2}\nz", PAIR)
    assert [(value, line) for value, line, _ in positions(scanner)] == [(1, 2), (2, 2), ("z", 3)]


def test_expanded_newlines_keep_the_line_number():
    scanner = scan("${m}\nb", Macro("m", "a\nc"))
    assert positions(scanner) == [("a", 1, 1), ("c", 1, 1), ("b", 2, 1)]


def test_macro_inside_a_string():
    scanner = StringScanner('a "Hi ${who}!" b').open(is_buffer=True)
    scanner.add_macro(Macro("who", "Bob"))
    assert values(scanner) == [("ID", "a"), ("STRING", "Hi Bob!"), ("ID", "b")]


def test_macro_glued_to_an_identifier():
    assert values(scan("task_${n} x", Macro("n", "1"))) == [("ID", "task_1"), ("ID", "x")]
    assert values(scan("a${?nope}b")) == [("ID", "ab")]


def test_comments_are_not_expanded():
    assert values(scan("a # ${nope}\nb")) == [("ID", "a"), ("ID", "b")]


def test_glued_macro_after_an_expansion():
    scanner = scan("${pre}${n}", Macro("pre", "task_"), Macro("n", "7"))
    assert values(scanner) == [("ID", "task_7")]


def test_quoted_macro_arguments():
    assert values(scan('${pair "x y" 3}', PAIR)) == [("ID", "x"), ("ID", "y"), ("INTEGER", 3)]


def test_optional_macro_call():
    assert values(scan("a ${?nope} b")) == [("ID", "a"), ("ID", "b")]


def test_undefined_macro():
    with pytest.raises(ParseError) as e:
        values(scan("a ${nope} b"))
    assert e.value.message.id == "undefined_macro"


def test_escaped_macro_call():
    assert values(scan("$${pair 1 2}", PAIR)) == [
        ("LITERAL", "$"),
        ("LITERAL", "$"),
        ("LITERAL", "{"),
        ("ID", "pair"),
        ("INTEGER", 1),
        ("INTEGER", 2),
        ("LITERAL", "}"),
    ]


def test_recursive_macro():
    with pytest.raises(ParseError) as e:
        values(scan("${loop}", Macro("loop", "${loop}")))
    assert e.value.message.id == "macro_stack_overflow"


def test_macro_call_history():
    outer = Macro("outer", "a ${inner}", SourceFileInfo("defs.tji", 1))
    inner = Macro("inner", "@", SourceFileInfo("defs.tji", 2))
    scanner = scan("${outer}", outer, inner)

    assert scanner.next_token().value == "a"
    with pytest.raises(ParseError) as e:
        scanner.next_token()

    message = e.value.message
    assert message.id == "no_token_match"
    assert [call.name for call in message.macro_stack] == ["inner", "outer"]
    assert message.macro_stack[1].source_file_info.line == 1
    assert "Macro call history" in str(message)


def test_malformed_macro_calls():
    with pytest.raises(ParseError) as e:
        values(scan('${pair 1 "2}', PAIR))
    assert e.value.message.id == "junk_in_macro_call"

    with pytest.raises(ParseError) as e:
        values(scan("${pair 1", PAIR))
    assert e.value.message.id == "runaway_macro_call"


def test_macros_can_be_disabled():
    class PlainScanner(Scanner):
        macro_call = None

    scanner = PlainScanner("${x}", PATTERNS, "default").open(is_buffer=True)
    assert values(scanner) == [
        ("LITERAL", "$"),
        ("LITERAL", "{"),
        ("ID", "x"),
        ("LITERAL", "}"),
    ]


def test_shared_macro_table():
    table = MacroTable()
    table.add(PAIR)
    scanner = Scanner("${pair 1 2}", PATTERNS, "default", macro_table=table)
    assert scanner.macro_defined("pair")
    assert values(scanner.open(is_buffer=True)) == [("INTEGER", 1), ("INTEGER", 2)]


###############################################################################
# Files
###############################################################################
def write(path, text):
    path.write_text(text, encoding="utf-8")
    return str(path)


def test_include(tmp_path):
    main = write(tmp_path / "main.tjp", "a b\n")
    inc = write(tmp_path / "inc.tji", "x\ny\n")
    finished = []

    scanner = Scanner(main, PATTERNS, "default").open()
    a = scanner.next_token()
    assert a.position == SourceFileInfo(main, 1, 1)

    assert scanner.include("inc.tji", on_eof=lambda: finished.append(True)) == inc
    x = scanner.next_token()
    assert x.value == "x"
    assert x.position.file_name == inc
    y = scanner.next_token()
    assert y.position.line == 2

    b = scanner.next_token()
    assert b.value == "b"
    assert b.position.file_name == main
    assert finished == [True]
    assert scanner.next_token().is_eof


def test_pushed_back_token_survives_include(tmp_path):
    main = write(tmp_path / "main.tjp", "a b\n")
    write(tmp_path / "inc.tji", "x y\n")

    scanner = Scanner(main, PATTERNS, "default").open()
    scanner.next_token()
    b = scanner.next_token()
    scanner.return_token(b)
    scanner.include("inc.tji")

    assert values(scanner) == [("ID", "x"), ("ID", "y"), ("ID", "b")]


def test_recursive_include(tmp_path):
    a = write(tmp_path / "a.tjp", "a\n")
    write(tmp_path / "b.tji", "b\n")

    scanner = Scanner(a, PATTERNS, "default").open()
    scanner.include("b.tji")
    with pytest.raises(ParseError) as e:
        scanner.include("a.tjp")
    assert e.value.message.id == "include_recursion"


def test_same_file_twice(tmp_path):
    main = write(tmp_path / "main.tjp", "m1 m2 m3\n")
    write(tmp_path / "common.tji", "c\n")

    scanner = Scanner(main, PATTERNS, "default").open()
    assert scanner.next_token().value == "m1"
    scanner.include("common.tji")
    assert scanner.next_token().value == "c"
    assert scanner.next_token().value == "m2"
    scanner.include("common.tji")
    assert values(scanner) == [("ID", "c"), ("ID", "m3")]


def test_missing_files(tmp_path):
    main = write(tmp_path / "main.tjp", "a\n")
    scanner = Scanner(main, PATTERNS, "default").open()
    with pytest.raises(ParseError) as e:
        scanner.include("missing.tji")
    assert e.value.message.id == "bad_include"

    with pytest.raises(ParseError) as e:
        Scanner(str(tmp_path / "missing.tjp"), PATTERNS, "default").open()
    assert e.value.message.id == "open_file"


def test_close(tmp_path):
    main = write(tmp_path / "main.tjp", "a\n")
    with Scanner(main, PATTERNS, "default").open() as scanner:
        assert scanner.next_token().value == "a"
    with pytest.raises(GrammarError):
        scanner.next_token()


###############################################################################
# Parsing scanned input
###############################################################################
def list_parser():
    parser = TextParser()
    with parser.rule("list"):
        parser.pattern(["_[", "!items", "_]"], lambda v: v[1])
    with parser.rule("items"):
        parser.optional()
        parser.repeatable()
        parser.pattern(["$INTEGER"], lambda v: v[0])
    return parser


def test_parse_scanned_input():
    scanner = scan("[ 1 2\n ${three} ]", Macro("three", "3"))
    assert list_parser().parse("list", scanner) == [1, 2, 3]


def test_parse_error_inside_macro():
    scanner = scan("[ 1 ${bad} ]", Macro("bad", "x"))
    with pytest.raises(ParseError) as e:
        list_parser().parse("list", scanner)

    message = e.value.message
    assert message.id == "no_reduce"
    assert message.line == "[ 1 x ]"
    assert [call.name for call in message.macro_stack] == ["bad"]
    assert scanner.message_handler.errors == 1


class IncludingParser(TextParser):
    def __init__(self):
        super().__init__()
        self.init_rules()

    def rule_file(self):
        self.pattern(["!statements", "."], lambda v: v[0])

    def rule_statements(self):
        self.optional()
        self.repeatable()
        self.pattern(["_include", "$ID"], self._include)
        self.pattern(["$ID"], lambda v: v[0])

    def _include(self, values):
        self.scanner.include(values[1])
        return ("included", values[1])


def test_include_from_an_action(tmp_path):
    main = write(tmp_path / "main.tjp", "include inc after\n")
    write(tmp_path / "inc", "inside\n")

    scanner = Scanner(main, PATTERNS, "default").open()
    assert IncludingParser().parse("file", scanner) == [
        ("included", "inc"),
        "inside",
        "after",
    ]
