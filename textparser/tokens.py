"""The little value types that everything else in the package passes around.

There are two kinds of "token" in this package and it is worth keeping them
apart:

- A `TokenDescriptor` is a piece of *grammar*: one element of a Pattern, as
  written by the grammar author (`!rule`, `$CLASS`, `_text` or `.`).
- A `Token` is a piece of *input*: what the Scanner hands to the parser, with
  a kind, a value and the place in the source where it was found.
"""

import enum
import typing

from .errors import GrammarError


class TokenKind(enum.Enum):
    """The four kinds of grammar token. The value is the prefix character used
    in the textual descriptor form.
    """

    REFERENCE = "!"
    VARIABLE = "$"
    LITERAL = "_"
    EOF = "."


# The name we give the end-of-input descriptor; it has no name of its own in
# the grammar text.
END_NAME = "<END>"

# Scanner token kinds with special meaning to the parser. Every other kind is
# a variable class name, e.g. "ID" or "STRING".
LITERAL = "LITERAL"
EOF = "EOF"


class TokenDescriptor(typing.NamedTuple):
    """One element of a Pattern. Immutable, hashable, and used directly as the
    key of State transitions.
    """

    kind: TokenKind
    name: str

    @classmethod
    def parse(cls, text: str) -> "TokenDescriptor":
        """Turn a grammar token like `!rule` or `_task` into a descriptor.

        A malformed descriptor is a bug in the grammar, so we raise a
        GrammarError and expect nobody to catch it.
        """
        if not isinstance(text, str) or len(text) == 0:
            raise GrammarError(f"Pattern tokens must be non-empty strings, not {text!r}")

        try:
            kind = TokenKind(text[0])
        except ValueError:
            raise GrammarError(
                f"All pattern tokens must start with a type identifier [!$_.]: {text!r}"
            ) from None

        match kind:
            case TokenKind.EOF:
                if text != ".":
                    raise GrammarError(f"The end of input token must be a bare '.': {text!r}")
                return END_OF_INPUT

            case TokenKind.REFERENCE | TokenKind.VARIABLE | TokenKind.LITERAL:
                if len(text) == 1:
                    raise GrammarError(f"Pattern token {text!r} has no name")
                return cls(kind, text[1:])

            case _:
                typing.assert_never(kind)

    @property
    def terminal(self) -> bool:
        """True for tokens that the scanner produces directly."""
        match self.kind:
            case TokenKind.VARIABLE | TokenKind.LITERAL | TokenKind.EOF:
                return True
            case TokenKind.REFERENCE:
                return False
            case _:
                typing.assert_never(self.kind)

    def __str__(self) -> str:
        match self.kind:
            case TokenKind.REFERENCE:
                return f"!{self.name}"
            case TokenKind.VARIABLE:
                return f"${self.name}"
            case TokenKind.LITERAL:
                return f"_{self.name}"
            case TokenKind.EOF:
                return "."
            case _:
                typing.assert_never(self.kind)

    def expected_str(self) -> str:
        """How we name this token in 'expecting one of...' messages."""
        match self.kind:
            case TokenKind.LITERAL:
                return f"'{self.name}'"
            case TokenKind.VARIABLE:
                return f":{self.name}"
            case TokenKind.EOF:
                return ":eof"
            case TokenKind.REFERENCE:
                return f"<{self.name}>"
            case _:
                typing.assert_never(self.kind)


END_OF_INPUT = TokenDescriptor(TokenKind.EOF, END_NAME)


class SourceFileInfo(typing.NamedTuple):
    """A position in the input: file name (or buffer label), line and column.
    Lines and columns count from 1; 0 means "unknown".
    """

    file_name: str
    line: int
    column: int = 0

    def __str__(self) -> str:
        return f"{self.file_name}:{self.line}:"


class Token(typing.NamedTuple):
    """A token as delivered by a scanner."""

    kind: str
    value: typing.Any
    position: SourceFileInfo | None = None

    @property
    def is_eof(self) -> bool:
        return self.kind == EOF
