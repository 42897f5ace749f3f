"""Exceptions raised by the textparser package.

There are two tiers and they should never be confused:

- GrammarError (and AmbiguityError) means the *grammar* is broken. These come
  out of rule declaration and table compilation, before any input is read.
  They are programmer errors; fix the grammar, don't catch them.

- ParseError means the *input* is broken. The message has already been
  recorded by the MessageHandler by the time the exception is raised, so the
  caller can give up on this input and carry on with the next one.
"""

import typing

if typing.TYPE_CHECKING:
    from .messages import Message
    from .states import State, Transition


class TextParserError(Exception):
    """Root of everything raised by this package."""


class GrammarError(TextParserError):
    """The grammar declaration is malformed."""


class AmbiguityError(GrammarError):
    """Two transitions leave the same state on the same token.

    We never resolve these by picking one; the grammar has to be fixed.
    """

    state: "State"
    existing: "Transition"
    conflicting: "Transition"

    def __init__(self, state: "State", existing: "Transition", conflicting: "Transition"):
        self.state = state
        self.existing = existing
        self.conflicting = conflicting
        super().__init__(str(self))

    def __str__(self):
        return (
            f"Ambiguous transition for {self.conflicting.token} in\n{self.state.dump()}\n"
            f"The following transitions both match:\n"
            f"  {self.conflicting}\n"
            f"  {self.existing}"
        )


class PushBackError(TextParserError):
    """More than one token was returned to a scanner in a row. This is a bug
    in the driver, not in the input.
    """


class ParseError(TextParserError):
    """The input could not be processed. `message` holds the full diagnostic."""

    message: "Message"

    def __init__(self, message: "Message"):
        self.message = message
        super().__init__(str(message))


class FatalError(TextParserError):
    """A fatal diagnostic was reported."""

    message: "Message"

    def __init__(self, message: "Message"):
        self.message = message
        super().__init__(str(message))
